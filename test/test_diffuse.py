import numpy as np

from birdview.diffuse import box_half_size, diffuse_from_mask, fill_region


def test_box_half_size_pads_odd_sizes():
    image = np.arange(15, dtype=np.float64).reshape(5, 3)
    half = box_half_size(image)

    assert half.shape == (3, 2)
    assert half[0, 0] == np.mean([0, 1, 3, 4])
    # Last row and column are repeated
    assert half[2, 1] == 14.0


def test_known_pixels_are_kept():
    values = np.zeros((16, 64))
    known = np.zeros((16, 64), dtype=bool)
    known[:, 0] = True
    known[:, -1] = True
    values[:, -1] = 1.0

    filled = diffuse_from_mask(values, known)
    np.testing.assert_array_equal(filled[:, 0], 0.0)
    np.testing.assert_array_equal(filled[:, -1], 1.0)

    interior = filled[:, 1:-1]
    assert interior.min() >= 0.0 and interior.max() <= 1.0
    assert filled[:, 8].mean() < filled[:, 32].mean() < filled[:, 56].mean()


def test_nothing_known_gives_zeros():
    filled = diffuse_from_mask(np.ones((9, 7)), np.zeros((9, 7), dtype=bool))
    np.testing.assert_array_equal(filled, 0.0)


def test_fill_region_fills_every_pixel():
    image = np.zeros((33, 21, 2))
    image[5, 5] = [0.8, 1.0]
    image[30, 18] = [0.2, 1.0]

    filled = fill_region(image)
    assert np.all(filled[..., 1] > 0)
    assert filled[5, 5, 0] == 0.8
    value = filled[..., 0] / filled[..., 1]
    assert value.min() >= 0.2 - 1e-12 and value.max() <= 0.8 + 1e-12
