import numpy as np

from birdview.poisson import SeamBlender


def texture(height=64, width=80):
    v, u = np.mgrid[0:height, 0:width].astype(np.float64)
    return 100.0 + 30.0 * np.sin(u / 7.0) * np.cos(v / 5.0) + 0.2 * u


def seam_weights(shape, column):
    weight_a = np.zeros(shape)
    weight_a[:, :column] = 1.0
    return np.stack([weight_a, 1.0 - weight_a])


def test_brightness_step_is_removed_and_detail_kept():
    T = texture()
    weights = seam_weights(T.shape, 40)
    result = SeamBlender().blend_float([T, T + 40.0], weights)

    gx_result = np.diff(result, axis=1)
    gx_texture = np.diff(T, axis=1)
    gy_result = np.diff(result, axis=0)
    gy_texture = np.diff(T, axis=0)

    away = np.r_[0:30, 50:79]
    assert np.abs(gx_result[:, away] - gx_texture[:, away]).max() < 1e-3
    assert np.abs(gy_result - gy_texture).max() < 1e-3

    # The weighted composite jumps by 40 across the seam; the blend does not
    step = result[:, 41] - result[:, 38]
    np.testing.assert_allclose(step, T[:, 41] - T[:, 38], atol=1e-2)


def test_result_stays_near_composite_mean():
    T = texture()
    weights = seam_weights(T.shape, 40)
    composite = weights[0] * T + weights[1] * (T + 40.0)

    result = SeamBlender().blend_float([T, T + 40.0], weights)
    assert abs(result.mean() - composite.mean()) < 1e-2


def test_color_images_keep_shape_and_clip():
    T = texture()
    images = [np.dstack([T, T, T]), np.dstack([T, T, T]) + 300.0]
    out = SeamBlender().blend(images, seam_weights(T.shape, 40))

    assert out.shape == T.shape + (3,)
    assert out.dtype == np.uint8


def test_eigenvalue_parameter_is_cached_per_shape():
    blender = SeamBlender()
    first = blender.eigenvalue_parameter((128, 160))

    assert blender.eigenvalue_parameter((128, 160)) is first
    assert blender.eigenvalue_parameter((64, 80)) is not first
    assert first[0, 0] == 0.0
    assert first.min() >= -8.0


def test_expand_mirrors_both_axes():
    image = np.arange(6.0).reshape(2, 3)
    expanded = SeamBlender.expand(image)

    assert expanded.shape == (4, 6)
    np.testing.assert_array_equal(expanded[:2, 3:], image[:, ::-1])
    np.testing.assert_array_equal(expanded[2:, :3], image[::-1])
