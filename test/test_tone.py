import numpy as np

from birdview.config import ADJACENT_PAIRS, CAMERA_ORDER, CameraPosition
from birdview.tone import ToneBalancer, gray_levels

FRONT = CameraPosition.FRONT
LEFT = CameraPosition.LEFT
SHAPE = (120, 160)


def uniform_images(levels):
    return [np.full(SHAPE + (3,), levels.get(p, 0), dtype=np.uint8) for p in CAMERA_ORDER]


def front_left_overlap():
    overlaps = {pair: np.zeros(SHAPE, dtype=bool) for pair in ADJACENT_PAIRS}
    overlaps[(FRONT, LEFT)][:40, :50] = True
    return overlaps


def test_gains_equalise_shared_ground():
    images = uniform_images({FRONT: 100, LEFT: 130})
    overlaps = front_left_overlap()
    balancer = ToneBalancer()

    gains = balancer.estimate(images, overlaps)
    assert gains[FRONT.index] > 1.0 > gains[LEFT.index]

    mask = overlaps[(FRONT, LEFT)]
    front = gray_levels(balancer.apply(images[FRONT.index], gains[FRONT.index]))[mask].mean()
    left = gray_levels(balancer.apply(images[LEFT.index], gains[LEFT.index]))[mask].mean()
    assert abs(front - left) / left < 0.02


def test_cameras_without_overlap_keep_unit_gain():
    gains = ToneBalancer().estimate(uniform_images({FRONT: 100, LEFT: 130}), front_left_overlap())
    np.testing.assert_allclose(gains[[CameraPosition.REAR.index, CameraPosition.RIGHT.index]], 1.0)

    empty = {pair: np.zeros(SHAPE, dtype=bool) for pair in ADJACENT_PAIRS}
    np.testing.assert_allclose(ToneBalancer().estimate(uniform_images({}), empty), 1.0)


def test_gains_are_clamped():
    balancer = ToneBalancer()
    gains = balancer.estimate(uniform_images({FRONT: 10, LEFT: 250}), front_left_overlap())

    assert gains.min() >= 0.5 and gains.max() <= 2.0
    assert gains[LEFT.index] == 0.5


def test_overlap_means_skip_empty_masks():
    means = ToneBalancer().overlap_means(uniform_images({FRONT: 51, LEFT: 102}), front_left_overlap())
    assert list(means) == [(FRONT, LEFT)]
    mu_front, mu_left = means[(FRONT, LEFT)]
    assert mu_front == 0.2
    assert mu_left == 0.4


def test_apply_saturates():
    image = np.full((2, 2, 3), 200, dtype=np.uint8)
    out = ToneBalancer.apply(image, 2.0)
    assert out.dtype == np.uint8
    assert np.all(out == 255)
    assert np.all(ToneBalancer.apply(image, 0.5) == 100)
