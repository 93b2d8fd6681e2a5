import numpy as np
import pytest

from birdview.config import CAMERA_ORDER, CameraPosition
from birdview.exceptions import GeometryFailure
from birdview.homography import (apply_homography, estimate_homography, generate_target_points,
                                 homography_to_params, params_to_homography)

H_TRUE = np.array([[1.2, 0.1, 30.0], [-0.05, 0.9, 12.0], [1e-4, 2e-4, 1.0]])


def test_recovers_exact_homography():
    src = np.random.default_rng(0).uniform(0, 600, size=(12, 2))
    dst = apply_homography(H_TRUE, src)

    H = estimate_homography(src, dst)
    assert H[2, 2] == 1.0
    np.testing.assert_allclose(H, H_TRUE, rtol=1e-6, atol=1e-9)


def test_four_points_are_enough():
    src = np.array([[0.0, 0.0], [100.0, 0.0], [100.0, 80.0], [0.0, 80.0]])
    H = estimate_homography(src, apply_homography(H_TRUE, src))
    np.testing.assert_allclose(apply_homography(H, [50.0, 40.0]),
                               apply_homography(H_TRUE, [50.0, 40.0]), atol=1e-8)


def test_ground_truth_rig_homographies(rig):
    for position in CAMERA_ORDER:
        camera = rig.camera(position)
        undistorted = camera.undistort_points(rig.corners(position))
        targets = generate_target_points(rig.config, position)
        H = estimate_homography(undistorted, targets)
        np.testing.assert_allclose(apply_homography(H, undistorted), targets, atol=1e-2)


@pytest.mark.parametrize("count", [3, 5])
def test_collinear_points_are_degenerate(count):
    src = np.array([[float(i), 2.0 * i + 1.0] for i in range(count)])
    dst = src * 3.0 + 7.0
    with pytest.raises(GeometryFailure):
        estimate_homography(src, dst)


def test_four_points_with_collinear_triple_are_degenerate():
    src = np.array([[0.0, 0.0], [1.0, 1.0], [2.0, 2.0], [0.0, 5.0]])
    dst = np.array([[0.0, 0.0], [10.0, 0.0], [10.0, 10.0], [0.0, 10.0]])
    with pytest.raises(GeometryFailure, match="collinear"):
        estimate_homography(src, dst)


def test_invalid_input_is_rejected():
    src = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])
    with pytest.raises(GeometryFailure):
        estimate_homography(src, src[:3])

    bad = src.copy()
    bad[2, 0] = np.nan
    with pytest.raises(GeometryFailure):
        estimate_homography(bad, src)

    with pytest.raises(GeometryFailure):
        estimate_homography(np.zeros((6, 2)), src.repeat(2, axis=0)[:6])


def test_point_at_infinity_raises():
    H = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 0.0, 1.0]])
    with pytest.raises(GeometryFailure):
        apply_homography(H, [-1.0, 3.0])


def test_parameter_round_trip_normalises_scale():
    params = homography_to_params(4.0 * H_TRUE)
    assert params.shape == (8,)
    np.testing.assert_allclose(params_to_homography(params), H_TRUE)


def test_target_points_follow_detection_order(rig):
    cols, rows = rig.config.chessboard.pattern_size
    targets = generate_target_points(rig.config, CameraPosition.FRONT).reshape(rows, cols, 2)

    # Far row is nearest the canvas top; columns run left to right
    assert np.all(np.diff(targets[..., 1], axis=0) > 0)
    assert np.all(np.diff(targets[..., 0], axis=1) > 0)
    np.testing.assert_allclose(np.diff(targets[..., 0], axis=1), 9.0)
