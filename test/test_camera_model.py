import cv2
import numpy as np
import pytest

from birdview.camera_model import (CameraParameters, FisheyeCamera, distort_theta,
                                   load_camera_parameters, save_camera_parameters)
from birdview.config import CAMERA_ORDER, CameraPosition
from birdview.exceptions import ConfigError, GeometryFailure

from conftest import CAMERA_MATRIX, DISTORTION, IMAGE_SIZE, make_params, rotation_matrix


def grid_pixels(step=40, lo=(20, 20), hi=(620, 460)):
    u, v = np.meshgrid(np.arange(lo[0], hi[0], step, dtype=float), np.arange(lo[1], hi[1], step, dtype=float))
    return np.stack([u.ravel(), v.ravel()], axis=1)


def test_projection_matches_opencv_fisheye(rig):
    position = CameraPosition.FRONT
    rvec, tvec = rig.poses[position]
    points = rig.config.object_points(position)

    ours = rig.camera(position).space_to_plane(points, rvec, tvec)
    theirs, _ = cv2.fisheye.projectPoints(points.reshape(-1, 1, 3), rvec.reshape(3, 1),
                                          tvec.reshape(3, 1), CAMERA_MATRIX, DISTORTION)
    np.testing.assert_allclose(ours, theirs.reshape(-1, 2), atol=1e-6)


def test_lift_projective_inverts_projection():
    camera = FisheyeCamera(make_params())
    pixels = grid_pixels()

    rays = camera.lift_projective(pixels)
    np.testing.assert_allclose(np.linalg.norm(rays, axis=1), 1.0, atol=1e-12)

    reprojected = camera.space_to_plane(rays, np.zeros(3), np.zeros(3))
    np.testing.assert_allclose(reprojected, pixels, atol=1e-3)


def test_single_point_keeps_shape():
    camera = FisheyeCamera(make_params())
    assert camera.lift_projective(np.array([300.0, 200.0])).shape == (3,)
    assert camera.undistort_points(np.array([300.0, 200.0])).shape == (2,)


def test_undistort_points_matches_opencv():
    camera = FisheyeCamera(make_params())
    pixels = grid_pixels(40, lo=(160, 100), hi=(500, 400))

    ours = camera.undistort_points(pixels)
    theirs = cv2.fisheye.undistortPoints(pixels.reshape(-1, 1, 2), CAMERA_MATRIX,
                                         DISTORTION, P=CAMERA_MATRIX)
    np.testing.assert_allclose(ours, theirs.reshape(-1, 2), atol=1e-2)
    np.testing.assert_allclose(camera.distort_points(ours), pixels, atol=1e-3)


def test_principal_point_is_fixed():
    camera = FisheyeCamera(make_params())
    np.testing.assert_allclose(camera.undistort_points(np.array([320.0, 240.0])), [320.0, 240.0])
    np.testing.assert_allclose(camera.lift_projective(np.array([320.0, 240.0])), [0.0, 0.0, 1.0])


def test_theta_max_ends_monotonic_range():
    camera = FisheyeCamera(make_params())
    assert 0.0 < camera.theta_max < np.pi

    theta = np.linspace(0.0, camera.theta_max, 500)
    assert np.all(np.diff(distort_theta(theta, DISTORTION)) > 0)


def test_radius_beyond_model_range_raises():
    camera = FisheyeCamera(make_params())
    r_max = distort_theta(camera.theta_max, DISTORTION)
    far = np.array([[320.0 + 1.5 * r_max * 230.0, 240.0]])

    with pytest.raises(GeometryFailure, match="valid radius"):
        camera.lift_projective(far)


def test_backprojection_reports_non_convergence():
    camera = FisheyeCamera(make_params(), max_iterations=1, tolerance=1e-14)
    with pytest.raises(GeometryFailure, match="did not converge"):
        camera.backproject_symmetric(np.array([[1.2, 0.0]]))


def test_scale_and_shift_define_undistorted_matrix():
    camera = FisheyeCamera(make_params(), CameraPosition.LEFT)
    assert camera.set_scale_and_shift((0.5, 0.6), (10.0, -20.0)) is camera

    new_K = camera.new_camera_matrix
    assert new_K[0, 0] == pytest.approx(115.0)
    assert new_K[1, 1] == pytest.approx(138.0)
    assert new_K[0, 2] == pytest.approx(330.0)
    assert new_K[1, 2] == pytest.approx(220.0)
    np.testing.assert_array_equal(camera.camera_matrix, CAMERA_MATRIX)

    undistorted = camera.undistort(np.full((480, 640, 3), 90, dtype=np.uint8))
    assert undistorted.shape == (480, 640, 3)
    assert undistorted[240, 320, 0] == 90


def test_scaled_parameters_scale_pixels():
    params = make_params()
    scaled = params.scaled((1280, 960))

    np.testing.assert_allclose(scaled.camera_matrix[:2], 2.0 * CAMERA_MATRIX[:2])
    assert scaled.image_size == (1280, 960)

    pixels = grid_pixels(80)
    rays = FisheyeCamera(params).lift_projective(pixels)
    np.testing.assert_allclose(FisheyeCamera(scaled).lift_projective(2.0 * pixels), rays, atol=1e-6)


def test_parameters_are_validated_and_read_only():
    params = make_params()
    with pytest.raises(ValueError):
        params.camera_matrix[0, 0] = 1.0

    with pytest.raises(ConfigError):
        CameraParameters(np.eye(2), DISTORTION, IMAGE_SIZE)
    with pytest.raises(ConfigError):
        CameraParameters(-CAMERA_MATRIX, DISTORTION, IMAGE_SIZE)
    with pytest.raises(ConfigError):
        CameraParameters(CAMERA_MATRIX, DISTORTION[:3], IMAGE_SIZE)
    with pytest.raises(ConfigError):
        CameraParameters(CAMERA_MATRIX, DISTORTION, (0, 480))


def test_estimate_extrinsics_recovers_pose(rig):
    for position in CAMERA_ORDER:
        rvec, tvec = rig.camera(position).estimate_extrinsics(
            rig.config.object_points(position), rig.corners(position))
        true_rvec, true_tvec = rig.poses[position]
        np.testing.assert_allclose(rotation_matrix(rvec), rotation_matrix(true_rvec), atol=1e-4)
        np.testing.assert_allclose(tvec, true_tvec, atol=1e-4)


def test_intrinsics_file_round_trip(tmp_path):
    cameras = {p: make_params() for p in CAMERA_ORDER}
    cameras[CameraPosition.REAR] = CameraParameters(
        CAMERA_MATRIX * [[1.1], [1.1], [1.0]], DISTORTION * 0.5, (800, 600),
        scale_xy=(0.7, 0.8), shift_xy=(5.0, 6.0),
    )
    path = tmp_path / "intrinsics.yaml"
    save_camera_parameters(path, cameras)

    loaded = load_camera_parameters(path)
    for position in CAMERA_ORDER:
        np.testing.assert_allclose(loaded[position].camera_matrix, cameras[position].camera_matrix)
        np.testing.assert_allclose(loaded[position].distortion, cameras[position].distortion)
        assert loaded[position].image_size == cameras[position].image_size
        assert loaded[position].scale_xy == pytest.approx(cameras[position].scale_xy)
        assert loaded[position].shift_xy == pytest.approx(cameras[position].shift_xy)


def test_missing_intrinsics_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_camera_parameters(tmp_path / "nope.yaml")
