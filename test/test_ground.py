import numpy as np
import pytest

from birdview.config import CAMERA_ORDER, CameraPosition
from birdview.exceptions import GeometryFailure
from birdview.ground import camera_center, ground_to_image, image_to_ground

from conftest import CAMERA_HEIGHT


def test_camera_center_is_above_ground(rig):
    for position in CAMERA_ORDER:
        _, center = camera_center(*rig.poses[position])
        assert center[2] == pytest.approx(CAMERA_HEIGHT)


def test_pixel_to_ground_round_trip(rig):
    ground = np.array([[-0.5, 3.5], [0.0, 3.2], [0.7, 4.1], [1.2, 3.0]])
    position = CameraPosition.FRONT
    camera = rig.camera(position)
    rvec, tvec = rig.poses[position]

    pixels = ground_to_image(camera, ground, rvec, tvec)
    np.testing.assert_allclose(image_to_ground(camera, pixels, rvec, tvec), ground, atol=1e-4)

    single = image_to_ground(camera, pixels[1], rvec, tvec)
    assert single.shape == (2,)


def test_board_corners_land_on_board(rig):
    position = CameraPosition.LEFT
    ground = image_to_ground(rig.camera(position), rig.corners(position), *rig.poses[position])
    np.testing.assert_allclose(ground, rig.config.board_ground_points(position), atol=1e-4)


def test_ray_above_horizon_raises(rig):
    position = CameraPosition.FRONT
    with pytest.raises(GeometryFailure, match="behind the camera"):
        image_to_ground(rig.camera(position), np.array([320.0, 0.0]), *rig.poses[position])
