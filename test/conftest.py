import cv2
import numpy as np
import pytest

from birdview.calibrate import CalibrationSnapshot
from birdview.camera_model import CameraParameters, FisheyeCamera
from birdview.config import CAMERA_ORDER, RigConfig
from birdview.exceptions import DetectionFailure

IMAGE_SIZE = (640, 480)
CAMERA_MATRIX = np.array([[230.0, 0.0, 320.0], [0.0, 230.0, 240.0], [0.0, 0.0, 1.0]])
DISTORTION = np.array([0.05, -0.01, 0.002, -0.0005])

# Each camera sits 1 m behind its board centre, 1 m above the ground, 45 degrees down
CAMERA_SETBACK = 1.0
CAMERA_HEIGHT = 1.0
TILT = np.deg2rad(45.0)

# Wide undistorted view so adjacent cameras share ground on the canvas
RIG_SCALE = (0.4, 0.4)


def make_params(scale_xy=(1.0, 1.0)) -> CameraParameters:
    return CameraParameters(CAMERA_MATRIX, DISTORTION, IMAGE_SIZE, scale_xy=scale_xy)


def make_pose(config, position):
    forward = position.forward
    right = position.image_right
    ground = config.board_center(position) - forward * CAMERA_SETBACK
    center = np.array([ground[0], ground[1], CAMERA_HEIGHT])

    x_axis = np.array([right[0], right[1], 0.0])
    z_axis = np.array([forward[0] * np.cos(TILT), forward[1] * np.cos(TILT), -np.sin(TILT)])
    y_axis = np.cross(z_axis, x_axis)
    rotation = np.vstack([x_axis, y_axis, z_axis])

    rvec, _ = cv2.Rodrigues(rotation)
    return rvec.reshape(3), -rotation @ center


def rotation_matrix(rvec) -> np.ndarray:
    # The rear camera rotates by exactly pi, so rvec and -rvec are both valid
    rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    return rotation


def true_homography(config, params, rvec, tvec):
    rotation, _ = cv2.Rodrigues(rvec.reshape(3, 1))
    plane = params.new_camera_matrix @ np.column_stack([rotation[:, 0], rotation[:, 1], tvec])
    H = config.canvas_from_ground @ np.linalg.inv(plane)
    return H / H[2, 2]


class SyntheticRig:
    """Four identical fisheye cameras looking at their boards from known poses."""

    def __init__(self, config: RigConfig):
        self.config = config
        self.params = {p: make_params(RIG_SCALE) for p in CAMERA_ORDER}
        self.poses = {p: make_pose(config, p) for p in CAMERA_ORDER}
        self.homographies = {
            p: true_homography(config, self.params[p], *self.poses[p]) for p in CAMERA_ORDER
        }

    def camera(self, position) -> FisheyeCamera:
        return FisheyeCamera(self.params[position], position)

    def corners(self, position) -> np.ndarray:
        rvec, tvec = self.poses[position]
        return self.camera(position).space_to_plane(self.config.object_points(position), rvec, tvec)

    def ground_pixels(self, position, ground_points) -> np.ndarray:
        points = np.hstack([np.asarray(ground_points, float), np.zeros((len(ground_points), 1))])
        rvec, tvec = self.poses[position]
        return self.camera(position).space_to_plane(points, rvec, tvec)

    def snapshot(self) -> CalibrationSnapshot:
        return CalibrationSnapshot(
            cameras=tuple(self.params[p] for p in CAMERA_ORDER),
            homographies=tuple(self.homographies[p] for p in CAMERA_ORDER),
            rvecs=tuple(self.poses[p][0] for p in CAMERA_ORDER),
            tvecs=tuple(self.poses[p][1] for p in CAMERA_ORDER),
            canvas_size=self.config.canvas.size,
        )


class FakeDetector:
    """Returns precomputed corners; optionally fails for one position."""

    def __init__(self, corners, fail_for=None):
        self.corners = corners
        self.fail_for = fail_for

    def find_corners(self, image, position=None):
        if position is self.fail_for:
            raise DetectionFailure("Chessboard not found", position=position.value, found=0, required=24)
        return self.corners[position].copy()


@pytest.fixture(scope="session")
def rig():
    return SyntheticRig(RigConfig())


@pytest.fixture
def blank_frames():
    width, height = IMAGE_SIZE
    return [np.zeros((height, width, 3), dtype=np.uint8) for _ in CAMERA_ORDER]


@pytest.fixture
def fake_detector(rig):
    return FakeDetector({p: rig.corners(p) for p in CAMERA_ORDER})
