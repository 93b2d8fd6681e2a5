"""
Remap Tables
============

Precomputed canvas -> source pixel lookup per camera. Built once per
calibration; per-frame work is one bilinear ``cv2.remap``.

Homography route (default):
    canvas pixel -> H^-1 -> undistorted pixel -> fisheye model -> raw pixel

Extrinsics route:
    canvas pixel -> ground point (X, Y, 0) -> pose + fisheye model -> raw pixel

Invalid entries hold -1 and are cleared by ``valid`` after sampling.
"""

from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np

from .camera_model import MIN_RAY_DEPTH, FisheyeCamera, camera_to_pixels
from .config import RigConfig
from .exceptions import GeometryFailure, RuntimeMismatch


@dataclass(frozen=True, eq=False)
class RemapTable:
    """
    Canvas-shaped lookup into one camera's raw frame.

    Attributes:
        map_x: Source x per canvas pixel (float32, -1 where invalid)
        map_y: Source y per canvas pixel (float32, -1 where invalid)
        valid: Canvas pixels that see this camera's frame
        frame_size: Frame size (width, height) the table was built for
        name: Camera name used in errors
    """
    map_x: np.ndarray
    map_y: np.ndarray
    valid: np.ndarray
    frame_size: Tuple[int, int]
    name: str = "camera"

    def __post_init__(self):
        for array in (self.map_x, self.map_y, self.valid):
            array.flags.writeable = False

    @property
    def canvas_size(self) -> Tuple[int, int]:
        return self.map_x.shape[1], self.map_x.shape[0]

    def apply(self, frame: np.ndarray) -> np.ndarray:
        """
        Sample a frame onto the canvas.

        Raises:
            RuntimeMismatch: If the frame size differs from ``frame_size``
        """
        height, width = frame.shape[:2]
        if (width, height) != tuple(self.frame_size):
            raise RuntimeMismatch(self.name, self.frame_size, (width, height))

        projected = cv2.remap(
            frame, self.map_x, self.map_y,
            interpolation=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
            borderValue=0,
        )
        projected[~self.valid] = 0
        return projected


def _canvas_grid(canvas_size: Tuple[int, int]) -> Tuple[np.ndarray, np.ndarray]:
    width, height = canvas_size
    return np.meshgrid(np.arange(width, dtype=np.float64), np.arange(height, dtype=np.float64))


def _make_table(camera: FisheyeCamera, raw: np.ndarray, candidates: np.ndarray,
                canvas_size: Tuple[int, int]) -> RemapTable:
    # raw holds one source pixel per True entry of candidates, in row-major order
    width, height = camera.params.image_size
    in_frame = ((raw[:, 0] >= 0) & (raw[:, 0] <= width - 1) &
                (raw[:, 1] >= 0) & (raw[:, 1] <= height - 1))
    valid = candidates.copy()
    valid[candidates] = in_frame

    map_x = np.full(canvas_size[::-1], -1.0, dtype=np.float32)
    map_y = np.full(canvas_size[::-1], -1.0, dtype=np.float32)
    map_x[valid] = raw[in_frame, 0]
    map_y[valid] = raw[in_frame, 1]
    return RemapTable(map_x, map_y, valid, camera.params.image_size, camera.name)


def build_remap_table(camera: FisheyeCamera, H: np.ndarray,
                      canvas_size: Tuple[int, int]) -> RemapTable:
    """
    Lookup table through the inverse homography and the fisheye model.

    Args:
        camera: Camera model (its ``new_K`` defines the undistorted image)
        H: Homography from undistorted pixels to canvas pixels
        canvas_size: Canvas (width, height)
    """
    try:
        H_inv = np.linalg.inv(np.asarray(H, dtype=np.float64))
    except np.linalg.LinAlgError:
        raise GeometryFailure(f"{camera.name}: homography is not invertible")

    u, v = _canvas_grid(canvas_size)
    x = H_inv[0, 0] * u + H_inv[0, 1] * v + H_inv[0, 2]
    y = H_inv[1, 0] * u + H_inv[1, 1] * v + H_inv[1, 2]
    w = H_inv[2, 0] * u + H_inv[2, 1] * v + H_inv[2, 2]

    # With the camera above the ground and the canvas v axis pointing
    # backwards, sign(det H) is the sign of w for points in front of the camera.
    front = w * np.sign(np.linalg.det(H)) > MIN_RAY_DEPTH
    with np.errstate(divide="ignore", invalid="ignore"):
        x = x / w
        y = y / w

    und_w, und_h = camera.params.undistorted_size
    valid = front & (x >= 0) & (x <= und_w - 1) & (y >= 0) & (y <= und_h - 1)
    raw = camera.distort_points(np.stack([x[valid], y[valid]], axis=1))
    return _make_table(camera, raw, valid, canvas_size)


def build_remap_table_from_extrinsics(camera: FisheyeCamera, rvec: np.ndarray,
                                      tvec: np.ndarray, config: RigConfig) -> RemapTable:
    """Lookup table from the camera pose, without a homography."""
    canvas_size = config.canvas.size
    u, v = _canvas_grid(canvas_size)
    ground = config.canvas_to_ground(np.stack([u.ravel(), v.ravel()], axis=1))

    rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    points = ground @ rotation[:, :2].T + np.asarray(tvec, dtype=np.float64).reshape(1, 3)
    front = points[:, 2] > MIN_RAY_DEPTH

    raw = camera_to_pixels(points[front], camera.params.camera_matrix, camera.params.distortion)
    return _make_table(camera, raw, front.reshape(canvas_size[::-1]), canvas_size)
