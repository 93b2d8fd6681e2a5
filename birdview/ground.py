"""
Image to ground projection: intersect a pixel's ray with the plane Z = 0.
"""

from typing import Tuple

import cv2
import numpy as np

from .camera_model import FisheyeCamera
from .exceptions import GeometryFailure


def camera_center(rvec: np.ndarray, tvec: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Rotation matrix and camera centre in the ground frame."""
    rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    center = -rotation.T @ np.asarray(tvec, dtype=np.float64).reshape(3)
    return rotation, center


def image_to_ground(camera: FisheyeCamera, pixels: np.ndarray,
                    rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """
    Ground point (X, Y) seen at distorted pixel(s).

    Args:
        camera: Camera model
        pixels: Pixel (2,) or pixels (N, 2)
        rvec: Rodrigues rotation vector (world to camera)
        tvec: Translation vector (world to camera)

    Returns:
        Ground point(s) in metres, same leading shape as ``pixels``

    Raises:
        GeometryFailure: If a ray is parallel to the ground or meets it behind
            the camera
    """
    array = np.asarray(pixels, dtype=np.float64)
    single = array.ndim == 1
    rays = camera.lift_projective(array.reshape(-1, 2))

    rotation, center = camera_center(rvec, tvec)
    directions = rays @ rotation
    dz = directions[:, 2]
    if np.any(np.abs(dz) < 1e-12):
        raise GeometryFailure("Ray is parallel to the ground plane")

    scale = -center[2] / dz
    if np.any(scale <= 0):
        raise GeometryFailure("Ray meets the ground plane behind the camera")

    ground = center[None, :2] + scale[:, None] * directions[:, :2]
    return ground[0] if single else ground


def ground_to_image(camera: FisheyeCamera, ground: np.ndarray,
                    rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """Distorted pixel(s) of ground point(s) (X, Y)."""
    array = np.asarray(ground, dtype=np.float64)
    single = array.ndim == 1
    points = np.hstack([array.reshape(-1, 2), np.zeros((array.size // 2, 1))])
    pixels = camera.space_to_plane(points, rvec, tvec)
    return pixels[0] if single else pixels
