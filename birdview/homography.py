"""
Homography Estimation
=====================

Initial ground-plane homographies from chessboard correspondences.

A homography maps pixels of a camera's undistorted image to canvas pixels.
It is estimated with the normalised direct linear transform: both point sets
are translated and scaled to unit RMS distance, the 2N x 9 system is solved
by SVD and the result is denormalised with ``H[2, 2] = 1``.
"""

from itertools import combinations
from typing import Tuple, Union

import numpy as np

from .config import CameraPosition, RigConfig
from .exceptions import GeometryFailure

# Relative thresholds on singular values / areas
COLLINEAR_TOLERANCE = 1e-6
RANK_TOLERANCE = 1e-10
CONDITION_LIMIT = 1e12


def generate_target_points(config: RigConfig, position: CameraPosition) -> np.ndarray:
    """
    Canvas pixels of the chessboard corners seen by ``position``.

    Ordered like the detector output: row 0 farthest from the vehicle,
    columns along the camera's image-right direction.
    """
    return config.ground_to_canvas(config.board_ground_points(position))


def _normalization(points: np.ndarray) -> np.ndarray:
    centroid = points.mean(axis=0)
    spread = np.sqrt(((points - centroid) ** 2).sum(axis=1).mean())
    scale = np.sqrt(2.0) / spread
    return np.array([
        [scale, 0.0, -scale * centroid[0]],
        [0.0, scale, -scale * centroid[1]],
        [0.0, 0.0, 1.0],
    ])


def _check_configuration(points: np.ndarray, name: str) -> None:
    centered = points - points.mean(axis=0)
    singular = np.linalg.svd(centered, compute_uv=False)
    if singular[0] <= 0 or singular[1] / singular[0] < COLLINEAR_TOLERANCE:
        raise GeometryFailure(f"{name} points are collinear or coincident")

    if len(points) == 4:
        scale = singular[0] ** 2
        for a, b, c in combinations(range(4), 3):
            ab = points[b] - points[a]
            ac = points[c] - points[a]
            if abs(ab[0] * ac[1] - ab[1] * ac[0]) < COLLINEAR_TOLERANCE * scale:
                raise GeometryFailure(f"{name} points {a}, {b}, {c} are collinear")


def estimate_homography(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Estimate the homography mapping ``src`` onto ``dst``.

    Args:
        src: Source points (undistorted image pixels), shape (N, 2)
        dst: Destination points (canvas pixels), shape (N, 2)

    Returns:
        3x3 homography with ``H[2, 2] == 1``

    Raises:
        GeometryFailure: For fewer than 4 points, non-finite input, degenerate
            point configurations or a singular solution
    """
    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)

    if len(src) != len(dst):
        raise GeometryFailure(f"Point count mismatch: {len(src)} source vs {len(dst)} target")
    if len(src) < 4:
        raise GeometryFailure(f"At least 4 correspondences required, got {len(src)}")
    if not (np.all(np.isfinite(src)) and np.all(np.isfinite(dst))):
        raise GeometryFailure("Correspondences contain non-finite values")

    _check_configuration(src, "Source")
    _check_configuration(dst, "Target")

    t_src = _normalization(src)
    t_dst = _normalization(dst)
    ones = np.ones((len(src), 1))
    xs = (np.hstack([src, ones]) @ t_src.T)[:, :2]
    xd = (np.hstack([dst, ones]) @ t_dst.T)[:, :2]

    rows = []
    for (x, y), (u, v) in zip(xs, xd):
        rows.append([-x, -y, -1.0, 0.0, 0.0, 0.0, u * x, u * y, u])
        rows.append([0.0, 0.0, 0.0, -x, -y, -1.0, v * x, v * y, v])
    system = np.array(rows)

    _, singular, vt = np.linalg.svd(system)
    if singular[7] < RANK_TOLERANCE * singular[0]:
        raise GeometryFailure("DLT system is rank deficient")

    normalized = vt[-1].reshape(3, 3)
    H = np.linalg.inv(t_dst) @ normalized @ t_src
    if abs(H[2, 2]) < 1e-12:
        raise GeometryFailure("Homography maps the source origin to infinity")
    H = H / H[2, 2]

    if not np.all(np.isfinite(H)) or np.linalg.cond(H) > CONDITION_LIMIT:
        raise GeometryFailure("Estimated homography is singular")
    return H


def apply_homography(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Transfer points through a homography.

    Args:
        H: 3x3 homography
        points: Point (2,) or points (N, 2)

    Returns:
        Mapped point(s), same shape as the input

    Raises:
        GeometryFailure: If a point is mapped to infinity
    """
    array = np.asarray(points, dtype=np.float64)
    single = array.ndim == 1
    array = array.reshape(-1, 2)
    mapped = np.hstack([array, np.ones((len(array), 1))]) @ np.asarray(H, dtype=np.float64).T
    w = mapped[:, 2]
    if np.any(np.abs(w) < 1e-12):
        raise GeometryFailure("Point mapped to infinity by homography")
    result = mapped[:, :2] / w[:, None]
    return result[0] if single else result


def homography_to_params(H: np.ndarray) -> np.ndarray:
    """The 8 free entries of a homography normalised to ``H[2, 2] = 1``."""
    H = np.asarray(H, dtype=np.float64)
    return (H / H[2, 2]).reshape(9)[:8].copy()


def params_to_homography(params: Union[np.ndarray, Tuple[float, ...]]) -> np.ndarray:
    return np.append(np.asarray(params, dtype=np.float64), 1.0).reshape(3, 3)
