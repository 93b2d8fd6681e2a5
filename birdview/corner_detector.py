"""
Chessboard Corner Detection
===========================

Locates the inner corners of a calibration chessboard in a raw camera frame.

Two strategies are tried in order:
- OpenCV: ``cv2.findChessboardCorners`` over a short list of flag sets, then
  ``cv2.findChessboardCornersSB``
- Squares: dark quads from an Otsu threshold, each validated by
  ``is_chessboard_square``; vertices shared by two quads are inner corners

Both hand their corners to ``order_corners`` so the ordering is identical no
matter which strategy succeeded: row-major, starting at the top-left corner
in the image, columns running along the image horizontal.
"""

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from .config import CameraPosition, ChessboardConfig
from .exceptions import DetectionFailure
from .logger import get_logger

logger = get_logger(__name__)


class DetectionStrategy(Enum):
    """Available corner detection strategies."""
    OPENCV = "opencv"
    SQUARES = "squares"


_CHESSBOARD_FLAG_SETS = (
    cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE,
    cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE | cv2.CALIB_CB_FILTER_QUADS,
    cv2.CALIB_CB_ADAPTIVE_THRESH,
)

_SUBPIX_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.01)


@dataclass(frozen=True)
class DetectorConfig:
    """Corner detector settings."""
    pattern_size: Tuple[int, int] = (6, 4)          # inner corners (cols, rows)
    strategies: Tuple[DetectionStrategy, ...] = (DetectionStrategy.OPENCV, DetectionStrategy.SQUARES)
    max_attempts: int = 5                           # finder invocations per frame
    score_threshold: float = 0.15
    min_area_fraction: float = 1e-4
    max_area_fraction: float = 0.1
    max_side_ratio: float = 4.0
    subpix_window: int = 5
    grid_tolerance: float = 0.35                    # in grid cells

    @classmethod
    def for_chessboard(cls, chessboard: ChessboardConfig, **kwargs) -> "DetectorConfig":
        return cls(pattern_size=chessboard.pattern_size, **kwargs)

    @property
    def corner_count(self) -> int:
        return self.pattern_size[0] * self.pattern_size[1]


def to_gray(image: np.ndarray) -> np.ndarray:
    """Convert a BGR or grayscale frame to 8-bit grayscale."""
    if image is None or image.size == 0:
        raise DetectionFailure("Empty frame")
    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    return image


def refine_corners(gray: np.ndarray, corners: np.ndarray, window: int) -> np.ndarray:
    """Sub-pixel refinement with ``cv2.cornerSubPix``."""
    points = np.ascontiguousarray(corners, dtype=np.float32).reshape(-1, 1, 2)
    cv2.cornerSubPix(gray, points, (window, window), (-1, -1), _SUBPIX_CRITERIA)
    return points.reshape(-1, 2).astype(np.float64)


def order_corners(corners: np.ndarray, pattern_size: Tuple[int, int],
                  tolerance: float = 0.35) -> np.ndarray:
    """
    Put detected corners into canonical row-major order.

    The four extreme corners (top-left, top-right, bottom-right, bottom-left
    in image coordinates) define a perspective map onto the ideal grid; every
    corner must land within ``tolerance`` cells of a distinct grid node.

    Args:
        corners: Unordered corners, shape (N, 2)
        pattern_size: Inner corners (cols, rows)
        tolerance: Maximum distance to the nearest grid node, in cells

    Returns:
        Ordered corners, shape (rows * cols, 2)

    Raises:
        DetectionFailure: If the corners do not form the expected grid
    """
    cols, rows = pattern_size
    points = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    required = cols * rows
    if len(points) != required:
        raise DetectionFailure("Wrong number of corners", found=len(points), required=required)

    total = points.sum(axis=1)
    diff = points[:, 0] - points[:, 1]
    extremes = [np.argmin(total), np.argmax(diff), np.argmax(total), np.argmin(diff)]
    if len(set(int(i) for i in extremes)) < 4:
        raise DetectionFailure("Ambiguous board outline", found=len(points), required=required)

    src = points[extremes].astype(np.float32)
    dst = np.float32([[0, 0], [cols - 1, 0], [cols - 1, rows - 1], [0, rows - 1]])
    transform = cv2.getPerspectiveTransform(src, dst)
    grid = cv2.perspectiveTransform(points.reshape(-1, 1, 2), transform).reshape(-1, 2)

    nodes = np.rint(grid)
    residual = np.linalg.norm(grid - nodes, axis=1)
    in_grid = ((nodes[:, 0] >= 0) & (nodes[:, 0] <= cols - 1) &
               (nodes[:, 1] >= 0) & (nodes[:, 1] <= rows - 1))
    if not np.all(in_grid & (residual < tolerance)):
        raise DetectionFailure("Corners do not form a regular grid", found=len(points), required=required)

    index = (nodes[:, 1] * cols + nodes[:, 0]).astype(int)
    if len(np.unique(index)) != required:
        raise DetectionFailure("Corners collide on the grid", found=len(np.unique(index)), required=required)

    ordered = np.empty_like(points)
    ordered[index] = points
    return ordered


def _sample_patch(gray: np.ndarray, point: np.ndarray, radius: int = 1) -> Optional[float]:
    h, w = gray.shape
    x, y = int(round(point[0])), int(round(point[1]))
    if x - radius < 0 or y - radius < 0 or x + radius >= w or y + radius >= h:
        return None
    return float(gray[y - radius:y + radius + 1, x - radius:x + radius + 1].mean())


def is_chessboard_square(gray: np.ndarray, quad: np.ndarray,
                         config: DetectorConfig = DetectorConfig()) -> Tuple[bool, float]:
    """
    Check whether a quadrilateral looks like a dark chessboard square.

    The quad must be convex, have a plausible area relative to the image and
    a bounded side ratio, and be darker than the image just outside each of
    its four edges.

    Args:
        gray: 8-bit grayscale image
        quad: Quad vertices, shape (4, 2)
        config: Detector settings with the area, ratio and score bounds

    Returns:
        Tuple of (is_square, score) where score is the minimum edge contrast / 255
    """
    quad = np.asarray(quad, dtype=np.float64).reshape(-1, 2)
    if len(quad) != 4:
        return False, 0.0

    contour = quad.astype(np.float32).reshape(-1, 1, 2)
    if not cv2.isContourConvex(contour):
        return False, 0.0

    image_area = float(gray.shape[0] * gray.shape[1])
    area = cv2.contourArea(contour)
    if not (config.min_area_fraction * image_area <= area <= config.max_area_fraction * image_area):
        return False, 0.0

    sides = np.linalg.norm(quad - np.roll(quad, -1, axis=0), axis=1)
    if sides.min() <= 0 or sides.max() / sides.min() > config.max_side_ratio:
        return False, 0.0

    center = quad.mean(axis=0)
    inner = (center + (quad - center) * 0.5).astype(np.int32)
    mask = np.zeros(gray.shape, dtype=np.uint8)
    cv2.fillConvexPoly(mask, inner, 255)
    if not mask.any():
        return False, 0.0
    interior = float(cv2.mean(gray, mask=mask)[0])

    contrasts = []
    for i in range(4):
        midpoint = 0.5 * (quad[i] + quad[(i + 1) % 4])
        outside = _sample_patch(gray, center + (midpoint - center) * 1.5)
        if outside is None:
            return False, 0.0
        contrasts.append(outside - interior)

    score = min(contrasts) / 255.0
    return score >= config.score_threshold, score


def _cluster_vertices(vertices: np.ndarray, radius: float) -> List[np.ndarray]:
    clusters: List[List[np.ndarray]] = []
    centroids: List[np.ndarray] = []
    for vertex in vertices:
        for i, centroid in enumerate(centroids):
            if np.linalg.norm(vertex - centroid) < radius:
                clusters[i].append(vertex)
                centroids[i] = np.mean(clusters[i], axis=0)
                break
        else:
            clusters.append([vertex])
            centroids.append(vertex.copy())
    return [np.array(c) for c in clusters]


def find_square_corners(gray: np.ndarray, config: DetectorConfig = DetectorConfig(),
                        score_threshold: Optional[float] = None) -> np.ndarray:
    """
    Quad-scoring fallback detector.

    Args:
        gray: 8-bit grayscale image
        config: Detector settings
        score_threshold: Overrides ``config.score_threshold`` when given

    Returns:
        Unordered inner corners, shape (N, 2)

    Raises:
        DetectionFailure: If the corner count does not match the pattern
    """
    if score_threshold is not None:
        config = dataclasses.replace(config, score_threshold=score_threshold)
    required = config.corner_count

    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    # Diagonal neighbours touch at a single pixel until eroded
    binary = cv2.erode(binary, np.ones((3, 3), np.uint8), iterations=1)
    contours, _ = cv2.findContours(binary, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)

    quads = []
    for contour in contours:
        perimeter = cv2.arcLength(contour, True)
        approx = cv2.approxPolyDP(contour, 0.05 * perimeter, True)
        if len(approx) != 4:
            continue
        quad = approx.reshape(4, 2).astype(np.float64)
        accepted, _ = is_chessboard_square(gray, quad, config)
        if accepted:
            quads.append(quad)

    if len(quads) < 2:
        raise DetectionFailure("Too few chessboard squares", found=0, required=required)

    quads = np.array(quads)
    side = float(np.median(np.linalg.norm(quads - np.roll(quads, -1, axis=1), axis=2)))
    radius = max(3.0, 0.3 * side)

    clusters = _cluster_vertices(quads.reshape(-1, 2), radius)
    corners = np.array([c.mean(axis=0) for c in clusters if len(c) >= 2])
    if len(corners) != required:
        raise DetectionFailure("Shared square vertices do not match the pattern",
                               found=len(corners), required=required)

    window = int(max(2, min(config.subpix_window, side / 4)))
    logger.debug(f"Square detector: {len(quads)} quads, {len(corners)} corners, side {side:.1f}px")
    return refine_corners(gray, corners, window)


def find_opencv_corners(gray: np.ndarray, config: DetectorConfig = DetectorConfig(),
                        max_attempts: Optional[int] = None) -> Tuple[Optional[np.ndarray], int]:
    """
    Run the OpenCV chessboard finders.

    Returns:
        Tuple of (unordered corners or None, number of finder calls made)
    """
    budget = config.max_attempts if max_attempts is None else max_attempts
    attempts = 0

    for flags in _CHESSBOARD_FLAG_SETS:
        if attempts >= budget:
            return None, attempts
        attempts += 1
        found, corners = cv2.findChessboardCorners(gray, config.pattern_size, flags=flags)
        if found:
            return refine_corners(gray, corners, config.subpix_window), attempts

    if attempts >= budget:
        return None, attempts
    attempts += 1
    found, corners = cv2.findChessboardCornersSB(
        gray, config.pattern_size, flags=cv2.CALIB_CB_NORMALIZE_IMAGE | cv2.CALIB_CB_EXHAUSTIVE
    )
    if found:
        return refine_corners(gray, corners, config.subpix_window), attempts
    return None, attempts


class CornerDetector:
    """
    Chessboard corner detector with a bounded strategy chain.

    Usage:
        detector = CornerDetector(DetectorConfig(pattern_size=(6, 4)))
        corners = detector.find_corners(frame, CameraPosition.FRONT)
    """

    def __init__(self, config: DetectorConfig = DetectorConfig()):
        self.config = config

    def find_corners(self, image: np.ndarray,
                     position: Union[CameraPosition, str, None] = None) -> np.ndarray:
        """
        Find the chessboard's inner corners in canonical order.

        Args:
            image: Grayscale or BGR frame
            position: Camera position tag, used in errors and logs

        Returns:
            Corners, shape (rows * cols, 2)

        Raises:
            DetectionFailure: If no strategy yields the full, valid corner set
        """
        tag = position.value if isinstance(position, CameraPosition) else position
        gray = to_gray(image)
        required = self.config.corner_count
        attempts_left = self.config.max_attempts
        best_found = 0

        for strategy in self.config.strategies:
            if attempts_left <= 0:
                break
            try:
                if strategy is DetectionStrategy.OPENCV:
                    corners, used = find_opencv_corners(gray, self.config, attempts_left)
                    attempts_left -= used
                    if corners is None:
                        continue
                else:
                    attempts_left -= 1
                    corners = find_square_corners(gray, self.config)
                ordered = order_corners(corners, self.config.pattern_size, self.config.grid_tolerance)
            except DetectionFailure as e:
                best_found = max(best_found, e.found)
                logger.debug(f"[{tag}] {strategy.value} strategy failed: {e}")
                continue
            except cv2.error as e:
                logger.debug(f"[{tag}] {strategy.value} strategy raised OpenCV error: {e}")
                continue

            logger.info(f"[{tag}] Found {len(ordered)} corners with {strategy.value} strategy")
            return ordered

        raise DetectionFailure("Chessboard not found", position=tag, found=best_found, required=required)
