"""
Rig Configuration
=================

Configuration of the four-camera rig using frozen dataclasses. A ``RigConfig``
value is passed explicitly to every component, so calibration sessions for
different vehicles can coexist in one process.

Ground frame: origin at the vehicle centre, X to the right, Y forward, Z up,
units in metres. Canvas frame: pixels, origin top-left, forward is up.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import numpy as np
import yaml

from .exceptions import ConfigError


class CameraPosition(Enum):
    """Fixed camera positions. Iteration order is the rig's indexing order."""
    FRONT = "front"
    REAR = "rear"
    LEFT = "left"
    RIGHT = "right"

    @property
    def index(self) -> int:
        return CAMERA_ORDER.index(self)

    @property
    def forward(self) -> np.ndarray:
        """Unit ground vector the camera looks along."""
        return np.array(_FORWARD[self.value], dtype=np.float64)

    @property
    def image_right(self) -> np.ndarray:
        """Unit ground vector that appears as 'right' in the camera image."""
        fx, fy = _FORWARD[self.value]
        return np.array((fy, -fx), dtype=np.float64)


_FORWARD = {
    "front": (0.0, 1.0),
    "rear": (0.0, -1.0),
    "left": (-1.0, 0.0),
    "right": (1.0, 0.0),
}

CAMERA_ORDER: Tuple[CameraPosition, ...] = tuple(CameraPosition)

# Cameras whose views share a corner of the canvas
ADJACENT_PAIRS: Tuple[Tuple[CameraPosition, CameraPosition], ...] = (
    (CameraPosition.FRONT, CameraPosition.LEFT),
    (CameraPosition.FRONT, CameraPosition.RIGHT),
    (CameraPosition.REAR, CameraPosition.LEFT),
    (CameraPosition.REAR, CameraPosition.RIGHT),
)


@dataclass(frozen=True)
class ChessboardConfig:
    """Calibration chessboard layout."""
    cols: int = 6               # inner corners per row
    rows: int = 4               # inner corners per column
    square_size: float = 0.3    # metres
    gap: float = 0.3            # distance between vehicle body and board edge, metres

    @property
    def pattern_size(self) -> Tuple[int, int]:
        """OpenCV pattern size (points per row, points per column)."""
        return self.cols, self.rows

    @property
    def corner_count(self) -> int:
        return self.cols * self.rows

    @property
    def depth(self) -> float:
        """Full board extent along the camera's viewing direction, metres."""
        return (self.rows + 1) * self.square_size


@dataclass(frozen=True)
class VehicleConfig:
    """Vehicle footprint."""
    length: float = 5.117
    width: float = 2.193
    side_board_offset: float = 1.5  # side board centre behind the front edge, metres


@dataclass(frozen=True)
class CanvasConfig:
    """Output canvas size and the lateral ground range it covers."""
    width: int = 600
    height: int = 600
    view_range: float = 20.0  # metres across the canvas width

    @property
    def size(self) -> Tuple[int, int]:
        """Canvas size as (width, height)."""
        return self.width, self.height

    @property
    def pixels_per_meter(self) -> float:
        return self.width / self.view_range


@dataclass(frozen=True)
class RigConfig:
    """
    Complete rig configuration.

    Together the chessboard, vehicle and canvas sections fix the
    metric-to-pixel scale used to generate homography target points.
    """
    chessboard: ChessboardConfig = field(default_factory=ChessboardConfig)
    vehicle: VehicleConfig = field(default_factory=VehicleConfig)
    canvas: CanvasConfig = field(default_factory=CanvasConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError for values that cannot describe a rig."""
        board, vehicle, canvas = self.chessboard, self.vehicle, self.canvas
        if board.cols < 2 or board.rows < 2:
            raise ConfigError(f"Chessboard needs at least 2x2 inner corners, got {board.cols}x{board.rows}")
        if board.square_size <= 0 or board.gap < 0:
            raise ConfigError("Chessboard square size must be positive and gap non-negative")
        if vehicle.length <= 0 or vehicle.width <= 0:
            raise ConfigError(f"Invalid vehicle footprint: {vehicle.length}x{vehicle.width}")
        if canvas.width <= 0 or canvas.height <= 0 or canvas.view_range <= 0:
            raise ConfigError(f"Invalid canvas: {canvas.width}x{canvas.height}, range {canvas.view_range}")

        for position in CAMERA_ORDER:
            targets = self.ground_to_canvas(self.board_ground_points(position))
            inside = ((targets[:, 0] >= 0) & (targets[:, 0] <= canvas.width - 1) &
                      (targets[:, 1] >= 0) & (targets[:, 1] <= canvas.height - 1))
            if not inside.all():
                raise ConfigError(
                    f"{position.value} chessboard falls outside the canvas; "
                    f"increase view_range or move the board"
                )

    # Canvas <-> ground mapping

    @property
    def canvas_from_ground(self) -> np.ndarray:
        """3x3 affine matrix mapping ground (X, Y, 1) to canvas (u, v, 1)."""
        ppm = self.canvas.pixels_per_meter
        return np.array([
            [ppm, 0.0, self.canvas.width / 2.0],
            [0.0, -ppm, self.canvas.height / 2.0],
            [0.0, 0.0, 1.0],
        ])

    def ground_to_canvas(self, points: np.ndarray) -> np.ndarray:
        """Map ground points (N, 2) in metres to canvas pixels."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        ppm = self.canvas.pixels_per_meter
        u = self.canvas.width / 2.0 + points[:, 0] * ppm
        v = self.canvas.height / 2.0 - points[:, 1] * ppm
        return np.stack([u, v], axis=1)

    def canvas_to_ground(self, points: np.ndarray) -> np.ndarray:
        """Map canvas pixels (N, 2) to ground points in metres."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        ppm = self.canvas.pixels_per_meter
        x = (points[:, 0] - self.canvas.width / 2.0) / ppm
        y = (self.canvas.height / 2.0 - points[:, 1]) / ppm
        return np.stack([x, y], axis=1)

    @property
    def car_boundaries(self) -> Tuple[int, int, int, int]:
        """Vehicle rectangle on the canvas: (x_left, x_right, y_top, y_bottom)."""
        ppm = self.canvas.pixels_per_meter
        cx, cy = self.canvas.width / 2.0, self.canvas.height / 2.0
        half_w = self.vehicle.width / 2.0 * ppm
        half_l = self.vehicle.length / 2.0 * ppm
        x_left = int(np.clip(round(cx - half_w), 0, self.canvas.width))
        x_right = int(np.clip(round(cx + half_w), 0, self.canvas.width))
        y_top = int(np.clip(round(cy - half_l), 0, self.canvas.height))
        y_bottom = int(np.clip(round(cy + half_l), 0, self.canvas.height))
        return x_left, x_right, y_top, y_bottom

    # Chessboard layout

    def board_center(self, position: CameraPosition) -> np.ndarray:
        """Ground position of the chessboard centre seen by ``position``."""
        board, vehicle = self.chessboard, self.vehicle
        half_depth = board.depth / 2.0
        if position in (CameraPosition.FRONT, CameraPosition.REAR):
            distance = vehicle.length / 2.0 + board.gap + half_depth
            return position.forward * distance
        distance = vehicle.width / 2.0 + board.gap + half_depth
        longitudinal = vehicle.length / 2.0 - vehicle.side_board_offset
        return position.forward * distance + np.array([0.0, longitudinal])

    def board_ground_points(self, position: CameraPosition) -> np.ndarray:
        """
        Inner chessboard corners on the ground, ordered like detections.

        Row 0 is the row farthest from the vehicle; columns run along the
        camera's image-right direction. Row-major, shape (rows * cols, 2).
        """
        board = self.chessboard
        center = self.board_center(position)
        right = position.image_right
        forward = position.forward
        points = []
        for r in range(board.rows):
            for c in range(board.cols):
                along = (c - (board.cols - 1) / 2.0) * board.square_size
                outward = ((board.rows - 1) / 2.0 - r) * board.square_size
                points.append(center + right * along + forward * outward)
        return np.array(points, dtype=np.float64)

    def object_points(self, position: CameraPosition) -> np.ndarray:
        """Inner chessboard corners as 3D points (X, Y, 0), shape (N, 3)."""
        ground = self.board_ground_points(position)
        return np.hstack([ground, np.zeros((len(ground), 1))])


_SECTIONS = {
    "chessboard": ChessboardConfig,
    "vehicle": VehicleConfig,
    "canvas": CanvasConfig,
}


def rig_config_from_dict(data: Dict[str, Any]) -> RigConfig:
    """
    Build a RigConfig from a nested dictionary.

    Raises:
        ConfigError: For unknown sections/keys or values of the wrong type
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Rig configuration must be a mapping, got {type(data).__name__}")

    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ConfigError(f"Unknown configuration sections: {sorted(unknown)}")

    sections = {}
    for name, section_cls in _SECTIONS.items():
        values = data.get(name) or {}
        if not isinstance(values, dict):
            raise ConfigError(f"Section '{name}' must be a mapping")
        allowed = {f.name: f.type for f in fields(section_cls)}
        bad = set(values) - set(allowed)
        if bad:
            raise ConfigError(f"Unknown keys in '{name}': {sorted(bad)}")
        kwargs = {}
        for key, value in values.items():
            default = getattr(section_cls(), key)
            try:
                kwargs[key] = type(default)(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"Invalid value for {name}.{key}: {value!r} ({e})")
        sections[name] = section_cls(**kwargs)

    return RigConfig(**sections)


def load_rig_config(path: Union[str, Path]) -> RigConfig:
    """
    Load a rig configuration YAML file.

    Raises:
        ConfigError: If the file is missing, unreadable or malformed
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Rig configuration not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {path}: {e}")
    return rig_config_from_dict(data)
