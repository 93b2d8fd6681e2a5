"""
Bird's-Eye Composition
======================

Per-frame pipeline turning four camera frames into one top-down canvas:

    remap (parallel per camera) -> tone gains -> apply gains (parallel)
        -> weighted or gradient-domain blend (single-threaded merge)

Everything derived from a calibration (remap tables, coverage, overlap
masks, blend weights) lives in an immutable ``CompositionState``.
Recalibration builds a complete new state and swaps the reference under a
lock; a frame reads the reference once and never sees a torn state.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .blend_masks import BlendMaskBuilder, OverlapMasks
from .calibrate import CalibrationSnapshot
from .camera_model import FisheyeCamera
from .config import CAMERA_ORDER, CameraPosition, RigConfig
from .exceptions import BirdViewError, ConfigError, RuntimeMismatch
from .ground import image_to_ground
from .logger import get_logger
from .poisson import SeamBlender
from .remap import RemapTable, build_remap_table, build_remap_table_from_extrinsics
from .tone import ToneBalancer

logger = get_logger(__name__)

ASPECT_TOLERANCE = 1e-3


class BlendingMethod(Enum):
    """Available blending methods for the final merge."""
    WEIGHTED = "weighted"
    POISSON = "poisson"


class RemapSource(Enum):
    """Which calibration result the remap tables are derived from."""
    HOMOGRAPHY = "homography"
    EXTRINSICS = "extrinsics"


@dataclass(frozen=True, eq=False)
class CompositionState:
    """Read-only tables derived from one calibration snapshot."""
    snapshot: CalibrationSnapshot
    tables: Tuple[RemapTable, ...]
    coverage: np.ndarray
    overlaps: OverlapMasks
    weights: np.ndarray

    def __post_init__(self):
        self.coverage.flags.writeable = False
        self.weights.flags.writeable = False
        for mask in self.overlaps.values():
            mask.flags.writeable = False

    @property
    def frame_sizes(self) -> Tuple[Tuple[int, int], ...]:
        return tuple(t.frame_size for t in self.tables)


@dataclass
class FrameResult:
    """Outcome of one composed frame."""
    image: Optional[np.ndarray]
    error: Optional[str] = None
    gains: np.ndarray = field(default_factory=lambda: np.ones(len(CAMERA_ORDER)))
    processing_time_ms: float = 0.0
    recovered: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def _build_table(snapshot: CalibrationSnapshot, config: RigConfig, position: CameraPosition,
                 source: RemapSource) -> RemapTable:
    camera = FisheyeCamera(snapshot.camera(position), position)
    if source is RemapSource.EXTRINSICS:
        rvec, tvec = snapshot.pose(position)
        return build_remap_table_from_extrinsics(camera, rvec, tvec, config)
    return build_remap_table(camera, snapshot.homography(position), config.canvas.size)


def build_composition_state(snapshot: CalibrationSnapshot, config: RigConfig,
                            source: RemapSource = RemapSource.HOMOGRAPHY) -> CompositionState:
    """
    Derive remap tables and blend weights from a snapshot.

    Args:
        snapshot: Calibration to derive the tables from
        config: Rig configuration
        source: Build tables from the homographies or from the camera poses

    Raises:
        ConfigError: If the snapshot was calibrated for another canvas size
    """
    if tuple(snapshot.canvas_size) != config.canvas.size:
        raise ConfigError(
            f"Calibration canvas {snapshot.canvas_size[0]}x{snapshot.canvas_size[1]} does not "
            f"match configured canvas {config.canvas.width}x{config.canvas.height}"
        )

    tables = tuple(_build_table(snapshot, config, position, source) for position in CAMERA_ORDER)
    coverage, overlaps, weights = BlendMaskBuilder(config).build(tables)
    return CompositionState(snapshot, tables, coverage, overlaps, weights)


class Composition:
    """
    Composition orchestrator.

    Features:
    - Atomic calibration snapshot swap
    - Parallel per-camera remap and tone adjustment
    - Weighted or Poisson blending
    - Frame size mismatch recovery

    Holds a worker pool; call ``close()`` (or use it as a context manager)
    when done.
    """

    def __init__(self, config: RigConfig,
                 snapshot: Optional[CalibrationSnapshot] = None,
                 method: BlendingMethod = BlendingMethod.WEIGHTED,
                 tone_balance: bool = True,
                 car_image: Optional[np.ndarray] = None,
                 max_workers: int = 4,
                 remap_source: RemapSource = RemapSource.HOMOGRAPHY):
        """
        Initialize the composition pipeline.

        Args:
            config: Rig configuration (canvas size and vehicle footprint)
            snapshot: Initial calibration; frames fail until one is provided
            method: Blending method for the final merge
            tone_balance: Whether to estimate and apply per-camera gains
            car_image: Optional image drawn over the vehicle rectangle
            max_workers: Thread count for per-camera work
            remap_source: Derive remap tables from homographies or camera poses
        """
        self.config = config
        self.method = method
        self.tone_balance = tone_balance
        self.max_workers = max_workers
        self.remap_source = remap_source
        self.tone_balancer = ToneBalancer()
        self.seam_blender = SeamBlender()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="birdview")

        x_left, x_right, y_top, y_bottom = config.car_boundaries
        self._car_slice = (slice(y_top, y_bottom), slice(x_left, x_right))
        self.car_image = None
        if car_image is not None:
            self.car_image = cv2.resize(car_image, (x_right - x_left, y_bottom - y_top))

        self._lock = threading.Lock()
        self._state: Optional[CompositionState] = None
        if snapshot is not None:
            self.update_calibration(snapshot)

    @property
    def state(self) -> Optional[CompositionState]:
        with self._lock:
            return self._state

    def close(self) -> None:
        """Shut down the worker pool."""
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "Composition":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def _build_state(self, snapshot: CalibrationSnapshot) -> CompositionState:
        start = time.perf_counter()
        state = build_composition_state(snapshot, self.config, self.remap_source)
        logger.info(f"Composition tables rebuilt in {(time.perf_counter() - start) * 1000:.1f}ms")
        return state

    def update_calibration(self, snapshot: CalibrationSnapshot) -> CompositionState:
        """Build the state for a new snapshot and swap it in."""
        state = self._build_state(snapshot)
        with self._lock:
            self._state = state
        return state

    # Frame size recovery

    @staticmethod
    def _rescaled_snapshot(state: CompositionState,
                           frames: Sequence[np.ndarray]) -> Optional[CalibrationSnapshot]:
        snapshot = state.snapshot
        changed = False
        for position, frame, expected in zip(CAMERA_ORDER, frames, state.frame_sizes):
            actual = (frame.shape[1], frame.shape[0])
            if actual == tuple(expected):
                continue
            sx = actual[0] / expected[0]
            sy = actual[1] / expected[1]
            if abs(sx - sy) >= ASPECT_TOLERANCE:
                raise RuntimeMismatch(position.value, expected, actual)
            logger.warning(f"[{position.value}] frame size changed to {actual[0]}x{actual[1]}, rescaling calibration")
            snapshot = snapshot.rescaled(position, actual)
            changed = True
        return snapshot if changed else None

    def _recover(self, state: CompositionState, frames: Sequence[np.ndarray]) -> CompositionState:
        # The rescaled state replaces only the state it was derived from; a
        # calibration swapped in meanwhile is rescaled in its turn.
        while True:
            snapshot = self._rescaled_snapshot(state, frames)
            if snapshot is None:
                return state
            recovered = self._build_state(snapshot)
            with self._lock:
                if self._state is state:
                    self._state = recovered
                    return recovered
                state = self._state
            logger.info("Calibration changed during frame size recovery, retrying")

    # Per-camera work

    @staticmethod
    def _remap_camera(table: RemapTable, frame: np.ndarray) -> np.ndarray:
        return table.apply(frame)

    def _run_parallel(self, func, items: Sequence[tuple]) -> List[np.ndarray]:
        results: Dict[int, np.ndarray] = {}
        future_to_index = {self._executor.submit(func, *args): i for i, args in enumerate(items)}
        for future in as_completed(future_to_index):
            results[future_to_index[future]] = future.result()
        return [results[i] for i in range(len(items))]

    def _merge(self, images: Sequence[np.ndarray], weights: np.ndarray) -> np.ndarray:
        if self.method is BlendingMethod.POISSON:
            return self.seam_blender.blend(images, weights)

        merged = np.zeros(images[0].shape, dtype=np.float32)
        for image, weight in zip(images, weights):
            if image.ndim == 3:
                weight = weight[..., None]
            merged += image.astype(np.float32) * weight
        return np.clip(np.rint(merged), 0, 255).astype(np.uint8)

    def compose(self, frames: Sequence[np.ndarray]) -> Tuple[np.ndarray, np.ndarray, bool]:
        """
        Compose one canvas.

        Returns:
            Tuple of (canvas, gains, recovered) where ``recovered`` tells
            whether the state was rebuilt for a new frame size

        Raises:
            ConfigError: If no calibration is loaded or a frame is missing
            RuntimeMismatch: If a frame size cannot be recovered
        """
        state = self.state
        if state is None:
            raise ConfigError("No calibration loaded")
        if len(frames) != len(CAMERA_ORDER):
            raise ConfigError(f"Expected {len(CAMERA_ORDER)} frames, got {len(frames)}")
        for position, frame in zip(CAMERA_ORDER, frames):
            if frame is None or frame.size == 0:
                raise ConfigError(f"Missing {position.value} frame")

        recovered_state = self._recover(state, frames)
        recovered = recovered_state is not state
        state = recovered_state

        remapped = self._run_parallel(self._remap_camera, list(zip(state.tables, frames)))

        gains = np.ones(len(CAMERA_ORDER))
        if self.tone_balance:
            gains = self.tone_balancer.estimate(remapped, state.overlaps)
            remapped = self._run_parallel(self.tone_balancer.apply, list(zip(remapped, gains)))

        canvas = self._merge(remapped, state.weights)
        if canvas.ndim == 2:
            canvas = cv2.cvtColor(canvas, cv2.COLOR_GRAY2BGR)

        canvas[self._car_slice] = 0
        if self.car_image is not None:
            canvas[self._car_slice] = self.car_image
        return canvas, gains, recovered

    def run(self, frames: Sequence[np.ndarray]) -> np.ndarray:
        """Compose one canvas, raising on failure."""
        canvas, _, _ = self.compose(frames)
        return canvas

    def process_frame(self, frames: Sequence[np.ndarray]) -> FrameResult:
        """
        Compose one canvas, reporting failures in the result instead of raising.
        """
        start = time.perf_counter()
        try:
            canvas, gains, recovered = self.compose(frames)
        except BirdViewError as e:
            logger.error(f"Frame failed: {e}")
            return FrameResult(image=None, error=str(e),
                               processing_time_ms=(time.perf_counter() - start) * 1000)

        return FrameResult(
            image=canvas,
            gains=gains,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            recovered=recovered,
        )

    def camera_to_ground(self, position: CameraPosition, pixels: np.ndarray) -> np.ndarray:
        """Ground point(s) in metres seen at raw pixel(s) of ``position``."""
        state = self.state
        if state is None:
            raise ConfigError("No calibration loaded")
        snapshot = state.snapshot
        rvec, tvec = snapshot.pose(position)
        return image_to_ground(FisheyeCamera(snapshot.camera(position), position), pixels, rvec, tvec)
