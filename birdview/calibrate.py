"""
Rig Calibration
===============

Orchestrates one calibration attempt for the four-camera rig:

    detect corners -> undistort -> DLT homography -> homography polish
                   -> pose (extrinsic-only or full) -> optional cross-camera
                      consistency refinement

A successful attempt yields a new immutable ``CalibrationSnapshot``. Any
``DetectionFailure``, ``GeometryFailure`` or ``SolverNonConvergence`` aborts
the attempt before anything is persisted.
"""

import dataclasses
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .camera_model import CameraParameters, FisheyeCamera
from .config import CAMERA_ORDER, CameraPosition, RigConfig
from .corner_detector import CornerDetector, DetectorConfig
from .exceptions import ConfigError, RuntimeMismatch
from .homography import (apply_homography, estimate_homography, generate_target_points,
                         homography_to_params, params_to_homography)
from .logger import get_logger
from .optimizer import (HOMOGRAPHY_PARAMS, INTRINSIC_PARAMS, OverlapMatch, SolverOptions,
                        cross_camera_problem, extrinsic_problem, full_calibration_problem,
                        homography_problem, pack_intrinsics, solve, unpack_intrinsics)

logger = get_logger(__name__)

CameraSet = Union[Dict[CameraPosition, CameraParameters], Sequence[CameraParameters]]


def _readonly(array: np.ndarray, shape: Tuple[int, ...]) -> np.ndarray:
    array = np.array(array, dtype=np.float64).reshape(shape)
    array.flags.writeable = False
    return array


def _by_position(values: CameraSet, name: str) -> tuple:
    if isinstance(values, dict):
        missing = [p.value for p in CAMERA_ORDER if p not in values]
        if missing:
            raise ConfigError(f"Missing {name} for: {', '.join(missing)}")
        return tuple(values[p] for p in CAMERA_ORDER)
    values = tuple(values)
    if len(values) != len(CAMERA_ORDER):
        raise ConfigError(f"Expected {len(CAMERA_ORDER)} {name}, got {len(values)}")
    return values


@dataclass(frozen=True, eq=False)
class ChessboardObservation:
    """Corners of one camera's chessboard with their known positions."""
    position: CameraPosition
    image_points: np.ndarray          # distorted pixels
    undistorted_points: np.ndarray    # pixels of the new_K image
    object_points: np.ndarray         # ground (X, Y, 0), metres
    target_points: np.ndarray         # canvas pixels


@dataclass(frozen=True, eq=False)
class CalibrationSnapshot:
    """
    Immutable result of a successful calibration.

    Every per-camera tuple is indexed by ``CameraPosition.index``.
    """
    cameras: Tuple[CameraParameters, ...]
    homographies: Tuple[np.ndarray, ...]
    rvecs: Tuple[np.ndarray, ...]
    tvecs: Tuple[np.ndarray, ...]
    canvas_size: Tuple[int, int]
    rms: Tuple[float, ...] = field(default=(0.0, 0.0, 0.0, 0.0))

    def __post_init__(self):
        count = len(CAMERA_ORDER)
        for name in ("cameras", "homographies", "rvecs", "tvecs", "rms"):
            if len(getattr(self, name)) != count:
                raise ConfigError(f"Snapshot needs {count} {name}, got {len(getattr(self, name))}")
        object.__setattr__(self, "cameras", tuple(self.cameras))
        object.__setattr__(self, "homographies", tuple(_readonly(H, (3, 3)) for H in self.homographies))
        object.__setattr__(self, "rvecs", tuple(_readonly(r, (3,)) for r in self.rvecs))
        object.__setattr__(self, "tvecs", tuple(_readonly(t, (3,)) for t in self.tvecs))
        object.__setattr__(self, "canvas_size", tuple(int(v) for v in self.canvas_size))
        object.__setattr__(self, "rms", tuple(float(v) for v in self.rms))

    @property
    def camera_sizes(self) -> Tuple[Tuple[int, int], ...]:
        return tuple(c.image_size for c in self.cameras)

    def camera(self, position: CameraPosition) -> CameraParameters:
        return self.cameras[position.index]

    def homography(self, position: CameraPosition) -> np.ndarray:
        return self.homographies[position.index]

    def pose(self, position: CameraPosition) -> Tuple[np.ndarray, np.ndarray]:
        return self.rvecs[position.index], self.tvecs[position.index]

    def rescaled(self, position: CameraPosition, frame_size: Tuple[int, int]) -> "CalibrationSnapshot":
        """
        Snapshot for a camera delivering frames at another resolution.

        Intrinsics, the undistorted matrix and the homography are rescaled;
        the pose does not depend on resolution.
        """
        index = position.index
        old = self.cameras[index]
        sx = frame_size[0] / old.image_size[0]
        sy = frame_size[1] / old.image_size[1]

        cameras = list(self.cameras)
        homographies = list(self.homographies)
        cameras[index] = old.scaled(frame_size)
        H = self.homographies[index] @ np.diag([1.0 / sx, 1.0 / sy, 1.0])
        homographies[index] = H / H[2, 2]
        return dataclasses.replace(self, cameras=tuple(cameras), homographies=tuple(homographies))


@dataclass(frozen=True)
class CalibratorOptions:
    """Calibration settings."""
    refine_intrinsics: bool = False     # full calibration instead of extrinsic-only
    cross_camera: bool = True           # joint refinement when overlap matches are given
    overlap_weight: float = 1.0
    solver: SolverOptions = SolverOptions()


@dataclass(frozen=True, eq=False)
class CameraCalibration:
    """Per-camera refinement result."""
    params: CameraParameters
    homography: np.ndarray
    rvec: np.ndarray
    tvec: np.ndarray
    rms: float
    observation: ChessboardObservation


class Calibrator:
    """
    Calibration orchestrator for the four-camera rig.

    Usage:
        calibrator = Calibrator(rig_config, load_camera_parameters("intrinsics.yaml"))
        snapshot = calibrator.run([front, rear, left, right])
        save_calibration("calibration.yaml", snapshot)
    """

    def __init__(self, config: RigConfig, cameras: CameraSet,
                 detector: Optional[CornerDetector] = None,
                 options: CalibratorOptions = CalibratorOptions()):
        """
        Initialize the calibrator.

        Args:
            config: Rig configuration (board layout, vehicle, canvas)
            cameras: Intrinsics per camera position
            detector: Corner detector; defaults to one matching the board
            options: Refinement settings
        """
        self.config = config
        self.cameras = _by_position(cameras, "camera parameters")
        self.detector = detector or CornerDetector(DetectorConfig.for_chessboard(config.chessboard))
        self.options = options

    def observe(self, position: CameraPosition, frame: np.ndarray) -> ChessboardObservation:
        """Detect and undistort the chessboard corners of one camera."""
        params = self.cameras[position.index]
        height, width = frame.shape[:2]
        if (width, height) != params.image_size:
            raise RuntimeMismatch(position.value, params.image_size, (width, height))

        corners = self.detector.find_corners(frame, position)
        camera = FisheyeCamera(params, position)
        return ChessboardObservation(
            position=position,
            image_points=corners,
            undistorted_points=camera.undistort_points(corners),
            object_points=self.config.object_points(position),
            target_points=generate_target_points(self.config, position),
        )

    def _refine_pose(self, camera: FisheyeCamera,
                     observation: ChessboardObservation) -> Tuple[CameraParameters, np.ndarray, np.ndarray]:
        params = camera.params
        rvec, tvec = camera.estimate_extrinsics(observation.object_points, observation.image_points)
        pose = np.concatenate([rvec, tvec])

        if self.options.refine_intrinsics:
            problem = full_calibration_problem(observation.object_points, observation.image_points)
            x0 = np.concatenate([pack_intrinsics(params.camera_matrix, params.distortion), pose])
            result = solve(problem, x0, self.options.solver)
            # The fitted model has zero skew
            K, D = unpack_intrinsics(result.x[:INTRINSIC_PARAMS])
            params = params.with_intrinsics(K, D)
            pose = result.x[INTRINSIC_PARAMS:]
        else:
            problem = extrinsic_problem(observation.object_points, observation.image_points,
                                        params.camera_matrix, params.distortion)
            pose = solve(problem, pose, self.options.solver).x

        logger.debug(f"[{observation.position.value}] pose rvec={pose[:3]}, tvec={pose[3:]}")
        return params, pose[:3].copy(), pose[3:].copy()

    def calibrate_camera(self, observation: ChessboardObservation) -> CameraCalibration:
        """Pose and homography for one camera."""
        position = observation.position
        camera = FisheyeCamera(self.cameras[position.index], position)
        params, rvec, tvec = self._refine_pose(camera, observation)

        if params is not camera.params:
            camera = FisheyeCamera(params, position)
            observation = dataclasses.replace(
                observation, undistorted_points=camera.undistort_points(observation.image_points)
            )

        H0 = estimate_homography(observation.undistorted_points, observation.target_points)
        result = solve(
            homography_problem(observation.undistorted_points, observation.target_points),
            homography_to_params(H0),
            self.options.solver,
        )

        logger.info(f"[{position.value}] homography rms={result.rms:.4f}px")
        return CameraCalibration(
            params=params,
            homography=params_to_homography(result.x),
            rvec=rvec,
            tvec=tvec,
            rms=result.rms,
            observation=observation,
        )

    def refine_cross_camera(self, calibrations: List[CameraCalibration],
                            matches: Sequence[OverlapMatch]) -> List[np.ndarray]:
        """
        Jointly refine all homographies so adjacent cameras agree on overlaps.

        Args:
            calibrations: Per-camera results in ``CAMERA_ORDER``
            matches: Overlap features in raw (distorted) pixels

        Returns:
            Refined homographies in ``CAMERA_ORDER``
        """
        cameras = [FisheyeCamera(c.params, p) for c, p in zip(calibrations, CAMERA_ORDER)]
        undistorted = [
            OverlapMatch(
                camera_a=m.camera_a,
                camera_b=m.camera_b,
                points_a=cameras[m.camera_a].undistort_points(m.points_a),
                points_b=cameras[m.camera_b].undistort_points(m.points_b),
                weight=m.weight * self.options.overlap_weight,
            )
            for m in matches
        ]

        problem = cross_camera_problem(
            [c.observation.undistorted_points for c in calibrations],
            [c.observation.target_points for c in calibrations],
            undistorted,
        )
        x0 = np.concatenate([homography_to_params(c.homography) for c in calibrations])
        result = solve(problem, x0, self.options.solver)
        logger.info(f"Cross-camera refinement over {len(matches)} matches: rms={result.rms:.4f}px")

        return [
            params_to_homography(result.x[i * HOMOGRAPHY_PARAMS:(i + 1) * HOMOGRAPHY_PARAMS])
            for i in range(len(calibrations))
        ]

    def run(self, frames: Sequence[np.ndarray],
            overlap_matches: Sequence[OverlapMatch] = ()) -> CalibrationSnapshot:
        """
        Run one calibration attempt.

        Args:
            frames: One frame per camera in ``CAMERA_ORDER``
            overlap_matches: Optional overlap features for cross-camera refinement

        Returns:
            New calibration snapshot

        Raises:
            DetectionFailure, GeometryFailure, SolverNonConvergence: The attempt failed
        """
        frames = _by_position(frames, "frames")
        calibrations = []
        for position, frame in zip(CAMERA_ORDER, frames):
            observation = self.observe(position, frame)
            calibrations.append(self.calibrate_camera(observation))

        homographies = [c.homography for c in calibrations]
        if overlap_matches and self.options.cross_camera:
            homographies = self.refine_cross_camera(calibrations, overlap_matches)

        rms = []
        for calibration, H in zip(calibrations, homographies):
            mapped = apply_homography(H, calibration.observation.undistorted_points)
            errors = np.linalg.norm(mapped - calibration.observation.target_points, axis=1)
            rms.append(float(np.sqrt(np.mean(errors ** 2))))

        snapshot = CalibrationSnapshot(
            cameras=tuple(c.params for c in calibrations),
            homographies=tuple(homographies),
            rvecs=tuple(c.rvec for c in calibrations),
            tvecs=tuple(c.tvec for c in calibrations),
            canvas_size=self.config.canvas.size,
            rms=tuple(rms),
        )
        logger.info("Calibration succeeded: " + ", ".join(
            f"{p.value}={e:.3f}px" for p, e in zip(CAMERA_ORDER, rms)))
        return snapshot


# Persistence

def save_calibration(path: Union[str, Path], snapshot: CalibrationSnapshot) -> None:
    """
    Write the calibration file atomically.

    The snapshot is written to a temporary file next to ``path`` which then
    replaces ``path``, so readers never see a partial file.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(suffix=".yaml", prefix=".calibration-", dir=str(path.parent))
    os.close(fd)

    try:
        fs = cv2.FileStorage(tmp_name, cv2.FILE_STORAGE_WRITE)
        if not fs.isOpened():
            raise ConfigError(f"Cannot write calibration file: {tmp_name}")
        try:
            fs.write("canvas_size", np.array(snapshot.canvas_size, dtype=np.int32))
            for position in CAMERA_ORDER:
                i = position.index
                params = snapshot.cameras[i]
                prefix = position.value
                fs.write(f"{prefix}_homography", np.array(snapshot.homographies[i]))
                fs.write(f"{prefix}_rvec", np.array(snapshot.rvecs[i]).reshape(3, 1))
                fs.write(f"{prefix}_tvec", np.array(snapshot.tvecs[i]).reshape(3, 1))
                fs.write(f"{prefix}_camera_size", np.array(params.image_size, dtype=np.int32))
                fs.write(f"{prefix}_camera_matrix", np.array(params.camera_matrix))
                fs.write(f"{prefix}_dist_coeffs", np.array(params.distortion).reshape(4, 1))
                fs.write(f"{prefix}_scale_xy", np.array(params.scale_xy, dtype=np.float64))
                fs.write(f"{prefix}_shift_xy", np.array(params.shift_xy, dtype=np.float64))
                fs.write(f"{prefix}_rms", float(snapshot.rms[i]))
        finally:
            fs.release()
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise

    logger.info(f"Saved calibration to {path}")


def _node_mat(fs: cv2.FileStorage, key: str) -> np.ndarray:
    node = fs.getNode(key)
    value = None if node.empty() else node.mat()
    if value is None:
        raise ConfigError(f"Calibration file is missing '{key}'")
    return value


def load_calibration(path: Union[str, Path]) -> CalibrationSnapshot:
    """
    Read a calibration file written by ``save_calibration``.

    Raises:
        ConfigError: If the file is missing or incomplete
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Calibration file not found: {path}")

    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise ConfigError(f"Cannot open calibration file: {path}")

    try:
        canvas_size = tuple(int(v) for v in _node_mat(fs, "canvas_size").flatten())
        cameras, homographies, rvecs, tvecs, rms = [], [], [], [], []
        for position in CAMERA_ORDER:
            prefix = position.value
            cameras.append(CameraParameters(
                camera_matrix=_node_mat(fs, f"{prefix}_camera_matrix"),
                distortion=_node_mat(fs, f"{prefix}_dist_coeffs"),
                image_size=tuple(int(v) for v in _node_mat(fs, f"{prefix}_camera_size").flatten()),
                scale_xy=tuple(_node_mat(fs, f"{prefix}_scale_xy").flatten()),
                shift_xy=tuple(_node_mat(fs, f"{prefix}_shift_xy").flatten()),
            ))
            homographies.append(_node_mat(fs, f"{prefix}_homography"))
            rvecs.append(_node_mat(fs, f"{prefix}_rvec").flatten())
            tvecs.append(_node_mat(fs, f"{prefix}_tvec").flatten())
            rms_node = fs.getNode(f"{prefix}_rms")
            rms.append(0.0 if rms_node.empty() else rms_node.real())
    finally:
        fs.release()

    if len(canvas_size) != 2:
        raise ConfigError(f"Invalid canvas_size in {path}")

    snapshot = CalibrationSnapshot(
        cameras=tuple(cameras),
        homographies=tuple(homographies),
        rvecs=tuple(rvecs),
        tvecs=tuple(tvecs),
        canvas_size=canvas_size,
        rms=tuple(rms),
    )
    logger.info(f"Loaded calibration from {path}")
    return snapshot
