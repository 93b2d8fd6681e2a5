"""
Nonlinear Refinement
====================

Least-squares refinement of homographies, poses and intrinsics.

All four residual models share one residual function. A ``ResidualProblem``
carries a ``ResidualKind`` tag describing the fixed data it closes over and a
``FreeGroups`` value saying which unknowns the parameter vector holds:

- HOMOGRAPHY: ``H(p) - target`` for one camera (8 unknowns)
- CROSS_CAMERA: anchors for every camera plus ``H_a(p_a) - H_b(p_b)`` for each
  overlap match (8 unknowns per camera)
- FULL_CALIBRATION: ``project(K, D, pose, P) - observed`` (8 intrinsics + 6 pose)
- EXTRINSIC_ONLY: the same projection residual with K and D fixed (6 pose)

Parameter layouts:
    homography: H00 H01 H02 H10 H11 H12 H20 H21   (H22 = 1)
    intrinsics: fx fy cx cy k1 k2 k3 k4
    pose:       rx ry rz tx ty tz                 (Rodrigues, world to camera)
"""

from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from .camera_model import project_points
from .exceptions import SolverNonConvergence
from .homography import params_to_homography
from .logger import get_logger

logger = get_logger(__name__)

HOMOGRAPHY_PARAMS = 8
POSE_PARAMS = 6
INTRINSIC_PARAMS = 8


class ResidualKind(Enum):
    """Shape of the fixed data a residual closes over."""
    HOMOGRAPHY = "homography"
    CROSS_CAMERA = "cross_camera"
    FULL_CALIBRATION = "full_calibration"
    EXTRINSIC_ONLY = "extrinsic_only"


class FreeGroups(Enum):
    """Unknown groups held by the parameter vector."""
    GEOMETRY = "geometry"
    GEOMETRY_AND_INTRINSICS = "geometry_and_intrinsics"


@dataclass(frozen=True, eq=False)
class OverlapMatch:
    """
    A ground feature seen by two adjacent cameras.

    Attributes:
        camera_a: Index of the first camera
        camera_b: Index of the second camera
        points_a: One or two pixels in camera a, shape (k, 2)
        points_b: The matching pixels in camera b, shape (k, 2)
        weight: Scale applied to the consistency residual
    """
    camera_a: int
    camera_b: int
    points_a: np.ndarray
    points_b: np.ndarray
    weight: float = 1.0

    def __post_init__(self):
        points_a = np.asarray(self.points_a, dtype=np.float64).reshape(-1, 2)
        points_b = np.asarray(self.points_b, dtype=np.float64).reshape(-1, 2)
        if points_a.shape != points_b.shape or len(points_a) not in (1, 2):
            raise ValueError("Overlap match needs one or two matching point pairs")
        if self.camera_a == self.camera_b:
            raise ValueError("Overlap match must join two different cameras")
        object.__setattr__(self, "points_a", points_a)
        object.__setattr__(self, "points_b", points_b)


@dataclass(frozen=True, eq=False)
class ResidualProblem:
    """
    Fixed data of one refinement problem.

    For homography kinds ``sources`` are undistorted pixels and ``targets``
    canvas pixels, one array per camera. For projection kinds there is a
    single camera: ``sources`` holds the object points (N, 3) and ``targets``
    the observed distorted pixels (N, 2).
    """
    kind: ResidualKind
    free: FreeGroups
    sources: Tuple[np.ndarray, ...]
    targets: Tuple[np.ndarray, ...]
    camera_matrix: Optional[np.ndarray] = None
    distortion: Optional[np.ndarray] = None
    matches: Tuple[OverlapMatch, ...] = ()
    anchor_weight: float = 1.0

    @property
    def camera_count(self) -> int:
        return len(self.sources)

    @property
    def parameter_count(self) -> int:
        if self.kind in (ResidualKind.HOMOGRAPHY, ResidualKind.CROSS_CAMERA):
            return HOMOGRAPHY_PARAMS * self.camera_count
        if self.free is FreeGroups.GEOMETRY_AND_INTRINSICS:
            return INTRINSIC_PARAMS + POSE_PARAMS
        return POSE_PARAMS


def _transfer(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    mapped = points @ H[:, :2].T + H[:, 2]
    w = mapped[:, 2]
    w = np.where(np.abs(w) < 1e-12, np.copysign(1e-12, w), w)
    return mapped[:, :2] / w[:, None]


def pack_intrinsics(camera_matrix: np.ndarray, distortion: np.ndarray) -> np.ndarray:
    K = np.asarray(camera_matrix, dtype=np.float64)
    return np.concatenate([[K[0, 0], K[1, 1], K[0, 2], K[1, 2]],
                           np.asarray(distortion, dtype=np.float64).reshape(4)])


def unpack_intrinsics(params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    fx, fy, cx, cy = params[:4]
    K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])
    return K, np.array(params[4:8], dtype=np.float64)


def residuals(problem: ResidualProblem, x: np.ndarray) -> np.ndarray:
    """
    Residual vector of ``problem`` at parameters ``x``.

    Pure function of (unknowns, fixed data); the solver driver only ever
    calls this with a bound problem.
    """
    kind = problem.kind

    if kind is ResidualKind.HOMOGRAPHY:
        H = params_to_homography(x[:HOMOGRAPHY_PARAMS])
        return (_transfer(H, problem.sources[0]) - problem.targets[0]).ravel()

    if kind is ResidualKind.CROSS_CAMERA:
        homographies = [
            params_to_homography(x[i * HOMOGRAPHY_PARAMS:(i + 1) * HOMOGRAPHY_PARAMS])
            for i in range(problem.camera_count)
        ]
        parts = [
            problem.anchor_weight * (_transfer(H, source) - target).ravel()
            for H, source, target in zip(homographies, problem.sources, problem.targets)
        ]
        for match in problem.matches:
            ground_a = _transfer(homographies[match.camera_a], match.points_a)
            ground_b = _transfer(homographies[match.camera_b], match.points_b)
            parts.append(match.weight * (ground_a - ground_b).ravel())
        return np.concatenate(parts)

    if problem.free is FreeGroups.GEOMETRY_AND_INTRINSICS:
        K, D = unpack_intrinsics(x[:INTRINSIC_PARAMS])
        pose = x[INTRINSIC_PARAMS:INTRINSIC_PARAMS + POSE_PARAMS]
    else:
        K, D = problem.camera_matrix, problem.distortion
        pose = x[:POSE_PARAMS]

    projected = project_points(problem.sources[0], pose[:3], pose[3:], K, D)
    return (projected - problem.targets[0]).ravel()


# Problem constructors

def _points(array: np.ndarray, dims: int) -> np.ndarray:
    return np.asarray(array, dtype=np.float64).reshape(-1, dims)


def homography_problem(source: np.ndarray, target: np.ndarray) -> ResidualProblem:
    """Single-camera homography polish."""
    return ResidualProblem(
        kind=ResidualKind.HOMOGRAPHY,
        free=FreeGroups.GEOMETRY,
        sources=(_points(source, 2),),
        targets=(_points(target, 2),),
    )


def cross_camera_problem(sources: Sequence[np.ndarray], targets: Sequence[np.ndarray],
                         matches: Sequence[OverlapMatch] = (),
                         anchor_weight: float = 1.0) -> ResidualProblem:
    """
    Joint refinement of all camera homographies.

    Args:
        sources: Undistorted corner pixels per camera
        targets: Canvas target points per camera
        matches: Features seen in the overlap of two cameras (undistorted pixels)
        anchor_weight: Scale of the per-camera anchor residuals
    """
    if len(sources) != len(targets):
        raise ValueError("One target set per camera is required")
    for match in matches:
        if max(match.camera_a, match.camera_b) >= len(sources):
            raise ValueError(f"Overlap match refers to unknown camera {max(match.camera_a, match.camera_b)}")
    return ResidualProblem(
        kind=ResidualKind.CROSS_CAMERA,
        free=FreeGroups.GEOMETRY,
        sources=tuple(_points(s, 2) for s in sources),
        targets=tuple(_points(t, 2) for t in targets),
        matches=tuple(matches),
        anchor_weight=anchor_weight,
    )


def full_calibration_problem(object_points: np.ndarray, observed: np.ndarray) -> ResidualProblem:
    """Joint refinement of intrinsics and pose for one camera."""
    return ResidualProblem(
        kind=ResidualKind.FULL_CALIBRATION,
        free=FreeGroups.GEOMETRY_AND_INTRINSICS,
        sources=(_points(object_points, 3),),
        targets=(_points(observed, 2),),
    )


def extrinsic_problem(object_points: np.ndarray, observed: np.ndarray,
                      camera_matrix: np.ndarray, distortion: np.ndarray) -> ResidualProblem:
    """Pose refinement with trusted intrinsics."""
    return ResidualProblem(
        kind=ResidualKind.EXTRINSIC_ONLY,
        free=FreeGroups.GEOMETRY,
        sources=(_points(object_points, 3),),
        targets=(_points(observed, 2),),
        camera_matrix=np.asarray(camera_matrix, dtype=np.float64),
        distortion=np.asarray(distortion, dtype=np.float64).reshape(4),
    )


# Solver driver

@dataclass(frozen=True)
class SolverOptions:
    """Settings passed to ``scipy.optimize.least_squares``."""
    method: str = "trf"
    max_nfev: int = 2000
    ftol: float = 1e-10
    xtol: float = 1e-10
    gtol: float = 1e-10
    rms_threshold: float = 2.0  # pixels, in the residual's own units


@dataclass(frozen=True, eq=False)
class SolveResult:
    """Outcome of a successful refinement."""
    x: np.ndarray
    rms: float
    cost: float
    status: int
    nfev: int
    message: str


def _rms(r: np.ndarray) -> float:
    return float(np.sqrt(np.sum(r * r) / max(len(r) // 2, 1)))


def residual_rms(problem: ResidualProblem, x: np.ndarray) -> float:
    """Root mean square point error (2D distance per residual pair)."""
    return _rms(residuals(problem, x))


def solve(problem: ResidualProblem, x0: np.ndarray,
          options: SolverOptions = SolverOptions()) -> SolveResult:
    """
    Refine ``x0`` by nonlinear least squares.

    Raises:
        SolverNonConvergence: On solver failure or iteration exhaustion, a
            non-finite result, or a final RMS above ``options.rms_threshold``
    """
    x0 = np.asarray(x0, dtype=np.float64).ravel()
    if x0.size != problem.parameter_count:
        raise ValueError(f"{problem.kind.value} expects {problem.parameter_count} parameters, got {x0.size}")

    fun = partial(residuals, problem)
    if not np.all(np.isfinite(fun(x0))):
        raise SolverNonConvergence(f"{problem.kind.value}: initial residuals are not finite")

    try:
        result = least_squares(
            fun, x0,
            jac="2-point",
            method=options.method,
            x_scale="jac",
            ftol=options.ftol,
            xtol=options.xtol,
            gtol=options.gtol,
            max_nfev=options.max_nfev,
        )
    except (ValueError, np.linalg.LinAlgError) as e:
        raise SolverNonConvergence(f"{problem.kind.value}: solver failed: {e}")

    if result.status <= 0:
        raise SolverNonConvergence(f"{problem.kind.value}: {result.message}", status=result.status)
    if not (np.all(np.isfinite(result.x)) and np.all(np.isfinite(result.fun))):
        raise SolverNonConvergence(f"{problem.kind.value}: non-finite solution", status=result.status)

    rms = _rms(result.fun)
    if rms > options.rms_threshold:
        raise SolverNonConvergence(
            f"{problem.kind.value}: residual above threshold {options.rms_threshold}",
            rms=rms, status=result.status,
        )

    logger.debug(f"{problem.kind.value}: rms={rms:.4f} after {result.nfev} evaluations ({result.message})")
    return SolveResult(
        x=result.x,
        rms=rms,
        cost=float(result.cost),
        status=int(result.status),
        nfev=int(result.nfev),
        message=str(result.message),
    )
