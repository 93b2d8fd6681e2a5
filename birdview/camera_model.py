"""
Fisheye Camera Model
====================

Kannala-Brandt equidistant fisheye model, the same model ``cv2.fisheye``
implements:

    theta_d = theta * (1 + k1*theta^2 + k2*theta^4 + k3*theta^6 + k4*theta^8)
    pixel   = K @ [theta_d * cos(phi), theta_d * sin(phi), 1]

where theta is the angle between the ray and the optical axis and phi its
azimuth. Angles come from ``atan2`` so rays beyond 90 degrees are valid.

Undistorted images are pinhole images with the matrix ``new_K`` derived from
K by the scale/shift parameters.
"""

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import cv2
import numpy as np

from .config import CAMERA_ORDER, CameraPosition
from .exceptions import ConfigError, GeometryFailure
from .logger import get_logger

logger = get_logger(__name__)

# Rays closer than this to the image plane cannot be shown in a pinhole image
MIN_RAY_DEPTH = 1e-9


@dataclass(frozen=True, eq=False)
class CameraParameters:
    """
    Intrinsic parameters of one camera. Immutable for a session.

    Attributes:
        camera_matrix: 3x3 intrinsic matrix K
        distortion: Fisheye coefficients (k1, k2, k3, k4)
        image_size: Native frame size (width, height)
        scale_xy: Focal scaling applied to K to form the undistorted matrix
        shift_xy: Principal point shift applied to K to form the undistorted matrix
    """
    camera_matrix: np.ndarray
    distortion: np.ndarray
    image_size: Tuple[int, int]
    scale_xy: Tuple[float, float] = (1.0, 1.0)
    shift_xy: Tuple[float, float] = (0.0, 0.0)

    def __post_init__(self):
        matrix = np.array(self.camera_matrix, dtype=np.float64)
        distortion = np.array(self.distortion, dtype=np.float64).reshape(-1)

        if matrix.shape != (3, 3) or not np.all(np.isfinite(matrix)):
            raise ConfigError(f"Camera matrix must be a finite 3x3 matrix, got shape {matrix.shape}")
        if matrix[0, 0] <= 0 or matrix[1, 1] <= 0:
            raise ConfigError("Camera focal lengths must be positive")
        if distortion.size != 4 or not np.all(np.isfinite(distortion)):
            raise ConfigError(f"Expected 4 fisheye distortion coefficients, got {distortion.size}")

        size = tuple(int(v) for v in self.image_size)
        if len(size) != 2 or size[0] <= 0 or size[1] <= 0:
            raise ConfigError(f"Invalid image size: {self.image_size}")

        matrix.flags.writeable = False
        distortion.flags.writeable = False
        object.__setattr__(self, "camera_matrix", matrix)
        object.__setattr__(self, "distortion", distortion)
        object.__setattr__(self, "image_size", size)
        object.__setattr__(self, "scale_xy", tuple(float(v) for v in self.scale_xy))
        object.__setattr__(self, "shift_xy", tuple(float(v) for v in self.shift_xy))

    @property
    def new_camera_matrix(self) -> np.ndarray:
        """Pinhole matrix of the undistorted image."""
        new_matrix = self.camera_matrix.copy()
        new_matrix[0, 0] *= self.scale_xy[0]
        new_matrix[1, 1] *= self.scale_xy[1]
        new_matrix[0, 2] += self.shift_xy[0]
        new_matrix[1, 2] += self.shift_xy[1]
        return new_matrix

    @property
    def undistorted_size(self) -> Tuple[int, int]:
        return self.image_size

    def scaled(self, image_size: Tuple[int, int]) -> "CameraParameters":
        """Return parameters for the same lens at another frame resolution."""
        sx = image_size[0] / self.image_size[0]
        sy = image_size[1] / self.image_size[1]
        matrix = self.camera_matrix.copy()
        matrix[0, :] *= sx
        matrix[1, :] *= sy
        return dataclasses.replace(
            self,
            camera_matrix=matrix,
            image_size=tuple(image_size),
            shift_xy=(self.shift_xy[0] * sx, self.shift_xy[1] * sy),
        )

    def with_intrinsics(self, camera_matrix: np.ndarray, distortion: np.ndarray) -> "CameraParameters":
        return dataclasses.replace(self, camera_matrix=camera_matrix, distortion=distortion)


def distort_theta(theta: np.ndarray, distortion: np.ndarray) -> np.ndarray:
    """Distorted radius for incidence angle theta."""
    k1, k2, k3, k4 = distortion
    t2 = theta * theta
    return theta * (1.0 + t2 * (k1 + t2 * (k2 + t2 * (k3 + t2 * k4))))


def distort_theta_derivative(theta: np.ndarray, distortion: np.ndarray) -> np.ndarray:
    k1, k2, k3, k4 = distortion
    t2 = theta * theta
    return 1.0 + t2 * (3.0 * k1 + t2 * (5.0 * k2 + t2 * (7.0 * k3 + t2 * 9.0 * k4)))


def camera_to_pixels(points: np.ndarray, camera_matrix: np.ndarray,
                     distortion: np.ndarray) -> np.ndarray:
    """Project camera-frame points (N, 3) to distorted pixels (N, 2)."""
    x, y, z = points[:, 0], points[:, 1], points[:, 2]
    theta = np.arctan2(np.hypot(x, y), z)
    phi = np.arctan2(y, x)
    r_d = distort_theta(theta, distortion)
    xd = r_d * np.cos(phi)
    yd = r_d * np.sin(phi)
    u = camera_matrix[0, 0] * xd + camera_matrix[0, 1] * yd + camera_matrix[0, 2]
    v = camera_matrix[1, 1] * yd + camera_matrix[1, 2]
    return np.stack([u, v], axis=1)


def project_points(points: np.ndarray, rvec: np.ndarray, tvec: np.ndarray,
                   camera_matrix: np.ndarray, distortion: np.ndarray) -> np.ndarray:
    """
    Project world points through a pose and the fisheye model.

    Args:
        points: World points, shape (N, 3)
        rvec: Rodrigues rotation vector (world to camera)
        tvec: Translation vector (world to camera)
        camera_matrix: 3x3 intrinsic matrix
        distortion: Fisheye coefficients (k1, k2, k3, k4)

    Returns:
        Distorted pixel coordinates, shape (N, 2)
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    camera_points = points @ rotation.T + np.asarray(tvec, dtype=np.float64).reshape(1, 3)
    return camera_to_pixels(camera_points, camera_matrix, distortion)


def _as_points(points: np.ndarray, dims: int) -> Tuple[np.ndarray, bool]:
    array = np.asarray(points, dtype=np.float64)
    single = array.ndim == 1
    return array.reshape(-1, dims), single


class FisheyeCamera:
    """
    Fisheye camera model for projection, backprojection and undistortion.

    Features:
    - Forward projection of world points (``space_to_plane``)
    - Iterative backprojection of pixels to rays (``lift_projective``)
    - Point undistortion into the pinhole ``new_K`` image and back
    - Extrinsic initialisation from ground correspondences
    - Image undistortion maps for debug output
    """

    def __init__(self, params: CameraParameters,
                 position: Optional[CameraPosition] = None,
                 max_iterations: int = 100,
                 tolerance: float = 1e-6):
        """
        Initialize fisheye camera model.

        Args:
            params: Intrinsic parameters
            position: Rig position, used for log messages
            max_iterations: Iteration bound of the backprojection solve
            tolerance: Convergence tolerance on the normalised distorted radius
        """
        self.params = params
        self.position = position
        self.max_iterations = max_iterations
        self.tolerance = tolerance

        self._theta_max = self._compute_theta_max()
        self._undistort_maps: Optional[Tuple[np.ndarray, np.ndarray]] = None

    @property
    def name(self) -> str:
        return self.position.value if self.position else "camera"

    @property
    def camera_matrix(self) -> np.ndarray:
        return self.params.camera_matrix

    @property
    def distortion_coeffs(self) -> np.ndarray:
        return self.params.distortion

    @property
    def resolution(self) -> Tuple[int, int]:
        return self.params.image_size

    @property
    def new_camera_matrix(self) -> np.ndarray:
        return self.params.new_camera_matrix

    @property
    def theta_max(self) -> float:
        """End of the monotonic range of the distortion polynomial on [0, pi]."""
        return self._theta_max

    def _compute_theta_max(self) -> float:
        grid = np.linspace(0.0, np.pi, 4097)
        slope = distort_theta_derivative(grid, self.params.distortion)
        falling = np.nonzero(slope <= 0.0)[0]
        if len(falling) == 0:
            return float(np.pi)
        return float(grid[max(falling[0] - 1, 1)])

    def set_scale_and_shift(self,
                            scale: Tuple[float, float] = (1.0, 1.0),
                            shift: Tuple[float, float] = (0.0, 0.0)) -> 'FisheyeCamera':
        """
        Set scaling and shifting parameters of the undistorted image.

        Returns:
            Self for method chaining
        """
        self.params = dataclasses.replace(self.params, scale_xy=scale, shift_xy=shift)
        self._undistort_maps = None
        return self

    # Projection

    def space_to_plane(self, points: np.ndarray, rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
        """
        Project world points to distorted pixels.

        Args:
            points: World point (3,) or points (N, 3)
            rvec: Rodrigues rotation vector (world to camera)
            tvec: Translation vector (world to camera)

        Returns:
            Pixel (2,) or pixels (N, 2)
        """
        array, single = _as_points(points, 3)
        pixels = project_points(array, rvec, tvec, self.params.camera_matrix, self.params.distortion)
        return pixels[0] if single else pixels

    def backproject_symmetric(self, p_u: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Recover the spherical angles of normalised distorted points.

        theta solves ``distort_theta(theta) == |p_u|`` by Newton steps kept
        inside a shrinking bisection bracket [0, theta_max].

        Args:
            p_u: Normalised distorted points (K^-1 applied), shape (N, 2)

        Returns:
            Tuple of (theta, phi) arrays

        Raises:
            GeometryFailure: If a radius lies outside the model's range or the
                solve does not converge within ``max_iterations``
        """
        p_u = np.asarray(p_u, dtype=np.float64).reshape(-1, 2)
        distortion = self.params.distortion
        r_d = np.hypot(p_u[:, 0], p_u[:, 1])
        phi = np.arctan2(p_u[:, 1], p_u[:, 0])

        r_max = distort_theta(self._theta_max, distortion)
        out_of_range = r_d > r_max
        if out_of_range.any():
            raise GeometryFailure(
                f"{self.name}: {int(out_of_range.sum())} point(s) beyond the fisheye "
                f"model's valid radius {r_max:.4f}"
            )

        lo = np.zeros_like(r_d)
        hi = np.full_like(r_d, self._theta_max)
        theta = np.minimum(r_d, self._theta_max)

        for _ in range(self.max_iterations):
            residual = distort_theta(theta, distortion) - r_d
            done = np.abs(residual) < self.tolerance
            if done.all():
                break
            lo = np.where(residual < 0, theta, lo)
            hi = np.where(residual > 0, theta, hi)
            with np.errstate(divide="ignore", invalid="ignore"):
                newton = theta - residual / distort_theta_derivative(theta, distortion)
            inside = np.isfinite(newton) & (newton > lo) & (newton < hi)
            step = np.where(inside, newton, 0.5 * (lo + hi))
            theta = np.where(done, theta, step)

        unconverged = np.abs(distort_theta(theta, distortion) - r_d) >= self.tolerance
        if unconverged.any():
            raise GeometryFailure(
                f"{self.name}: backprojection did not converge for {int(unconverged.sum())} "
                f"point(s) within {self.max_iterations} iterations"
            )
        return theta, phi

    def lift_projective(self, pixels: np.ndarray) -> np.ndarray:
        """
        Lift distorted pixels to unit rays in the camera frame.

        Args:
            pixels: Pixel (2,) or pixels (N, 2)

        Returns:
            Ray (3,) or rays (N, 3)
        """
        array, single = _as_points(pixels, 2)
        K = self.params.camera_matrix
        my = (array[:, 1] - K[1, 2]) / K[1, 1]
        mx = (array[:, 0] - K[0, 2] - K[0, 1] * my) / K[0, 0]

        theta, phi = self.backproject_symmetric(np.stack([mx, my], axis=1))
        sin_theta = np.sin(theta)
        rays = np.stack([sin_theta * np.cos(phi), sin_theta * np.sin(phi), np.cos(theta)], axis=1)
        return rays[0] if single else rays

    def undistort_points(self, pixels: np.ndarray) -> np.ndarray:
        """
        Map distorted pixels to pixels of the undistorted (``new_K``) image.

        Raises:
            GeometryFailure: If a ray points behind the image plane
        """
        array, single = _as_points(pixels, 2)
        rays = self.lift_projective(array)
        if (rays[:, 2] <= MIN_RAY_DEPTH).any():
            raise GeometryFailure(f"{self.name}: ray behind the image plane cannot be undistorted")

        x = rays[:, 0] / rays[:, 2]
        y = rays[:, 1] / rays[:, 2]
        new_K = self.params.new_camera_matrix
        u = new_K[0, 0] * x + new_K[0, 1] * y + new_K[0, 2]
        v = new_K[1, 1] * y + new_K[1, 2]
        result = np.stack([u, v], axis=1)
        return result[0] if single else result

    def distort_points(self, undistorted: np.ndarray) -> np.ndarray:
        """Map pixels of the undistorted image back to raw frame pixels."""
        array, single = _as_points(undistorted, 2)
        new_K = self.params.new_camera_matrix
        y = (array[:, 1] - new_K[1, 2]) / new_K[1, 1]
        x = (array[:, 0] - new_K[0, 2] - new_K[0, 1] * y) / new_K[0, 0]
        camera_points = np.stack([x, y, np.ones_like(x)], axis=1)
        pixels = camera_to_pixels(camera_points, self.params.camera_matrix, self.params.distortion)
        return pixels[0] if single else pixels

    def estimate_extrinsics(self, object_points: np.ndarray,
                            image_points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Initial pose from known world points and their distorted pixels.

        Pixels are lifted to normalised pinhole coordinates and passed to
        ``cv2.solvePnP`` with identity intrinsics.

        Returns:
            Tuple of (rvec, tvec), each shape (3,)

        Raises:
            GeometryFailure: If points cannot be lifted or PnP fails
        """
        object_points = np.asarray(object_points, dtype=np.float64).reshape(-1, 3)
        rays = self.lift_projective(np.asarray(image_points, dtype=np.float64).reshape(-1, 2))
        if (rays[:, 2] <= MIN_RAY_DEPTH).any():
            raise GeometryFailure(f"{self.name}: corner ray behind the image plane")
        normalized = rays[:, :2] / rays[:, 2:3]

        try:
            ok, rvec, tvec = cv2.solvePnP(
                object_points, normalized, np.eye(3), np.zeros(4),
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error as e:
            raise GeometryFailure(f"{self.name}: solvePnP failed: {e}")
        if not ok:
            raise GeometryFailure(f"{self.name}: solvePnP found no pose")
        return rvec.reshape(3), tvec.reshape(3)

    # Images

    def _update_undistortion_maps(self) -> None:
        width, height = self.params.undistorted_size
        try:
            self._undistort_maps = cv2.fisheye.initUndistortRectifyMap(
                self.params.camera_matrix,
                self.params.distortion.reshape(4, 1),
                np.eye(3),
                self.params.new_camera_matrix,
                (width, height),
                cv2.CV_16SC2,
            )
        except cv2.error as e:
            raise GeometryFailure(f"Failed to create undistortion maps: {e}")

    def undistort(self, image: np.ndarray) -> np.ndarray:
        """
        Remove fisheye distortion from an image.

        Args:
            image: Input distorted image

        Returns:
            Undistorted image in the ``new_K`` pinhole geometry
        """
        if self._undistort_maps is None:
            self._update_undistortion_maps()
        return cv2.remap(
            image,
            *self._undistort_maps,
            interpolation=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_CONSTANT,
        )

    def __str__(self) -> str:
        w, h = self.params.image_size
        return f"FisheyeCamera({self.name}, {w}x{h}, fx={self.params.camera_matrix[0, 0]:.1f})"


# Intrinsics file

def _read_mat(fs: cv2.FileStorage, key: str, required: bool = True) -> Optional[np.ndarray]:
    node = fs.getNode(key)
    if node.empty():
        if required:
            raise ConfigError(f"Missing required parameter '{key}'")
        return None
    value = node.mat()
    if value is None:
        if required:
            raise ConfigError(f"Parameter '{key}' is not a matrix")
        return None
    return value


def load_camera_parameters(path: Union[str, Path]) -> Dict[CameraPosition, CameraParameters]:
    """
    Read the intrinsics file: one record per camera position.

    Raises:
        ConfigError: If the file is missing or any record is malformed
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Intrinsics file not found: {path}")

    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise ConfigError(f"Cannot open intrinsics file: {path}")

    cameras = {}
    try:
        for position in CAMERA_ORDER:
            prefix = position.value
            matrix = _read_mat(fs, f"{prefix}_camera_matrix")
            distortion = _read_mat(fs, f"{prefix}_dist_coeffs")
            resolution = _read_mat(fs, f"{prefix}_resolution").flatten()
            if resolution.size != 2:
                raise ConfigError(f"'{prefix}_resolution' must hold 2 values")
            scale = _read_mat(fs, f"{prefix}_scale_xy", required=False)
            shift = _read_mat(fs, f"{prefix}_shift_xy", required=False)

            cameras[position] = CameraParameters(
                camera_matrix=matrix,
                distortion=distortion,
                image_size=tuple(int(v) for v in resolution),
                scale_xy=tuple(scale.flatten()) if scale is not None else (1.0, 1.0),
                shift_xy=tuple(shift.flatten()) if shift is not None else (0.0, 0.0),
            )
    finally:
        fs.release()

    logger.info(f"Loaded intrinsics for {len(cameras)} cameras from {path}")
    return cameras


def save_camera_parameters(path: Union[str, Path],
                           cameras: Dict[CameraPosition, CameraParameters]) -> None:
    """Write an intrinsics file in the layout ``load_camera_parameters`` reads."""
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    try:
        for position in CAMERA_ORDER:
            params = cameras[position]
            prefix = position.value
            fs.write(f"{prefix}_camera_matrix", params.camera_matrix)
            fs.write(f"{prefix}_dist_coeffs", params.distortion.reshape(4, 1))
            fs.write(f"{prefix}_resolution", np.array(params.image_size, dtype=np.int32))
            fs.write(f"{prefix}_scale_xy", np.array(params.scale_xy, dtype=np.float64))
            fs.write(f"{prefix}_shift_xy", np.array(params.shift_xy, dtype=np.float64))
    finally:
        fs.release()
