"""
Bird's-Eye Surround View
========================

Calibration and real-time composition for a four-camera vehicle rig:
- Fisheye projection model and chessboard corner detection
- Homography estimation and nonlinear refinement
- Remap tables, diffusion-smoothed blend weights, tone balancing
- Gradient-domain (Poisson) seam blending

Version: 1.0.0
"""

from .calibrate import (CalibrationSnapshot, Calibrator, CalibratorOptions,
                        load_calibration, save_calibration)
from .camera_model import CameraParameters, FisheyeCamera, load_camera_parameters
from .composition import BlendingMethod, Composition, FrameResult, RemapSource
from .config import CameraPosition, RigConfig, load_rig_config
from .corner_detector import CornerDetector, DetectorConfig
from .exceptions import (BirdViewError, ConfigError, DetectionFailure, GeometryFailure,
                         RuntimeMismatch, SolverNonConvergence)

__version__ = "1.0.0"
__title__ = "Bird's-Eye Surround View"
__license__ = "MIT"

# Public API
__all__ = [
    "BirdViewError",
    "BlendingMethod",
    "CalibrationSnapshot",
    "Calibrator",
    "CalibratorOptions",
    "CameraParameters",
    "CameraPosition",
    "Composition",
    "ConfigError",
    "CornerDetector",
    "DetectionFailure",
    "DetectorConfig",
    "FisheyeCamera",
    "FrameResult",
    "GeometryFailure",
    "RemapSource",
    "RigConfig",
    "RuntimeMismatch",
    "SolverNonConvergence",
    "load_calibration",
    "load_camera_parameters",
    "load_rig_config",
    "save_calibration",
]
