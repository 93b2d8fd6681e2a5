"""
Error Taxonomy
==============

Exceptions raised by the calibration and composition pipeline.

Detection, geometry and solver failures abort only the current calibration
attempt. ``ConfigError`` is fatal at startup. ``RuntimeMismatch`` is raised
during composition when a frame does not match the size the cached remap
tables were built for.
"""

from typing import Optional, Tuple


class BirdViewError(Exception):
    """Base class for all errors raised by the bird's-eye view pipeline."""
    pass


class DetectionFailure(BirdViewError):
    """
    Chessboard corners could not be found or validated.

    Attributes:
        position: Camera position tag the detection ran for
        found: Number of corners that were found
        required: Number of corners the chessboard needs
    """

    def __init__(self, message: str, position: Optional[str] = None,
                 found: int = 0, required: int = 0):
        self.position = position
        self.found = found
        self.required = required
        prefix = f"[{position}] " if position else ""
        super().__init__(f"{prefix}{message} (found {found}, required {required})")


class GeometryFailure(BirdViewError):
    """Degenerate correspondences, singular solve or non-converging backprojection."""
    pass


class SolverNonConvergence(BirdViewError):
    """
    Nonlinear refinement missed its tolerance or iteration bounds.

    Attributes:
        rms: Final RMS residual, if the solver produced one
        status: Solver status code
    """

    def __init__(self, message: str, rms: Optional[float] = None, status: Optional[int] = None):
        self.rms = rms
        self.status = status
        detail = []
        if rms is not None:
            detail.append(f"rms={rms:.4f}")
        if status is not None:
            detail.append(f"status={status}")
        suffix = f" ({', '.join(detail)})" if detail else ""
        super().__init__(f"{message}{suffix}")


class ConfigError(BirdViewError):
    """Malformed or missing configuration/parameter file."""
    pass


class RuntimeMismatch(BirdViewError):
    """
    Frame size differs from the size the calibration tables were computed for.

    Attributes:
        position: Camera position of the offending frame
        expected: Expected (width, height)
        actual: Received (width, height)
    """

    def __init__(self, position: str, expected: Tuple[int, int], actual: Tuple[int, int]):
        self.position = position
        self.expected = tuple(expected)
        self.actual = tuple(actual)
        super().__init__(
            f"{position} frame is {actual[0]}x{actual[1]}, "
            f"calibration expects {expected[0]}x{expected[1]}"
        )
