"""
Tone Balancing
==============

One multiplicative gain per camera so adjacent cameras agree on the
brightness of the ground they share.

Gains minimise

    sum over pairs (g_i * mu_ij - g_j * mu_ji)^2 + lambda * sum_i (g_i - 1)^2

where mu_ij is the mean grey level of camera i over its overlap with camera
j, scaled to [0, 1]. The prior keeps gains near 1 and makes the system well
posed when some overlaps are empty.
"""

from typing import Dict, Sequence, Tuple

import cv2
import numpy as np

from .config import CAMERA_ORDER, CameraPosition
from .logger import get_logger

logger = get_logger(__name__)


def gray_levels(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image if image.ndim == 2 else image[..., 0]


class ToneBalancer:
    """Estimates and applies per-camera brightness gains."""

    def __init__(self, regularization: float = 1e-3,
                 gain_range: Tuple[float, float] = (0.5, 2.0)):
        self.regularization = regularization
        self.gain_range = gain_range

    def overlap_means(self, images: Sequence[np.ndarray],
                      overlaps: Dict[Tuple[CameraPosition, CameraPosition], np.ndarray]
                      ) -> Dict[Tuple[CameraPosition, CameraPosition], Tuple[float, float]]:
        """Mean grey level (0..1) of both cameras over each non-empty overlap."""
        grays = [gray_levels(image) for image in images]
        means = {}
        for (a, b), mask in overlaps.items():
            if not mask.any():
                continue
            means[(a, b)] = (
                float(grays[a.index][mask].mean()) / 255.0,
                float(grays[b.index][mask].mean()) / 255.0,
            )
        return means

    def estimate(self, images: Sequence[np.ndarray],
                 overlaps: Dict[Tuple[CameraPosition, CameraPosition], np.ndarray]) -> np.ndarray:
        """
        Solve for the gains.

        Args:
            images: Canvas-space images per camera in ``CAMERA_ORDER``
            overlaps: Overlap masks of adjacent pairs

        Returns:
            Gains, shape (4,)
        """
        count = len(CAMERA_ORDER)
        rows, rhs = [], []
        for (a, b), (mu_a, mu_b) in self.overlap_means(images, overlaps).items():
            row = np.zeros(count)
            row[a.index] = mu_a
            row[b.index] = -mu_b
            rows.append(row)
            rhs.append(0.0)

        prior = np.sqrt(self.regularization)
        rows.extend(prior * np.eye(count))
        rhs.extend([prior] * count)

        gains, *_ = np.linalg.lstsq(np.array(rows), np.array(rhs), rcond=None)
        gains = np.clip(gains, *self.gain_range)
        logger.debug("Tone gains: " + ", ".join(f"{p.value}={g:.3f}" for p, g in zip(CAMERA_ORDER, gains)))
        return gains

    @staticmethod
    def apply(image: np.ndarray, gain: float) -> np.ndarray:
        """Scale an 8-bit image by ``gain`` with clipping to [0, 255]."""
        return np.clip(np.rint(image.astype(np.float32) * gain), 0, 255).astype(np.uint8)
