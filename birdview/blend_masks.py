"""
Blend Weights
=============

Per-camera coverage and blending weights over the canvas.

Each camera covers the canvas pixels its remap table can sample, restricted
to its sector around the vehicle. Where two sectors meet, the weights ramp
smoothly between the cameras; the ramp comes from a diffusion fill anchored
at 1 where only this camera sees the ground and at 0 where only others do.
"""

from pathlib import Path
from typing import Dict, Sequence, Tuple, Union

import numpy as np
from PIL import Image

from .config import ADJACENT_PAIRS, CAMERA_ORDER, CameraPosition, RigConfig
from .diffuse import diffuse_from_mask
from .logger import get_logger
from .remap import RemapTable

logger = get_logger(__name__)

OverlapMasks = Dict[Tuple[CameraPosition, CameraPosition], np.ndarray]

MIN_WEIGHT_SUM = 1e-6


class BlendMaskBuilder:
    """Builds coverage, overlap masks and normalised blend weights."""

    def __init__(self, config: RigConfig):
        self.config = config
        self.width, self.height = config.canvas.size

    def sector_masks(self) -> np.ndarray:
        """
        Canvas sector of each camera, shape (4, H, W).

        Front: rows above the vehicle's front edge. Rear: rows below its rear
        edge. Left/right: columns beside its sides. Sectors of adjacent
        cameras overlap in the canvas corners; the vehicle is in none.
        """
        x_left, x_right, y_top, y_bottom = self.config.car_boundaries
        v, u = np.mgrid[0:self.height, 0:self.width]
        sectors = {
            CameraPosition.FRONT: v < y_top,
            CameraPosition.REAR: v >= y_bottom,
            CameraPosition.LEFT: u < x_left,
            CameraPosition.RIGHT: u >= x_right,
        }
        return np.stack([sectors[p] for p in CAMERA_ORDER])

    def coverage(self, tables: Sequence[RemapTable]) -> np.ndarray:
        """Valid remap pixels inside each camera's sector, shape (4, H, W)."""
        if len(tables) != len(CAMERA_ORDER):
            raise ValueError(f"Expected {len(CAMERA_ORDER)} remap tables, got {len(tables)}")
        valid = np.stack([t.valid for t in tables])
        if valid.shape[1:] != (self.height, self.width):
            raise ValueError(f"Remap tables are {valid.shape[2]}x{valid.shape[1]}, "
                             f"canvas is {self.width}x{self.height}")
        return valid & self.sector_masks()

    @staticmethod
    def overlaps(coverage: np.ndarray) -> OverlapMasks:
        """Shared coverage of each adjacent camera pair."""
        return {
            (a, b): coverage[a.index] & coverage[b.index]
            for a, b in ADJACENT_PAIRS
        }

    @staticmethod
    def weights(coverage: np.ndarray) -> np.ndarray:
        """
        Normalised blend weights, float32 (4, H, W).

        Weights are 1 where a single camera covers a pixel, ramp smoothly
        across overlaps, are 0 outside coverage and sum to 1 wherever at
        least one camera covers the pixel.
        """
        count = coverage.sum(axis=0)
        covered = count > 0

        raw = np.zeros(coverage.shape, dtype=np.float64)
        for i in range(len(coverage)):
            exclusive = coverage[i] & (count == 1)
            others_only = ~coverage[i] & covered
            fill = diffuse_from_mask(exclusive.astype(np.float64), exclusive | others_only)
            raw[i] = fill * coverage[i]

        total = raw.sum(axis=0)
        uniform = coverage / np.maximum(count, 1)
        with np.errstate(divide="ignore", invalid="ignore"):
            weights = np.where(total >= MIN_WEIGHT_SUM, raw / total, uniform)
        weights[:, ~covered] = 0.0
        return weights.astype(np.float32)

    def build(self, tables: Sequence[RemapTable]) -> Tuple[np.ndarray, OverlapMasks, np.ndarray]:
        """
        Coverage, overlap masks and weights for a set of remap tables.

        Returns:
            Tuple of (coverage, overlaps, weights)
        """
        coverage = self.coverage(tables)
        overlaps = self.overlaps(coverage)
        weights = self.weights(coverage)
        logger.debug("Blend weights: " + ", ".join(
            f"{a.value}/{b.value}={int(m.sum())}px" for (a, b), m in overlaps.items()))
        return coverage, overlaps, weights


def save_blend_weights(weights: np.ndarray, path: Union[str, Path]) -> None:
    """
    Save weights as an RGBA PNG: front, rear, left, right in R, G, B, A.
    """
    image = np.clip(np.rint(np.moveaxis(weights, 0, -1) * 255.0), 0, 255).astype(np.uint8)
    Image.fromarray(image).save(str(path))
    logger.info(f"Saved blend weights: {path}")
