"""
Diffusion Fill
==============

Smoothly interpolates values into unknown pixels with a multi-resolution
pyramid instead of a global linear solve.

The image is premultiplied: channel ``-1`` is alpha (1 where the value is
known, 0 where unknown) and the value channels hold ``value * alpha``. Box
half-sizing averages both, so coarse levels carry weighted means. On the way
back up, only pixels whose alpha is still 0 take the bilinearly upsampled
coarse value. The result is ``value / alpha``.
"""

import math
from typing import Optional

import cv2
import numpy as np


def box_half_size(image: np.ndarray) -> np.ndarray:
    """2x2 box downsample; odd sizes are padded by repeating the last row/column."""
    height, width = image.shape[:2]
    pad = [(0, height % 2), (0, width % 2)] + [(0, 0)] * (image.ndim - 2)
    padded = np.pad(image, pad, mode="edge")
    return 0.25 * (padded[0::2, 0::2] + padded[1::2, 0::2] +
                   padded[0::2, 1::2] + padded[1::2, 1::2])


def masked_double_size(coarse: np.ndarray, fine: np.ndarray) -> np.ndarray:
    """Fill pixels of ``fine`` with zero alpha from the 2x bilinear upsample of ``coarse``."""
    height, width = fine.shape[:2]
    upsampled = cv2.resize(
        coarse, (coarse.shape[1] * 2, coarse.shape[0] * 2), interpolation=cv2.INTER_LINEAR
    )[:height, :width]
    if upsampled.ndim < fine.ndim:
        upsampled = upsampled[..., None]
    empty = fine[..., -1] == 0
    fine[empty] = upsampled[empty]
    return fine


def fill_region(image: np.ndarray, levels: Optional[int] = None) -> np.ndarray:
    """
    Diffuse a premultiplied (value..., alpha) image into its zero-alpha pixels.

    Args:
        image: Array (H, W, C) with alpha in the last channel
        levels: Pyramid depth; defaults to ceil(log2(max(H, W)))

    Returns:
        Filled premultiplied image (float64)
    """
    image = np.array(image, dtype=np.float64)
    if levels is None:
        levels = int(math.ceil(math.log2(max(image.shape[:2]))))

    pyramid = [image]
    for _ in range(levels):
        if pyramid[-1].shape[0] == 1 and pyramid[-1].shape[1] == 1:
            break
        pyramid.append(box_half_size(pyramid[-1]))

    for level in range(len(pyramid) - 2, -1, -1):
        masked_double_size(pyramid[level + 1], pyramid[level])
    return pyramid[0]


def diffuse_from_mask(values: np.ndarray, known: np.ndarray) -> np.ndarray:
    """
    Smooth interpolation of ``values`` from the ``known`` pixels into the rest.

    Known pixels keep their value exactly. Returns zeros if nothing is known.
    """
    known = known.astype(bool)
    image = np.stack([np.where(known, values, 0.0), known.astype(np.float64)], axis=-1)
    filled = fill_region(image)
    alpha = filled[..., 1]
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(alpha > 0, filled[..., 0] / alpha, 0.0)
