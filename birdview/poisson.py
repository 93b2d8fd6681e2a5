"""
Gradient-Domain Seam Blending
=============================

Reconstructs the composite from the weighted gradients of the camera images
so low-frequency brightness steps at seams disappear while local detail is
kept.

With G = sum_i w_i * grad(I_i) and X = sum_i w_i * I_i, the result Y solves

    laplace(Y) - eps * Y = div(G) - eps * X

Images are mirror-expanded to twice their size, which makes the domain
periodic, so the equation is diagonal in the 2D DFT basis with eigenvalues

    2 cos(2 pi k / W) + 2 cos(2 pi l / H) - 4
"""

import threading
from typing import Dict, Sequence, Tuple

import numpy as np


class SeamBlender:
    """
    FFT Poisson blender.

    The eigenvalue parameter depends only on the expanded shape and is
    cached per resolution.
    """

    def __init__(self, epsilon: float = 1e-8, min_denominator: float = 1e-12):
        self.epsilon = epsilon
        self.min_denominator = min_denominator
        self._params: Dict[Tuple[int, int], np.ndarray] = {}
        self._lock = threading.Lock()

    def eigenvalue_parameter(self, shape: Tuple[int, int]) -> np.ndarray:
        """Laplacian eigenvalues for an expanded image of ``shape`` (H, W)."""
        shape = (int(shape[0]), int(shape[1]))
        with self._lock:
            param = self._params.get(shape)
            if param is None:
                height, width = shape
                param = (2.0 * np.cos(2.0 * np.pi * np.arange(width) / width)[None, :] +
                         2.0 * np.cos(2.0 * np.pi * np.arange(height) / height)[:, None] - 4.0)
                param.flags.writeable = False
                self._params[shape] = param
        return param

    @staticmethod
    def expand(image: np.ndarray) -> np.ndarray:
        """Mirror an (H, W) image to (2H, 2W)."""
        top = np.hstack([image, image[:, ::-1]])
        return np.vstack([top, top[::-1]])

    def _blend_channel(self, channels: Sequence[np.ndarray], weights: np.ndarray) -> np.ndarray:
        height, width = channels[0].shape
        expanded_weights = [self.expand(w) for w in weights]

        grad_x = np.zeros((2 * height, 2 * width))
        grad_y = np.zeros_like(grad_x)
        blended = np.zeros((height, width))
        for channel, weight, expanded_weight in zip(channels, weights, expanded_weights):
            expanded = self.expand(channel)
            grad_x += expanded_weight * (np.roll(expanded, -1, axis=1) - expanded)
            grad_y += expanded_weight * (np.roll(expanded, -1, axis=0) - expanded)
            blended += weight * channel

        divergence = (grad_x - np.roll(grad_x, 1, axis=1)) + (grad_y - np.roll(grad_y, 1, axis=0))

        denominator = self.eigenvalue_parameter(grad_x.shape) - self.epsilon
        small = np.abs(denominator) < self.min_denominator
        denominator = np.where(small, np.copysign(self.min_denominator, denominator), denominator)

        spectrum = np.fft.fft2(divergence) - self.epsilon * np.fft.fft2(self.expand(blended))
        result = np.real(np.fft.ifft2(spectrum / denominator))
        return result[:height, :width]

    def blend_float(self, images: Sequence[np.ndarray], weights: np.ndarray) -> np.ndarray:
        """
        Blend camera images in the gradient domain.

        Args:
            images: Canvas-space images, each (H, W) or (H, W, C)
            weights: Blend weights, shape (N, H, W), summing to 1 where covered

        Returns:
            Blended image (float64), same shape as one input image
        """
        if len(images) != len(weights):
            raise ValueError(f"Got {len(images)} images for {len(weights)} weight maps")
        stack = [np.asarray(image, dtype=np.float64) for image in images]
        weights = np.asarray(weights, dtype=np.float64)

        if stack[0].ndim == 2:
            return self._blend_channel(stack, weights)
        return np.stack(
            [self._blend_channel([image[..., c] for image in stack], weights)
             for c in range(stack[0].shape[2])],
            axis=-1,
        )

    def blend(self, images: Sequence[np.ndarray], weights: np.ndarray) -> np.ndarray:
        """Gradient-domain blend clipped to an 8-bit image."""
        return np.clip(np.rint(self.blend_float(images, weights)), 0, 255).astype(np.uint8)
