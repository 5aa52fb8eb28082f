"""Multiband image helpers: every image is handled internally as (z, y, x, channel)."""

from __future__ import annotations

from typing import Tuple

import numpy as np

from .exceptions import DimensionError


def to_volume(image: np.ndarray, image_id=None) -> Tuple[np.ndarray, bool]:
    """
    Return ``(volume, is3d)`` where volume has shape (D, H, W, C) in float32.

    2D images are (H, W, C) (or (H, W) for a single band); 3D images are
    (D, H, W, C).
    """
    image = np.asarray(image)
    if image.ndim == 2:
        return image[np.newaxis, :, :, np.newaxis].astype(np.float32, copy=False), False
    if image.ndim == 3:
        return image[np.newaxis].astype(np.float32, copy=False), False
    if image.ndim == 4:
        return image.astype(np.float32, copy=False), True
    raise DimensionError(
        f"expected a 2D or 3D multiband image, got shape {image.shape}"
        + (f" ({image_id!r})" if image_id is not None else "")
    )


def from_volume(volume: np.ndarray, is3d: bool) -> np.ndarray:
    return volume if is3d else volume[0]


def mask_to_volume(mask: np.ndarray, spatial_shape, image_id=None) -> np.ndarray:
    """Boolean (D, H, W) mask matching ``spatial_shape`` (D, H, W)."""
    mask = np.asarray(mask).astype(bool)
    if mask.ndim == 2:
        mask = mask[np.newaxis]
    if mask.shape != tuple(spatial_shape):
        raise DimensionError(
            f"object mask shape {mask.shape} does not match image grid {tuple(spatial_shape)}"
            + (f" ({image_id!r})" if image_id is not None else "")
        )
    return mask
