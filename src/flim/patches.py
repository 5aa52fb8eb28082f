"""
Marker patch sampling
=====================

For every marked voxel, the channel vectors found at each adjacency offset are
concatenated into one patch vector (adjacency-major, channel-minor: element
``a * nchannels + c``). Offsets leaving the image read zeros; the convolution
of the forward pipeline uses the same zero padding.

Patches are then normalized with marker-based statistics: per channel, the
mean and standard deviation over every element of every marked patch of the
image. ``stdev_factor`` is added to the standard deviation so that flat
channels never divide by zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from .adjacency import AdjacencyRelation
from .exceptions import ConfigError, DataError
from .images import to_volume
from .markers import MarkerSet


@dataclass(eq=False)
class PatchSet:
    """Patches sampled around the markers of one image."""

    raw: np.ndarray
    normalized: np.ndarray
    labels: np.ndarray
    channel_mean: np.ndarray
    channel_std: np.ndarray
    adjacency_size: int
    nchannels: int
    image_id: Optional[object] = None

    def __len__(self) -> int:
        return len(self.labels)

    @property
    def nfeatures(self) -> int:
        return self.adjacency_size * self.nchannels

    def by_label(self) -> Dict[int, np.ndarray]:
        """Normalized patches grouped by label, labels in ascending order."""
        return {int(lab): self.normalized[self.labels == lab] for lab in np.unique(self.labels)}


def gather_patches(volume: np.ndarray, coords: np.ndarray, adjacency: AdjacencyRelation) -> np.ndarray:
    """
    Gather zero-padded neighborhoods of ``coords`` (n, 3) from a (D, H, W, C) volume.

    Returns an array of shape (n, adjacency_size * C).
    """
    radius = adjacency.radius
    padded = np.pad(volume, [(r, r) for r in radius] + [(0, 0)])
    base = coords + radius
    n, nchannels = len(coords), volume.shape[-1]
    out = np.empty((n, adjacency.size, nchannels), dtype=volume.dtype)
    for a, offset in enumerate(adjacency.offsets):
        z, y, x = (base + offset).T
        out[:, a, :] = padded[z, y, x]
    return out.reshape(n, adjacency.size * nchannels)


def channel_statistics(raw: np.ndarray, nchannels: int):
    """Per-channel mean and standard deviation over all patch elements (float64)."""
    values = raw.reshape(-1, nchannels).astype(np.float64)
    return values.mean(axis=0), values.std(axis=0)


def sample_marker_patches(
    image: np.ndarray,
    markers: MarkerSet,
    adjacency: AdjacencyRelation,
    stdev_factor: float,
    image_id=None,
) -> PatchSet:
    """
    Extract and normalize the patches around the markers of one image.

    Parameters
    ----------
    image : np.ndarray
        (H, W, C) or (D, H, W, C) multiband image.
    markers : MarkerSet
        Marked voxels, in the image's own grid.
    adjacency : AdjacencyRelation
        Neighborhood sampled around each marker.
    stdev_factor : float
        Added to every channel standard deviation; must be > 0.

    Raises
    ------
    ConfigError
        If ``stdev_factor`` is not positive.
    DataError
        If there are no markers or they fall outside the image.
    DimensionError
        If the marker dimensionality does not match the image.
    """
    if not stdev_factor > 0:
        raise ConfigError(f"stdev_factor must be > 0, got {stdev_factor!r}")
    volume, is3d = to_volume(image, image_id)
    spatial = volume.shape[:3] if is3d else volume.shape[1:3]
    markers.check_within(spatial, image_id)
    if len(markers) == 0:
        raise DataError(f"no markers on image {image_id!r}" if image_id is not None else "no markers on image")

    raw = gather_patches(volume, markers.as_3d(), adjacency)
    nchannels = volume.shape[-1]
    mean, std = channel_statistics(raw, nchannels)
    scale = std + stdev_factor
    normalized = (raw.reshape(len(raw), -1, nchannels) - mean) / scale
    return PatchSet(
        raw=raw,
        normalized=normalized.reshape(raw.shape).astype(np.float32),
        labels=markers.labels.copy(),
        channel_mean=mean,
        channel_std=std,
        adjacency_size=adjacency.size,
        nchannels=nchannels,
        image_id=image_id,
    )
