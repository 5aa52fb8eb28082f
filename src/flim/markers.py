"""Marker sets: labeled voxel coordinates placed by an expert on a training image."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np

from .exceptions import DataError, DimensionError


@dataclass(frozen=True, eq=False)
class MarkerSet:
    """
    Marked voxels of one image.

    Attributes
    ----------
    coords : np.ndarray of shape (n, ndim)
        Integer coordinates in (y, x) or (z, y, x) order.
    labels : np.ndarray of shape (n,)
        Marker label of every coordinate.
    """

    coords: np.ndarray
    labels: np.ndarray

    def __post_init__(self):
        coords = np.asarray(self.coords)
        labels = np.asarray(self.labels)
        if coords.ndim != 2 or coords.shape[1] not in (2, 3):
            raise DimensionError(f"marker coordinates must have shape (n, 2) or (n, 3), got {coords.shape}")
        if labels.shape != (coords.shape[0],):
            raise DimensionError(
                f"expected one label per marker, got {labels.shape[0] if labels.ndim else 0} labels "
                f"for {coords.shape[0]} coordinates"
            )
        if coords.size and not np.issubdtype(coords.dtype, np.integer):
            if not np.array_equal(coords, np.round(coords)):
                raise DataError("marker coordinates must be integers")
        object.__setattr__(self, "coords", coords.astype(np.int64))
        object.__setattr__(self, "labels", labels.astype(np.int64))

    def __len__(self) -> int:
        return len(self.labels)

    @property
    def ndim(self) -> int:
        return self.coords.shape[1]

    @property
    def label_set(self) -> Tuple[int, ...]:
        return tuple(int(v) for v in np.unique(self.labels))

    def counts(self) -> Dict[int, int]:
        values, counts = np.unique(self.labels, return_counts=True)
        return {int(v): int(c) for v, c in zip(values, counts)}

    def as_3d(self) -> np.ndarray:
        """Coordinates in (z, y, x) order, z = 0 for 2D markers."""
        if self.ndim == 3:
            return self.coords
        return np.column_stack([np.zeros(len(self), dtype=np.int64), self.coords])

    def check_within(self, spatial_shape: Sequence[int], image_id=None) -> None:
        if len(spatial_shape) != self.ndim:
            raise DimensionError(
                f"{self.ndim}D markers do not fit a {len(spatial_shape)}D image"
                + (f" ({image_id!r})" if image_id is not None else "")
            )
        if len(self) == 0:
            return
        shape = np.asarray(spatial_shape)
        if np.any(self.coords < 0) or np.any(self.coords >= shape):
            raise DataError(
                f"markers fall outside the image grid {tuple(spatial_shape)}"
                + (f" ({image_id!r})" if image_id is not None else "")
            )

    def downsample(self, stride: int) -> "MarkerSet":
        """
        Map markers onto a grid pooled with ``stride``.

        Coordinates are divided by the stride; when several markers land on the
        same voxel the first one (in marker order) is kept.
        """
        if stride == 1 or len(self) == 0:
            return self
        coords = self.coords // stride
        _, first = np.unique(coords, axis=0, return_index=True)
        keep = np.sort(first)
        return MarkerSet(coords[keep], self.labels[keep])

    @classmethod
    def from_label_image(cls, label_image: np.ndarray, background: int = 0) -> "MarkerSet":
        """Markers from an image where every non-background voxel holds its label."""
        label_image = np.asarray(label_image)
        coords = np.argwhere(label_image != background)
        return cls(coords, label_image[tuple(coords.T)])
