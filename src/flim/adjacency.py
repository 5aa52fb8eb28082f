"""
Adjacency relations for convolution and pooling windows.

An adjacency relation is the ordered set of relative offsets visited around
every voxel. Offsets are stored as (dz, dy, dx) rows in lexicographic order
over (z, y, x); patch vectors are compared position by position, so training
and extraction must build them the same way.

Pooling physically shrinks the grid between layers. When a network runs at
full resolution instead (intrinsic atrous), every layer multiplies its
dilation by the product of the preceding pooling strides, which keeps the
receptive field of each layer, measured on the original image, unchanged.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .architecture import FlimArch, FlimLayer
from .exceptions import ConfigError


@dataclass(frozen=True, eq=False)
class AdjacencyRelation:
    """Offsets (n, 3) in (dz, dy, dx) order, plus the extents/steps that made them."""

    offsets: np.ndarray
    extents: Tuple[int, int, int]
    steps: Tuple[int, int, int]

    def __len__(self) -> int:
        return len(self.offsets)

    @property
    def size(self) -> int:
        return len(self.offsets)

    @property
    def radius(self) -> np.ndarray:
        """Largest absolute offset along z, y and x."""
        return np.abs(self.offsets).max(axis=0)

    def __eq__(self, other) -> bool:
        if not isinstance(other, AdjacencyRelation):
            return NotImplemented
        return np.array_equal(self.offsets, other.offsets)

    def __hash__(self):
        return hash(self.offsets.tobytes())


def _axis_offsets(extent: int, step: int, centered: bool) -> np.ndarray:
    if centered:
        first = -(extent // 2)
    else:
        first = -((extent - 1) // 2)
    return (np.arange(extent) + first) * step


def _build(extents, steps, centered) -> AdjacencyRelation:
    axes = [_axis_offsets(k, s, centered) for k, s in zip(extents, steps)]
    offsets = np.array(list(itertools.product(*axes)), dtype=np.int64).reshape(-1, 3)
    return AdjacencyRelation(offsets=offsets, extents=tuple(extents), steps=tuple(steps))


def adjacency_from_layer(layer: FlimLayer, atrous_factor: int = 1, dim3d: bool = False) -> AdjacencyRelation:
    """
    Build the convolution window of a layer.

    Parameters
    ----------
    layer : FlimLayer
        Supplies ``kernel_size`` and ``dilation_rate`` as (x, y, z).
    atrous_factor : int
        Multiplier applied to the dilation of every axis (>= 1).
    dim3d : bool
        When False the z axis collapses to the single offset 0.

    Returns
    -------
    AdjacencyRelation
        ``kx * ky * kz`` offsets (``kz`` forced to 1 in 2D), symmetric around 0.

    Raises
    ------
    ConfigError
        Even or non-positive extents, non-positive dilation or atrous factor.
    """
    if isinstance(atrous_factor, bool) or int(atrous_factor) != atrous_factor or atrous_factor < 1:
        raise ConfigError(f"atrous factor must be a positive integer, got {atrous_factor!r}")
    kx, ky, kz = layer.kernel_size
    dx, dy, dz = layer.dilation_rate
    if not dim3d:
        kz, dz = 1, 1
    for axis, k, d in (("x", kx, dx), ("y", ky, dy), ("z", kz, dz)):
        if k < 1 or k % 2 == 0:
            raise ConfigError(f"kernel extent along {axis} must be odd and positive, got {k}")
        if d < 1:
            raise ConfigError(f"dilation rate along {axis} must be positive, got {d}")
    a = int(atrous_factor)
    return _build((kz, ky, kx), (dz * a, dy * a, dx * a), centered=True)


def pooling_offsets(layer: FlimLayer, atrous_factor: int = 1, dim3d: bool = False) -> AdjacencyRelation:
    """
    Build the pooling window of a layer.

    Extents may be even: extent ``k`` spans offsets ``-((k-1)//2) .. k//2``,
    so a 2x2 window sampled at even positions covers non-overlapping blocks.
    Offsets are dilated by ``atrous_factor`` exactly like the convolution.
    """
    if isinstance(atrous_factor, bool) or int(atrous_factor) != atrous_factor or atrous_factor < 1:
        raise ConfigError(f"atrous factor must be a positive integer, got {atrous_factor!r}")
    px, py, pz = layer.pool_size
    if not dim3d:
        pz = 1
    if min(px, py, pz) < 1:
        raise ConfigError(f"pool size must be positive, got {layer.pool_size}")
    a = int(atrous_factor)
    return _build((pz, py, px), (a, a, a), centered=False)


def cumulative_stride(arch: FlimArch, start: int, stop: int) -> int:
    """Product of the pooling strides of layers ``start .. stop-1``."""
    stride = 1
    for layer in arch.layers[start:stop]:
        stride *= layer.effective_stride
    return stride


def atrous_factor(arch: FlimArch, layer_index: int, dense: bool) -> int:
    """
    Dilation multiplier of a layer.

    In dense (full-resolution) mode it is the product of the strides of the
    preceding layers; on a pooled grid the spacing is already physical, so 1.
    """
    if not dense:
        return 1
    return cumulative_stride(arch, 0, layer_index)
