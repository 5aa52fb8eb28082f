"""
Device backends for convolution and pooling.

Two implementations share one numeric contract:

* :class:`NumpyBackend` (device -1) accumulates one matrix product per
  adjacency offset over a zero-padded copy of the image. With an object mask
  only the masked voxels are computed.
* :class:`TorchBackend` runs the same operations with PyTorch on a CPU or
  CUDA device (dilated ``conv3d`` for convolution).

Volumes are (D, H, W, C) float32 arrays on input and output; results agree
across backends up to float32 rounding.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import torch
import torch.nn.functional as F

from .adjacency import AdjacencyRelation
from .exceptions import ResourceError

logger = logging.getLogger(__name__)

POOL_KINDS = ("avg_pool", "max_pool")


def _pool_grid(shape, window: AdjacencyRelation, stride: int):
    lo = np.maximum(-window.offsets.min(axis=0), 0)
    hi = np.maximum(window.offsets.max(axis=0), 0)
    out_shape = tuple(-(-n // stride) for n in shape)
    return lo, hi, out_shape


class NumpyBackend:
    """CPU backend built on NumPy."""

    device = -1
    name = "cpu"

    def convolve(self, volume: np.ndarray, adjacency: AdjacencyRelation, weights: np.ndarray,
                 mask: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Correlate ``volume`` (D, H, W, C) with ``weights`` (K, A*C), zero padding.

        Returns (D, H, W, K). With ``mask`` (D, H, W) only masked voxels are
        computed; the others are zero.
        """
        D, H, W, C = volume.shape
        K = weights.shape[0]
        kernels = weights.reshape(K, adjacency.size, C).astype(np.float32)
        radius = adjacency.radius
        padded = np.pad(volume, [(r, r) for r in radius] + [(0, 0)])
        if mask is None:
            out = np.zeros((D, H, W, K), dtype=np.float32)
            for a, (dz, dy, dx) in enumerate(adjacency.offsets):
                z0, y0, x0 = radius[0] + dz, radius[1] + dy, radius[2] + dx
                out += padded[z0:z0 + D, y0:y0 + H, x0:x0 + W] @ kernels[:, a, :].T
            return out
        voxels = np.argwhere(mask)
        values = np.zeros((len(voxels), K), dtype=np.float32)
        base = voxels + radius
        for a, offset in enumerate(adjacency.offsets):
            z, y, x = (base + offset).T
            values += padded[z, y, x] @ kernels[:, a, :].T
        out = np.zeros((D, H, W, K), dtype=np.float32)
        out[mask] = values
        return out

    def pool(self, volume: np.ndarray, window: AdjacencyRelation, kind: str, stride: int) -> np.ndarray:
        """
        Max or average pooling sampled at grid positions ``0, stride, 2*stride, ...``.

        Samples outside the grid are ignored by max pooling and excluded from
        the average.
        """
        if kind not in POOL_KINDS:
            raise ValueError(f"unknown pooling kind {kind!r}")
        D, H, W, C = volume.shape
        lo, hi, out_shape = _pool_grid((D, H, W), window, stride)
        pads = [(l, h) for l, h in zip(lo, hi)]
        if kind == "max_pool":
            padded = np.pad(volume, pads + [(0, 0)], constant_values=-np.inf)
            acc = np.full(out_shape + (C,), -np.inf, dtype=np.float32)
        else:
            padded = np.pad(volume, pads + [(0, 0)])
            valid = np.pad(np.ones((D, H, W), dtype=np.float32), pads)
            acc = np.zeros(out_shape + (C,), dtype=np.float32)
            count = np.zeros(out_shape, dtype=np.float32)
        for dz, dy, dx in window.offsets:
            z0, y0, x0 = lo[0] + dz, lo[1] + dy, lo[2] + dx
            view = (slice(z0, z0 + D, stride), slice(y0, y0 + H, stride), slice(x0, x0 + W, stride))
            if kind == "max_pool":
                np.maximum(acc, padded[view], out=acc)
            else:
                acc += padded[view]
                count += valid[view]
        if kind == "avg_pool":
            acc /= count[..., np.newaxis]
        return acc


class TorchBackend:
    """PyTorch backend for a CPU or CUDA device."""

    def __init__(self, device="cpu"):
        self.torch_device = torch.device(device)
        self.device = -1 if self.torch_device.type == "cpu" else (self.torch_device.index or 0)
        self.name = str(self.torch_device)

    def _tensor(self, volume: np.ndarray) -> torch.Tensor:
        # (D, H, W, C) -> (C, D, H, W)
        return torch.as_tensor(np.ascontiguousarray(volume), dtype=torch.float32,
                               device=self.torch_device).permute(3, 0, 1, 2)

    def convolve(self, volume: np.ndarray, adjacency: AdjacencyRelation, weights: np.ndarray,
                 mask: Optional[np.ndarray] = None) -> np.ndarray:
        C = volume.shape[-1]
        K = weights.shape[0]
        kz, ky, kx = adjacency.extents
        kernels = torch.as_tensor(weights, dtype=torch.float32, device=self.torch_device)
        kernels = kernels.reshape(K, kz, ky, kx, C).permute(0, 4, 1, 2, 3).contiguous()
        x = self._tensor(volume).unsqueeze(0)
        radius = tuple(int(r) for r in adjacency.radius)
        with torch.no_grad():
            out = F.conv3d(x, kernels, padding=radius, dilation=tuple(adjacency.steps))
        out = out[0].permute(1, 2, 3, 0).cpu().numpy()
        if mask is not None:
            out[~mask] = 0
        return out

    def pool(self, volume: np.ndarray, window: AdjacencyRelation, kind: str, stride: int) -> np.ndarray:
        if kind not in POOL_KINDS:
            raise ValueError(f"unknown pooling kind {kind!r}")
        D, H, W, C = volume.shape
        lo, hi, out_shape = _pool_grid((D, H, W), window, stride)
        pad = (int(lo[2]), int(hi[2]), int(lo[1]), int(hi[1]), int(lo[0]), int(hi[0]))
        x = self._tensor(volume)
        with torch.no_grad():
            if kind == "max_pool":
                padded = F.pad(x, pad, value=float("-inf"))
                acc = torch.full((C,) + out_shape, float("-inf"), device=self.torch_device)
            else:
                padded = F.pad(x, pad)
                ones = torch.ones((1, D, H, W), device=self.torch_device)
                valid = F.pad(ones, pad)
                acc = torch.zeros((C,) + out_shape, device=self.torch_device)
                count = torch.zeros((1,) + out_shape, device=self.torch_device)
            for dz, dy, dx in window.offsets:
                z0, y0, x0 = int(lo[0] + dz), int(lo[1] + dy), int(lo[2] + dx)
                view = (slice(None), slice(z0, z0 + D, stride), slice(y0, y0 + H, stride),
                        slice(x0, x0 + W, stride))
                if kind == "max_pool":
                    acc = torch.maximum(acc, padded[view])
                else:
                    acc = acc + padded[view]
                    count = count + valid[view]
            if kind == "avg_pool":
                acc = acc / count
        return acc.permute(1, 2, 3, 0).cpu().numpy()


def torch_device(device: int) -> torch.device:
    """Torch device for a device selector (-1 CPU, >= 0 CUDA index)."""
    if isinstance(device, bool) or not isinstance(device, (int, np.integer)):
        raise ResourceError(f"device must be an integer, got {device!r}")
    if device == -1:
        return torch.device("cpu")
    if device < -1:
        raise ResourceError(f"invalid device {device}; use -1 for CPU or a GPU index")
    if not torch.cuda.is_available():
        raise ResourceError(f"GPU {device} requested but CUDA is not available")
    if device >= torch.cuda.device_count():
        raise ResourceError(f"GPU {device} requested but only {torch.cuda.device_count()} device(s) found")
    return torch.device(f"cuda:{device}")


def resolve_backend(device: int):
    """
    Backend for a device selector.

    -1 selects the NumPy CPU backend, ``n >= 0`` the PyTorch backend on CUDA
    device ``n``. Absent devices raise ``ResourceError``; there is no silent
    fallback to the CPU.
    """
    target = torch_device(device)
    if target.type == "cpu":
        return NumpyBackend()
    logger.info("using %s (%s)", target, torch.cuda.get_device_name(target))
    return TorchBackend(target)
