"""
Memory-aware batch sizing for feature extraction.

The footprint of one image is estimated layer by layer (float32): the input
map and its zero-padded copy, the convolution output and its concatenation
with skip connections, plus every earlier output kept alive for a later skip
connection. The batch size is the number of such footprints that fit in the
memory budget: a configured ceiling or a fraction of the available memory
(``psutil`` for the CPU, ``torch.cuda.mem_get_info`` for a GPU).
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import psutil
import torch

from .architecture import FlimArch
from .backends import torch_device
from .exceptions import ResourceError

logger = logging.getLogger(__name__)

FLOAT_BYTES = 4


def layer_output_channels(arch: FlimArch, nchannels: int, nkernels: Optional[Sequence[int]] = None):
    """
    Input and output channel counts of every layer.

    ``nkernels`` gives the actual bank sizes (e.g. after curation); by default
    every layer has ``noutput_channels`` kernels.
    """
    if nkernels is None:
        nkernels = [layer.noutput_channels for layer in arch.layers]
    channels_in, channels_out = [], []
    for layer, k in zip(arch.layers, nkernels):
        channels_in.append(nchannels if not channels_out else channels_out[-1])
        channels_out.append(k + sum(channels_out[s] for s in layer.skip_connection))
    return channels_in, channels_out


def estimate_image_bytes(arch: FlimArch, nvoxels: int, nchannels: int, dim3d: bool = False,
                         dense: bool = False, nkernels: Optional[Sequence[int]] = None) -> int:
    """Peak bytes needed to push one image through every layer."""
    if nvoxels < 1 or nchannels < 1:
        raise ResourceError(f"cannot size an image of {nvoxels} voxels and {nchannels} channels")
    ndim = 3 if dim3d else 2
    channels_in, channels_out = layer_output_channels(arch, nchannels, nkernels)
    kept = {s for layer in arch.layers for s in layer.skip_connection}
    stride, peak, retained = 1, 0, 0
    for i, layer in enumerate(arch.layers):
        nv_in = math.ceil(nvoxels / stride ** ndim)
        cin, cout = channels_in[i], channels_out[i]
        peak = max(peak, nv_in * (2 * cin + 2 * cout) + retained)
        if not dense:
            stride *= layer.effective_stride
        nv_out = math.ceil(nvoxels / stride ** ndim)
        if i in kept:
            retained += nv_out * cout
    return peak * FLOAT_BYTES


def _batch_size(per_image: int, budget: float, where: str) -> int:
    if per_image > budget:
        raise ResourceError(
            f"one image needs {per_image / 1024 ** 2:.1f}MB but only {budget / 1024 ** 2:.1f}MB "
            f"are available on {where}"
        )
    return max(1, int(budget // per_image))


def batch_size_cpu(arch: FlimArch, nvoxels: int, nchannels: int, memory_budget: Optional[int] = None,
                   max_memory_usage_ratio: float = 0.8, dim3d: bool = False, dense: bool = False,
                   nkernels: Optional[Sequence[int]] = None) -> int:
    """
    Number of images that may be processed concurrently on the CPU.

    ``memory_budget`` (bytes) is a fixed ceiling; without it the budget is
    ``max_memory_usage_ratio`` of the currently available memory.
    """
    if memory_budget is None:
        memory_budget = psutil.virtual_memory().available * max_memory_usage_ratio
    per_image = estimate_image_bytes(arch, nvoxels, nchannels, dim3d, dense, nkernels)
    size = _batch_size(per_image, memory_budget, "the CPU")
    logger.debug("cpu batch size %d (%d bytes per image, budget %d)", size, per_image, memory_budget)
    return size


def batch_size_gpu(arch: FlimArch, nvoxels: int, nchannels: int, device: int,
                   memory_budget: Optional[int] = None, max_memory_usage_ratio: float = 0.8,
                   dim3d: bool = False, dense: bool = False, nkernels: Optional[Sequence[int]] = None) -> int:
    """Number of images that fit in the free memory of CUDA device ``device``."""
    target = torch_device(device)
    if memory_budget is None:
        free, _ = torch.cuda.mem_get_info(target)
        memory_budget = free * max_memory_usage_ratio
    per_image = estimate_image_bytes(arch, nvoxels, nchannels, dim3d, dense, nkernels)
    return _batch_size(per_image, memory_budget, str(target))


def batch_size_for_device(arch: FlimArch, nvoxels: int, nchannels: int, device: int = -1, **kwargs) -> int:
    """Dispatch to the CPU (``device == -1``) or GPU batch sizer."""
    if device == -1:
        return batch_size_cpu(arch, nvoxels, nchannels, **kwargs)
    return batch_size_gpu(arch, nvoxels, nchannels, device, **kwargs)
