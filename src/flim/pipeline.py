"""
Forward pipeline
================

Applies a learned network to multiband images. Every layer, in ascending
order:

1. convolves its input with the layer's adjacency (zero padding) and the
   stored kernel bank,
2. normalizes the responses with the bank's per-kernel mean/stdev (or adds
   the bias of a gradient-descent bank),
3. applies ReLU when the layer asks for it,
4. concatenates the outputs of skip-connected earlier layers, subsampled
   onto the current grid,
5. pools.

Outputs of every layer are appended to a per-image arena so that later
layers can reach them through skip connections; the arena is dropped once
the image is done.

In dense mode the network runs at full resolution: pooling keeps stride 1
and every layer dilates its windows by the product of the preceding strides
(see :func:`flim.adjacency.atrous_factor`). Architectures with
``apply_intrinsic_atrous`` run dense unless told otherwise.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
from joblib import Parallel, delayed

from .adjacency import adjacency_from_layer, atrous_factor, cumulative_stride, pooling_offsets
from .architecture import FlimArch, FlimLayer
from .backends import NumpyBackend, resolve_backend
from .batch_sizing import batch_size_for_device
from .exceptions import DataError, DimensionError, where
from .images import from_volume, mask_to_volume, to_volume
from .kernel_bank import KernelBank, ParameterStore

logger = logging.getLogger(__name__)


def _subsample(volume: np.ndarray, stride: int) -> np.ndarray:
    if stride == 1:
        return volume
    return volume[::stride, ::stride, ::stride]


class FeatureExtractor:
    """
    Run a learned network on new images.

    Parameters
    ----------
    arch : FlimArch
        Network architecture.
    parameters : ParameterStore, path or sequence of KernelBank
        Learned kernel banks, one per layer (layer ``i`` at index ``i``).
    device : int
        -1 for the NumPy CPU backend, ``n >= 0`` for CUDA device ``n``.
    dense : bool, optional
        Run at full resolution with atrous dilation instead of strided pooling;
        defaults to ``arch.apply_intrinsic_atrous``.
    memory_budget : int, optional
        Byte ceiling for :meth:`extract_batch`; defaults to a fraction of the
        free memory of the device.
    max_memory_usage_ratio : float
        That fraction.
    n_jobs : int
        Threads per batch on the CPU backend.
    """

    def __init__(self, arch: FlimArch, parameters: Union[ParameterStore, str, Path, Sequence[KernelBank]],
                 device: int = -1, dense: Optional[bool] = None, memory_budget: Optional[int] = None,
                 max_memory_usage_ratio: float = 0.8, n_jobs: int = 1):
        self.arch = arch
        if isinstance(parameters, (str, Path)):
            parameters = ParameterStore(parameters)
        if isinstance(parameters, ParameterStore):
            self.store, self._banks = parameters, {}
        else:
            self.store, self._banks = None, dict(enumerate(parameters))
        self.device = device
        self.backend = resolve_backend(device)
        self.dense = arch.apply_intrinsic_atrous if dense is None else dense
        self.memory_budget = memory_budget
        self.max_memory_usage_ratio = max_memory_usage_ratio
        self.n_jobs = n_jobs

    @classmethod
    def from_config(cls, arch: FlimArch, parameters, config) -> "FeatureExtractor":
        """Build from an :class:`~flim.config.ExtractionConfig`."""
        return cls(arch, parameters, device=config.device, dense=config.dense,
                   memory_budget=config.memory_budget,
                   max_memory_usage_ratio=config.max_memory_usage_ratio, n_jobs=config.n_jobs)

    def bank(self, layer_index: int) -> KernelBank:
        if layer_index not in self._banks:
            if self.store is None:
                raise DataError(f"no kernel bank given for layer {layer_index}")
            self._banks[layer_index] = self.store.load(layer_index)
        return self._banks[layer_index]

    def _stride(self, layer: FlimLayer) -> int:
        return 1 if self.dense else layer.effective_stride

    def _grid_stride(self, start: int, stop: int) -> int:
        return 1 if self.dense else cumulative_stride(self.arch, start, stop)

    def _forward(self, volume: np.ndarray, layer_index: int, arena: Sequence[np.ndarray],
                 mask: Optional[np.ndarray], is3d: bool, image_id=None) -> np.ndarray:
        layer = self.arch[layer_index]
        bank = self.bank(layer_index)
        factor = atrous_factor(self.arch, layer_index, self.dense)
        adjacency = adjacency_from_layer(layer, factor, dim3d=is3d)
        nchannels = volume.shape[-1]
        if bank.nfeatures != adjacency.size * nchannels:
            raise DimensionError(
                f"kernel bank has {bank.nfeatures} features but {adjacency.size} offsets x {nchannels} "
                f"input channels need {adjacency.size * nchannels}{where(layer_index, image_id)}"
            )

        out = self.backend.convolve(volume, adjacency, bank.weights, mask)
        if bank.normalized:
            out = (out - bank.mean) / bank.stdev
        else:
            out = out + bank.bias
        if layer.relu:
            np.maximum(out, 0, out=out)
        if mask is not None:
            out[~mask] = 0

        if layer.skip_connection:
            parts = [out]
            for s in layer.skip_connection:
                if s >= len(arena):
                    raise DataError(f"skip connection to layer {s} has no output yet{where(layer_index, image_id)}")
                source = _subsample(arena[s], self._grid_stride(s + 1, layer_index))
                if source.shape[:3] != out.shape[:3]:
                    raise DimensionError(
                        f"skip connection from layer {s} has grid {source.shape[:3]}, "
                        f"expected {out.shape[:3]}{where(layer_index, image_id)}"
                    )
                parts.append(source)
            out = np.concatenate(parts, axis=-1)

        if layer.pools:
            window = pooling_offsets(layer, factor, dim3d=is3d)
            stride = self._stride(layer)
            out = self.backend.pool(out, window, layer.pool_type, stride)
            if mask is not None:
                out[~_subsample(mask, stride)] = 0
        logger.debug("layer %d: %s -> %s%s", layer_index, volume.shape, out.shape, where(image_id=image_id))
        return out.astype(np.float32, copy=False)

    def run_layer(self, activations: np.ndarray, layer_index: int,
                  previous: Optional[Sequence[np.ndarray]] = None, mask: Optional[np.ndarray] = None,
                  image_id=None) -> np.ndarray:
        """
        Apply one stored layer to the output of the layer before it.

        ``previous`` holds the outputs of layers ``0 .. layer_index-1`` and is
        only needed when the layer has skip connections. ``mask`` is aligned
        with the original input grid.
        """
        volume, is3d = to_volume(activations, image_id)
        arena = [to_volume(p, image_id)[0] for p in (previous or ())]
        layer_mask = None
        if mask is not None:
            full = np.asarray(mask).astype(bool)
            full = full if full.ndim == 3 else full[np.newaxis]
            layer_mask = _subsample(full, self._grid_stride(0, layer_index))
            if layer_mask.shape != volume.shape[:3]:
                raise DimensionError(
                    f"object mask subsampled to {layer_mask.shape} does not match the layer input "
                    f"{volume.shape[:3]}{where(layer_index, image_id)}"
                )
        return from_volume(self._forward(volume, layer_index, arena, layer_mask, is3d, image_id), is3d)

    def extract(self, image: np.ndarray, mask: Optional[np.ndarray] = None, nlayers: Optional[int] = None,
                return_all: bool = False, image_id=None):
        """
        Features of one image.

        Parameters
        ----------
        image : np.ndarray
            (H, W, C) or (D, H, W, C) multiband image.
        mask : np.ndarray, optional
            Object mask on the image grid; outputs are zero outside it.
        nlayers : int, optional
            Stop after this many layers (default: all).
        return_all : bool
            Return every layer's output instead of the last one.
        """
        volume, is3d = to_volume(image, image_id)
        nlayers = self.arch.nlayers if nlayers is None else nlayers
        if not 1 <= nlayers <= self.arch.nlayers:
            raise DataError(f"cannot run {nlayers} layers of a {self.arch.nlayers}-layer network")
        if mask is not None:
            mask = mask_to_volume(mask, volume.shape[:3], image_id)
        arena: List[np.ndarray] = []
        current = volume
        for i in range(nlayers):
            current = self._forward(current, i, arena, mask, is3d, image_id)
            arena.append(current)
            if mask is not None:
                mask = _subsample(mask, self._stride(self.arch[i]))
        if return_all:
            return [from_volume(v, is3d) for v in arena]
        return from_volume(current, is3d)

    def batch_size(self, images: Sequence[np.ndarray], nlayers: Optional[int] = None) -> int:
        shapes = [np.shape(im) if np.ndim(im) == 2 else np.shape(im)[:-1] for im in images]
        nvoxels = max(int(np.prod(s)) for s in shapes)
        nchannels = 1 if np.ndim(images[0]) == 2 else np.shape(images[0])[-1]
        is3d = np.ndim(images[0]) == 4
        arch = self.arch if nlayers is None else self.arch.truncated(nlayers)
        nkernels = [self.bank(i).nkernels for i in range(arch.nlayers)]
        return batch_size_for_device(arch, nvoxels, nchannels, device=self.device,
                                     memory_budget=self.memory_budget,
                                     max_memory_usage_ratio=self.max_memory_usage_ratio,
                                     dim3d=is3d, dense=self.dense, nkernels=nkernels)

    def extract_batch(self, images: Sequence[np.ndarray], masks: Optional[Sequence[np.ndarray]] = None,
                      nlayers: Optional[int] = None, image_ids: Optional[Sequence] = None) -> List[np.ndarray]:
        """
        Features of many images, processed in memory-bounded batches.

        Images in a batch run concurrently (threads) on the CPU backend;
        batches run one after another.
        """
        images = list(images)
        if not images:
            return []
        masks = list(masks) if masks is not None else [None] * len(images)
        image_ids = list(image_ids) if image_ids is not None else list(range(len(images)))
        if len(masks) != len(images) or len(image_ids) != len(images):
            raise DataError(f"{len(images)} images, {len(masks)} masks and {len(image_ids)} identifiers")
        size = self.batch_size(images, nlayers)
        n_jobs = self.n_jobs if isinstance(self.backend, NumpyBackend) else 1
        logger.info("extracting %d images in batches of %d on %s", len(images), size, self.backend.name)
        results: List[np.ndarray] = []
        for start in range(0, len(images), size):
            stop = start + size
            jobs = zip(images[start:stop], masks[start:stop], image_ids[start:stop])
            if n_jobs == 1:
                batch = [self.extract(im, m, nlayers, image_id=i) for im, m, i in jobs]
            else:
                batch = Parallel(n_jobs=n_jobs, prefer="threads")(
                    delayed(self.extract)(im, m, nlayers, image_id=i) for im, m, i in jobs
                )
            results.extend(batch)
        return results


def extract_features_from_layer(arch: FlimArch, parameters, activations: np.ndarray, layer_index: int,
                                previous: Optional[Sequence[np.ndarray]] = None,
                                mask: Optional[np.ndarray] = None, device: int = -1,
                                dense: Optional[bool] = None) -> np.ndarray:
    """Apply stored layer ``layer_index`` to ``activations`` (output of the layer before it)."""
    extractor = FeatureExtractor(arch, parameters, device=device, dense=dense)
    return extractor.run_layer(activations, layer_index, previous, mask)


def _atrous_pool(image, kind, size, stride, atrous):
    volume, is3d = to_volume(image)
    if np.ndim(size) == 0:
        size = (size, size, size if is3d else 0)
    window = pooling_offsets(FlimLayer(pool_type=kind, pool_size=size, pool_stride=stride), atrous, dim3d=is3d)
    return from_volume(NumpyBackend().pool(volume, window, kind, stride), is3d)


def atrous_max_pool(image: np.ndarray, size, stride: int = 1, atrous: int = 1) -> np.ndarray:
    """
    Max pooling with a window dilated by ``atrous``.

    ``size`` is an int or an (x, y, z) triple. Samples outside the image are
    ignored; output positions are ``0, stride, 2*stride, ...``.
    """
    return _atrous_pool(image, "max_pool", size, stride, atrous)


def atrous_avg_pool(image: np.ndarray, size, stride: int = 1, atrous: int = 1) -> np.ndarray:
    """Average pooling counterpart of :func:`atrous_max_pool` (out-of-image samples excluded)."""
    return _atrous_pool(image, "avg_pool", size, stride, atrous)
