"""
Layer-by-layer learning of a network from image markers.

Layer ``i`` is learned from the output of layers ``0 .. i-1`` on the training
images, so every layer is estimated, stored, and then applied to produce the
next layer's training input. When the architecture pools between layers the
markers follow the images onto the strided grid (coordinates divided by the
stride, duplicates dropped); with ``apply_intrinsic_atrous`` the training
forward pass runs at full resolution instead and the markers never move.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import numpy as np
from joblib import Parallel, delayed

from .adjacency import adjacency_from_layer, atrous_factor
from .architecture import FlimArch
from .backends import resolve_backend
from .config import make_metadata
from .estimation import Clustering, EstimationStrategy, estimate_kernel_bank
from .exceptions import DataError
from .kernel_bank import KernelBank, ParameterStore
from .markers import MarkerSet
from .patches import sample_marker_patches
from .pipeline import FeatureExtractor

logger = logging.getLogger(__name__)


def _check_inputs(images, markers, image_ids):
    if len(images) == 0:
        raise DataError("no training images")
    if len(markers) != len(images):
        raise DataError(f"{len(images)} training images but {len(markers)} marker sets")
    if image_ids is None:
        return list(range(len(images)))
    if len(image_ids) != len(images):
        raise DataError(f"{len(images)} training images but {len(image_ids)} identifiers")
    return list(image_ids)


def learn_layer(images: Sequence[np.ndarray], markers: Sequence[MarkerSet], arch: FlimArch, layer_index: int,
                strategy: Optional[EstimationStrategy] = None, image_ids: Optional[Sequence] = None,
                dense: Optional[bool] = None, n_jobs: int = 1) -> KernelBank:
    """
    Learn the kernel bank of one layer.

    Parameters
    ----------
    images : sequence of np.ndarray
        Inputs of the layer (the original images for layer 0, otherwise the
        previous layer's outputs).
    markers : sequence of MarkerSet
        Markers of every image, on the grid of ``images``.
    arch : FlimArch
    layer_index : int
    strategy : EstimationStrategy, optional
        Defaults to :class:`~flim.estimation.Clustering`.
    dense : bool, optional
        Whether ``images`` are full-resolution activations (atrous dilation);
        defaults to ``arch.apply_intrinsic_atrous``.
    n_jobs : int
        Parallel jobs for patch sampling.
    """
    image_ids = _check_inputs(images, markers, image_ids)
    strategy = Clustering() if strategy is None else strategy
    dense = arch.apply_intrinsic_atrous if dense is None else dense
    layer = arch[layer_index]
    is3d = np.ndim(images[0]) == 4
    adjacency = adjacency_from_layer(layer, atrous_factor(arch, layer_index, dense), dim3d=is3d)

    jobs = zip(images, markers, image_ids)
    if n_jobs == 1:
        patch_sets = [sample_marker_patches(im, m, adjacency, arch.stdev_factor, i) for im, m, i in jobs]
    else:
        patch_sets = Parallel(n_jobs=n_jobs)(
            delayed(sample_marker_patches)(im, m, adjacency, arch.stdev_factor, i) for im, m, i in jobs
        )
    logger.info("layer %d: %d patches of %d features from %d images", layer_index,
                sum(len(ps) for ps in patch_sets), patch_sets[0].nfeatures, len(patch_sets))
    return estimate_kernel_bank(strategy, patch_sets, layer, arch.stdev_factor, layer_index)


def learn_model(images: Sequence[np.ndarray], markers: Sequence[MarkerSet], arch: FlimArch,
                store: ParameterStore, strategy: Optional[EstimationStrategy] = None,
                image_ids: Optional[Sequence] = None, device: int = -1, n_jobs: int = 1) -> List[KernelBank]:
    """
    Learn every layer of ``arch`` and persist the banks in ``store``.

    Returns the learned banks in layer order. ``METADATA.json`` records the
    architecture, the strategy and the training images.
    """
    image_ids = _check_inputs(images, markers, image_ids)
    strategy = Clustering() if strategy is None else strategy
    dense = arch.apply_intrinsic_atrous
    # fail on an unusable device before any layer is learned
    resolve_backend(device)
    activations = [np.asarray(im, dtype=np.float32) for im in images]
    arenas: List[List[np.ndarray]] = [[] for _ in activations]
    markers = list(markers)
    banks: List[KernelBank] = []

    for i, layer in enumerate(arch.layers):
        bank = learn_layer(activations, markers, arch, i, strategy, image_ids, dense=dense, n_jobs=n_jobs)
        store.save(i, bank)
        banks.append(bank)
        if i == arch.nlayers - 1:
            break
        extractor = FeatureExtractor(arch, banks, device=device, dense=dense)
        for k, image_id in enumerate(image_ids):
            activations[k] = extractor.run_layer(activations[k], i, previous=arenas[k], image_id=image_id)
            arenas[k].append(activations[k])
        if not dense:
            markers = [m.downsample(layer.effective_stride) for m in markers]

    store.write_metadata(**make_metadata(arch, strategy, image_ids))
    logger.info("learned %d layers from %d images into %s", arch.nlayers, len(image_ids), store.directory)
    return banks
