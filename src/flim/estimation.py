"""
Kernel estimation from marker patches
=====================================

A layer's kernel bank is produced from the patches sampled around the markers
of every training image. Three strategies share the same entry point,
:func:`estimate_kernel_bank`:

* :class:`Clustering` (default) - per image, patches of every marker label are
  clustered (k-means centroids or affinity-propagation exemplars) into kernel
  candidates; the candidates of all images are then reduced to the layer's
  ``noutput_channels`` consensus kernels.
* :class:`PrincipalComponents` - kernels are the leading principal components
  of all normalized marker patches.
* :class:`GradientDescent` - kernels start from one of the above (or at
  random) and are refined with SGD on the marker labels; the bank carries a
  bias instead of normalization statistics.

Kernels are estimated on marker-normalized patches and then folded back into
the raw input domain (weights divided by the channel standard deviations).
The mean and standard deviation of every folded kernel's response over the
marker patches become the bank's normalization statistics.

Per-image clustering is independent and may run in parallel (joblib); the
consensus step runs once, after every image has been processed.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from functools import singledispatch
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from joblib import Parallel, delayed
from sklearn.decomposition import PCA

from .architecture import FlimLayer
from .clustering import affinity_exemplars, distinct_rows, kmeans_centroids, unit_rows
from .exceptions import ConfigError, DataError, DimensionError, where
from .kernel_bank import KernelBank
from .patches import PatchSet, channel_statistics

logger = logging.getLogger(__name__)

CLUSTERING_METHODS = ("kmeans", "affinity")
SGD_LOSSES = ("softmax", "margin")


@dataclass(frozen=True)
class Clustering:
    """
    Clustering-based kernel estimation.

    Parameters
    ----------
    method : {"kmeans", "affinity"}
        Centroid clustering or graph-based exemplar clustering.
    joint : bool
        Cluster all patches of an image together instead of label by label.
    seed : int
        Random state of every clustering call.
    max_iter : iteration cap of either method; reaching it unconverged is a ResourceError.
    tol, n_init : k-means settings.
    damping : affinity propagation damping.
    required_labels : tuple of int
        Labels that must have at least one marker among the training images.
    n_jobs : int
        Parallel jobs for the per-image clustering.
    """

    method: str = "kmeans"
    joint: bool = False
    seed: int = 0
    max_iter: int = 300
    tol: float = 1e-4
    n_init: int = 10
    damping: float = 0.5
    required_labels: Tuple[int, ...] = ()
    n_jobs: int = 1

    def __post_init__(self):
        if self.method not in CLUSTERING_METHODS:
            raise ConfigError(f"clustering method must be one of {CLUSTERING_METHODS}, got {self.method!r}")
        if self.max_iter <= 0 or self.n_init <= 0:
            raise ConfigError("max_iter and n_init must be positive")
        if not 0.5 <= self.damping < 1:
            raise ConfigError("damping must be in [0.5, 1)")
        object.__setattr__(self, "required_labels", tuple(int(v) for v in self.required_labels))


@dataclass(frozen=True)
class PrincipalComponents:
    """Kernels from the principal components of the marker patches."""

    seed: int = 0
    required_labels: Tuple[int, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "required_labels", tuple(int(v) for v in self.required_labels))


@dataclass(frozen=True)
class GradientDescent:
    """
    Kernels and biases refined by stochastic gradient descent.

    Parameters
    ----------
    init : {"clustering", "random"}
        Start from the ``clustering`` strategy's bank or from random weights.
    loss : {"softmax", "margin"}
        ``softmax`` trains a temporary linear classifier on the marker labels;
        ``margin`` pulls outputs to their label centroid and pushes centroids
        at least ``margin`` apart.
    max_epochs, tol, patience :
        Stop after ``max_epochs`` or once the epoch loss improved by less than
        ``tol`` for ``patience`` consecutive epochs.
    device : int
        -1 for CPU, otherwise a CUDA device index.
    """

    init: str = "clustering"
    clustering: Clustering = field(default_factory=Clustering)
    loss: str = "softmax"
    learning_rate: float = 0.01
    momentum: float = 0.9
    max_epochs: int = 50
    batch_size: int = 64
    tol: float = 1e-5
    patience: int = 5
    margin: float = 1.0
    seed: int = 0
    device: int = -1
    required_labels: Tuple[int, ...] = ()

    def __post_init__(self):
        if self.init not in ("clustering", "random"):
            raise ConfigError(f"init must be 'clustering' or 'random', got {self.init!r}")
        if self.loss not in SGD_LOSSES:
            raise ConfigError(f"loss must be one of {SGD_LOSSES}, got {self.loss!r}")
        if self.learning_rate <= 0:
            raise ConfigError("learning_rate must be positive")
        if not 0 <= self.momentum < 1:
            raise ConfigError("momentum must be in [0, 1)")
        if self.max_epochs <= 0 or self.batch_size <= 0 or self.patience <= 0:
            raise ConfigError("max_epochs, batch_size and patience must be positive")
        if isinstance(self.clustering, dict):
            object.__setattr__(self, "clustering", Clustering(**self.clustering))
        object.__setattr__(self, "required_labels", tuple(int(v) for v in self.required_labels))


EstimationStrategy = Union[Clustering, PrincipalComponents, GradientDescent]

_KINDS = {"clustering": Clustering, "pca": PrincipalComponents, "sgd": GradientDescent}


def strategy_to_dict(strategy: EstimationStrategy) -> Dict[str, Any]:
    kind = {v: k for k, v in _KINDS.items()}[type(strategy)]
    params = asdict(strategy)
    for key, value in params.items():
        if isinstance(value, tuple):
            params[key] = list(value)
    if "clustering" in params:
        params["clustering"]["required_labels"] = list(params["clustering"]["required_labels"])
    return {"kind": kind, **params}


def strategy_from_dict(config: Optional[Dict[str, Any]]) -> EstimationStrategy:
    """Build a strategy from ``{"kind": "clustering" | "pca" | "sgd", ...params}``."""
    if not config:
        return Clustering()
    config = dict(config)
    kind = config.pop("kind", "clustering")
    if kind not in _KINDS:
        raise ConfigError(f"unknown estimation strategy {kind!r}; available: {sorted(_KINDS)}")
    cls = _KINDS[kind]
    known = {f.name for f in fields(cls)}
    unknown = set(config) - known
    if unknown:
        raise ConfigError(f"unknown {kind} options: {sorted(unknown)}")
    return cls(**config)


def _check_patch_sets(patch_sets: Sequence[PatchSet], required_labels, layer_index) -> None:
    if not patch_sets:
        raise DataError(f"no training images{where(layer_index)}")
    nfeatures = {ps.nfeatures for ps in patch_sets}
    if len(nfeatures) != 1:
        raise DimensionError(f"training images disagree on patch size: {sorted(nfeatures)}{where(layer_index)}")
    if sum(len(ps) for ps in patch_sets) == 0:
        raise DataError(f"no marker patches{where(layer_index)}")
    present = set()
    for ps in patch_sets:
        present.update(int(v) for v in np.unique(ps.labels))
    missing = [lab for lab in required_labels if lab not in present]
    if missing:
        raise DataError(f"no markers for required labels {missing}{where(layer_index)}")


def _cluster(X: np.ndarray, n: int, strategy: Clustering) -> np.ndarray:
    if strategy.method == "affinity":
        return affinity_exemplars(X, n, seed=strategy.seed, max_iter=strategy.max_iter, damping=strategy.damping)
    return kmeans_centroids(X, n, seed=strategy.seed, max_iter=strategy.max_iter,
                            tol=strategy.tol, n_init=strategy.n_init)


def image_kernel_candidates(patches: PatchSet, layer: FlimLayer, strategy: Clustering) -> np.ndarray:
    """
    Unit-norm kernel candidates of one training image.

    At most ``nkernels_per_marker`` per label (or ``nkernels_per_image`` when
    clustering jointly), reduced to ``nkernels_per_image`` when they exceed it.
    """
    if strategy.joint:
        groups = [patches.normalized]
        per_group = layer.nkernels_per_image
    else:
        groups = list(patches.by_label().values())
        per_group = layer.nkernels_per_marker
    candidates = np.vstack([_cluster(X, per_group, strategy) for X in groups])
    if len(candidates) > layer.nkernels_per_image:
        candidates = kmeans_centroids(candidates, layer.nkernels_per_image, seed=strategy.seed,
                                      max_iter=strategy.max_iter, tol=strategy.tol, n_init=strategy.n_init)
    logger.debug("image %r: %d kernel candidates from %d patches", patches.image_id, len(candidates), len(patches))
    return unit_rows(candidates)


def consensus_kernels(candidates: Sequence[np.ndarray], patch_sets: Sequence[PatchSet],
                      nkernels: int, strategy: Clustering, layer_index=None) -> np.ndarray:
    """
    Reduce the candidates of all images to exactly ``nkernels`` unit-norm kernels.

    More candidates than needed are merged by seeded k-means; exactly enough
    are kept in image order. With too few candidates the pooled patches are
    clustered directly.
    """
    pooled = np.vstack(candidates)
    kernels = pooled
    if len(pooled) > nkernels:
        kernels = kmeans_centroids(pooled, nkernels, seed=strategy.seed, max_iter=strategy.max_iter,
                                   tol=strategy.tol, n_init=strategy.n_init)
    if len(kernels) < nkernels:
        patches = np.vstack([ps.normalized for ps in patch_sets])
        if distinct_rows(patches) < nkernels:
            raise DataError(
                f"{distinct_rows(patches)} distinct marker patches cannot yield {nkernels} kernels"
                f"{where(layer_index)}"
            )
        logger.info("only %d candidates for %d kernels%s; clustering pooled patches",
                    len(kernels), nkernels, where(layer_index))
        kernels = kmeans_centroids(patches, nkernels, seed=strategy.seed, max_iter=strategy.max_iter,
                                   tol=strategy.tol, n_init=strategy.n_init)
    return unit_rows(kernels)


def fold_normalization(kernels: np.ndarray, patch_sets: Sequence[PatchSet], stdev_factor: float) -> KernelBank:
    """
    Move kernels learned on normalized patches to the raw input domain.

    Weights are divided by the pooled per-channel standard deviation (plus
    ``stdev_factor``); the bank's mean/stdev are the statistics of the folded
    kernels' responses over all raw marker patches.
    """
    nchannels, adjacency_size = patch_sets[0].nchannels, patch_sets[0].adjacency_size
    raw = np.vstack([ps.raw for ps in patch_sets]).astype(np.float64)
    _, channel_std = channel_statistics(raw, nchannels)
    scale = np.tile(channel_std + stdev_factor, adjacency_size)
    weights = (kernels / scale).astype(np.float32)
    responses = raw @ weights.T.astype(np.float64)
    return KernelBank(weights=weights, mean=responses.mean(axis=0),
                      stdev=responses.std(axis=0) + stdev_factor)


@singledispatch
def estimate_kernel_bank(strategy, patch_sets: Sequence[PatchSet], layer: FlimLayer,
                         stdev_factor: float, layer_index: Optional[int] = None) -> KernelBank:
    """
    Produce the kernel bank of one layer from the marker patches of every
    training image.

    Raises
    ------
    DataError
        No patches, or a required label without markers.
    ResourceError
        A clustering service failed to converge.
    """
    raise ConfigError(f"unknown estimation strategy {strategy!r}")


@estimate_kernel_bank.register
def _estimate_by_clustering(strategy: Clustering, patch_sets, layer, stdev_factor, layer_index=None):
    _check_patch_sets(patch_sets, strategy.required_labels, layer_index)
    if strategy.n_jobs == 1:
        candidates = [image_kernel_candidates(ps, layer, strategy) for ps in patch_sets]
    else:
        candidates = Parallel(n_jobs=strategy.n_jobs)(
            delayed(image_kernel_candidates)(ps, layer, strategy) for ps in patch_sets
        )
    kernels = consensus_kernels(candidates, patch_sets, layer.noutput_channels, strategy, layer_index)
    logger.info("%d consensus kernels from %d candidates over %d images%s", len(kernels),
                sum(len(c) for c in candidates), len(patch_sets), where(layer_index))
    return fold_normalization(kernels, patch_sets, stdev_factor)


@estimate_kernel_bank.register
def _estimate_by_pca(strategy: PrincipalComponents, patch_sets, layer, stdev_factor, layer_index=None):
    _check_patch_sets(patch_sets, strategy.required_labels, layer_index)
    X = np.vstack([ps.normalized for ps in patch_sets]).astype(np.float64)
    n = layer.noutput_channels
    if len(X) < n or X.shape[1] < n:
        raise DataError(
            f"{len(X)} patches of {X.shape[1]} features cannot yield {n} principal components{where(layer_index)}"
        )
    pca = PCA(n_components=n, svd_solver="full", random_state=strategy.seed).fit(X)
    return fold_normalization(unit_rows(pca.components_), patch_sets, stdev_factor)


@estimate_kernel_bank.register
def _estimate_by_gradient_descent(strategy: GradientDescent, patch_sets, layer, stdev_factor, layer_index=None):
    from .sgd import refine_kernels

    _check_patch_sets(patch_sets, strategy.required_labels, layer_index)
    labels = np.concatenate([ps.labels for ps in patch_sets])
    if len(np.unique(labels)) < 2:
        raise DataError(f"gradient descent needs markers of at least two labels{where(layer_index)}")
    if strategy.init == "clustering":
        bank = estimate_kernel_bank(strategy.clustering, patch_sets, layer, stdev_factor, layer_index)
        weights = bank.weights / bank.stdev[:, None]
        bias = -bank.mean / bank.stdev
    else:
        rng = np.random.default_rng(strategy.seed)
        nfeatures = patch_sets[0].nfeatures
        weights = rng.standard_normal((layer.noutput_channels, nfeatures)) / np.sqrt(nfeatures)
        bias = np.zeros(layer.noutput_channels)
    return refine_kernels(weights, bias, patch_sets, layer, strategy, stdev_factor, layer_index)
