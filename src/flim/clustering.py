"""
Clustering services used to turn marker patches into kernels.

Thin wrappers over scikit-learn: k-means for centroid kernels and affinity
propagation for graph-based exemplar kernels. Both return representatives in
a deterministic order and translate non-convergence into ``ResourceError``.
"""

from __future__ import annotations

import logging
import warnings

import numpy as np
from sklearn.cluster import AffinityPropagation, KMeans
from sklearn.exceptions import ConvergenceWarning

from .exceptions import ResourceError

logger = logging.getLogger(__name__)


def distinct_rows(X: np.ndarray) -> int:
    return len(np.unique(X, axis=0))


def _settled(model: KMeans, X: np.ndarray, tol: float) -> bool:
    """
    Whether one more Lloyd step would leave the centers in place.

    A run that converged on its last allowed iteration reports
    ``n_iter_ == max_iter`` just like one that was cut short.
    """
    labels = model.labels_
    centers = model.cluster_centers_
    means = np.array([X[labels == c].mean(axis=0) if np.any(labels == c) else centers[c]
                      for c in range(len(centers))])
    return ((means - centers) ** 2).sum() <= tol * np.mean(np.var(X, axis=0))


def kmeans_centroids(X: np.ndarray, n_clusters: int, seed: int = 0, max_iter: int = 300,
                     tol: float = 1e-4, n_init: int = 10) -> np.ndarray:
    """
    Centroids of ``X`` (n, d) with at most ``n_clusters`` clusters.

    The number of clusters is capped by the number of distinct rows. When
    ``X`` has exactly that many distinct rows they are returned directly.
    """
    X = np.asarray(X, dtype=np.float64)
    k = min(n_clusters, distinct_rows(X))
    if k == 0:
        return np.empty((0, X.shape[1]))
    if k == len(X):
        return X.copy()
    model = KMeans(n_clusters=k, random_state=seed, n_init=n_init, max_iter=max_iter, tol=tol)
    model.fit(X)
    if model.n_iter_ >= max_iter and not _settled(model, X, tol):
        raise ResourceError(f"k-means did not converge within {max_iter} iterations (k={k}, n={len(X)})")
    return model.cluster_centers_


def affinity_exemplars(X: np.ndarray, max_exemplars: int, seed: int = 0, max_iter: int = 200,
                       damping: float = 0.5, convergence_iter: int = 15) -> np.ndarray:
    """
    Exemplars of ``X`` found by affinity propagation on the similarity graph.

    Exemplars are ordered by decreasing cluster size (ties by exemplar index)
    and truncated to ``max_exemplars``, so the densest groups come first.
    """
    X = np.asarray(X, dtype=np.float64)
    if len(X) == 1 or distinct_rows(X) == 1:
        return X[:1].copy()
    model = AffinityPropagation(damping=damping, max_iter=max_iter,
                                convergence_iter=convergence_iter, random_state=seed)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        model.fit(X)
    failed = any(issubclass(w.category, ConvergenceWarning) for w in caught)
    centers = model.cluster_centers_indices_
    if failed or centers is None or len(centers) == 0:
        raise ResourceError(f"affinity propagation did not converge within {max_iter} iterations (n={len(X)})")
    sizes = np.bincount(model.labels_, minlength=len(centers))
    order = sorted(range(len(centers)), key=lambda c: (-sizes[c], centers[c]))
    return X[[centers[c] for c in order[:max_exemplars]]]


def unit_rows(K: np.ndarray) -> np.ndarray:
    """Scale every row to unit Euclidean norm (zero rows stay zero)."""
    K = np.asarray(K, dtype=np.float64)
    norms = np.linalg.norm(K, axis=1, keepdims=True)
    return np.divide(K, norms, out=np.zeros_like(K), where=norms > 0)
