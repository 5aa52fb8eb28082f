"""Unit tests for clustering services and kernel estimation strategies."""

import numpy as np
import pytest

from flim import (
    Clustering, ConfigError, DataError, DimensionError, FlimLayer, GradientDescent, MarkerSet, PrincipalComponents,
    ResourceError,
    estimate_kernel_bank, sample_marker_patches, strategy_from_dict, strategy_to_dict,
)
from flim.adjacency import adjacency_from_layer
from flim.clustering import affinity_exemplars, kmeans_centroids, unit_rows
from flim.estimation import consensus_kernels, image_kernel_candidates
from tests.conftest import assert_unit_rows


def patch_sets_for(image, markers, layer, stdev_factor=0.01, image_id=0):
    adjacency = adjacency_from_layer(layer)
    return [sample_marker_patches(image, markers, adjacency, stdev_factor, image_id)]


class TestClusteringServices:
    """Wrappers around scikit-learn clustering."""

    def test_kmeans_caps_clusters_at_distinct_rows(self):
        X = np.array([[0.0, 1.0], [0.0, 1.0], [1.0, 0.0]])
        centers = kmeans_centroids(X, 5)
        assert len(centers) == 2

    def test_kmeans_is_seeded(self, random_seed):
        X = np.random.default_rng(0).standard_normal((60, 4))
        a = kmeans_centroids(X, 3, seed=random_seed)
        b = kmeans_centroids(X, 3, seed=random_seed)
        np.testing.assert_array_equal(a, b)

    def test_affinity_returns_input_rows(self):
        rng = np.random.default_rng(1)
        X = np.vstack([rng.normal(c, 0.05, (5, 2)) for c in (0.0, 5.0, 10.0)])
        exemplars = affinity_exemplars(X, 2, seed=0, damping=0.7)
        assert 1 <= len(exemplars) <= 2
        for row in exemplars:
            assert np.any(np.all(X == row, axis=1))

    def test_kmeans_iteration_cap(self):
        X = np.random.default_rng(2).standard_normal((86, 9))
        with pytest.raises(ResourceError, match="k-means"):
            kmeans_centroids(X, 4, max_iter=1, n_init=1)

    def test_kmeans_settled_on_last_iteration(self):
        """Tight groups are final after one step even though the cap was reached."""
        rng = np.random.default_rng(3)
        X = np.vstack([rng.normal(c, 0.05, (6, 2)) for c in (0.0, 10.0)])
        centers = kmeans_centroids(X, 2, max_iter=1, n_init=1)
        assert sorted(np.round(centers[:, 0]).tolist()) == [0.0, 10.0]

    def test_affinity_iteration_cap(self):
        X = np.random.default_rng(4).standard_normal((30, 2))
        with pytest.raises(ResourceError, match="affinity"):
            affinity_exemplars(X, 3, max_iter=2)

    def test_affinity_single_point(self):
        assert affinity_exemplars(np.ones((3, 2)), 4).shape == (1, 2)

    def test_unit_rows_keeps_zero_rows(self):
        K = unit_rows(np.array([[3.0, 4.0], [0.0, 0.0]]))
        np.testing.assert_allclose(K, [[0.6, 0.8], [0.0, 0.0]])


class TestClusteringStrategy:
    """Per-image candidates, consensus and folded statistics."""

    def test_candidates_bounded(self, two_region_image, two_label_markers, one_layer_arch, fast_clustering):
        layer = one_layer_arch[0]
        patch_sets = patch_sets_for(two_region_image, two_label_markers, layer)
        candidates = image_kernel_candidates(patch_sets[0], layer, fast_clustering)
        assert len(candidates) <= layer.nkernels_per_image
        assert_unit_rows(candidates)

    def test_candidates_reduced_to_per_image_limit(self, two_region_image, two_label_markers, fast_clustering):
        layer = FlimLayer(nkernels_per_image=3, nkernels_per_marker=4, noutput_channels=2)
        patch_sets = patch_sets_for(two_region_image, two_label_markers, layer)
        assert len(image_kernel_candidates(patch_sets[0], layer, fast_clustering)) == 3

    def test_joint_clustering(self, two_region_image, two_label_markers, fast_clustering):
        layer = FlimLayer(nkernels_per_image=3, nkernels_per_marker=1, noutput_channels=3)
        joint = Clustering(joint=True, seed=fast_clustering.seed, n_init=3)
        patch_sets = patch_sets_for(two_region_image, two_label_markers, layer)
        assert len(image_kernel_candidates(patch_sets[0], layer, joint)) == 3

    def test_bank_shape_and_statistics(self, two_region_image, two_label_markers, one_layer_arch,
                                       fast_clustering):
        layer = one_layer_arch[0]
        patch_sets = patch_sets_for(two_region_image, two_label_markers, layer)
        bank = estimate_kernel_bank(fast_clustering, patch_sets, layer, one_layer_arch.stdev_factor)
        assert bank.weights.shape == (4, 9)
        assert bank.normalized
        responses = patch_sets[0].raw.astype(np.float64) @ bank.weights.T.astype(np.float64)
        np.testing.assert_allclose(bank.mean, responses.mean(axis=0), rtol=1e-4, atol=1e-4)
        np.testing.assert_allclose(bank.stdev, responses.std(axis=0) + 0.01, rtol=1e-4, atol=1e-4)

    def test_deterministic(self, two_region_image, two_label_markers, one_layer_arch, fast_clustering):
        layer = one_layer_arch[0]
        banks = [
            estimate_kernel_bank(fast_clustering, patch_sets_for(two_region_image, two_label_markers, layer),
                                 layer, 0.01)
            for _ in range(2)
        ]
        assert banks[0].checksum() == banks[1].checksum()

    def test_parallel_matches_sequential(self, two_region_image, rgb_image, two_label_markers, square_markers):
        layer = FlimLayer(nkernels_per_image=4, nkernels_per_marker=2, noutput_channels=3)
        adjacency = adjacency_from_layer(layer)
        grey = np.repeat(two_region_image, 3, axis=-1)
        patch_sets = [
            sample_marker_patches(grey, two_label_markers, adjacency, 0.01, "a"),
            sample_marker_patches(rgb_image, square_markers, adjacency, 0.01, "b"),
        ]
        sequential = estimate_kernel_bank(Clustering(n_init=2), patch_sets, layer, 0.01)
        parallel = estimate_kernel_bank(Clustering(n_init=2, n_jobs=2), patch_sets, layer, 0.01)
        assert sequential.checksum() == parallel.checksum()

    def test_affinity_strategy(self, two_region_image, two_label_markers, one_layer_arch):
        layer = one_layer_arch[0]
        patch_sets = patch_sets_for(two_region_image, two_label_markers, layer)
        bank = estimate_kernel_bank(Clustering(method="affinity", damping=0.9), patch_sets, layer, 0.01)
        assert bank.nkernels == layer.noutput_channels

    def test_iteration_cap_of_either_method(self):
        rng = np.random.default_rng(7)
        image = rng.random((16, 16, 3)).astype(np.float32)
        coords = np.array([(r, c) for r in range(1, 15, 2) for c in range(1, 15)])[:86]
        markers = MarkerSet(coords, np.arange(86) % 2 + 1)
        layer = FlimLayer(nkernels_per_image=8, nkernels_per_marker=4, noutput_channels=4)
        patch_sets = patch_sets_for(image, markers, layer)
        with pytest.raises(ResourceError):
            estimate_kernel_bank(Clustering(max_iter=1, n_init=1), patch_sets, layer, 0.01)
        with pytest.raises(ResourceError):
            estimate_kernel_bank(Clustering(method="affinity", max_iter=2), patch_sets, layer, 0.01)

    def test_consensus_falls_back_to_patches(self, two_region_image, two_label_markers, fast_clustering):
        layer = FlimLayer(nkernels_per_image=2, nkernels_per_marker=1, noutput_channels=6)
        patch_sets = patch_sets_for(two_region_image, two_label_markers, layer)
        candidates = [image_kernel_candidates(patch_sets[0], layer, fast_clustering)]
        kernels = consensus_kernels(candidates, patch_sets, 6, fast_clustering)
        assert kernels.shape == (6, 9)
        assert_unit_rows(kernels)

    def test_too_few_distinct_patches(self, fast_clustering):
        image = np.zeros((8, 8, 1), dtype=np.float32)
        markers = MarkerSet(np.array([[2, 2], [5, 5]]), np.array([1, 2]))
        layer = FlimLayer(nkernels_per_image=2, nkernels_per_marker=1, noutput_channels=5)
        patch_sets = patch_sets_for(image, markers, layer)
        with pytest.raises(DataError):
            estimate_kernel_bank(fast_clustering, patch_sets, layer, 0.01, layer_index=0)

    def test_required_label_missing(self, two_region_image, two_label_markers, one_layer_arch):
        layer = one_layer_arch[0]
        patch_sets = patch_sets_for(two_region_image, two_label_markers, layer)
        with pytest.raises(DataError, match="required labels"):
            estimate_kernel_bank(Clustering(required_labels=(3,)), patch_sets, layer, 0.01)

    def test_no_images(self, one_layer_arch):
        with pytest.raises(DataError):
            estimate_kernel_bank(Clustering(), [], one_layer_arch[0], 0.01)

    def test_mixed_patch_sizes(self, two_region_image, rgb_image, two_label_markers, square_markers):
        layer = FlimLayer(noutput_channels=2)
        adjacency = adjacency_from_layer(layer)
        patch_sets = [
            sample_marker_patches(two_region_image, two_label_markers, adjacency, 0.01),
            sample_marker_patches(rgb_image, square_markers, adjacency, 0.01),
        ]
        with pytest.raises(DimensionError):
            estimate_kernel_bank(Clustering(), patch_sets, layer, 0.01)


class TestPrincipalComponents:
    """PCA-based kernels."""

    def test_pca_bank(self, rgb_image, square_markers):
        layer = FlimLayer(noutput_channels=5)
        patch_sets = patch_sets_for(rgb_image, square_markers, layer)
        bank = estimate_kernel_bank(PrincipalComponents(), patch_sets, layer, 0.01)
        assert bank.weights.shape == (5, 27)
        assert np.all(bank.stdev > 0)

    def test_pca_needs_enough_patches(self, two_region_image, two_label_markers):
        layer = FlimLayer(noutput_channels=12, nkernels_per_image=12)
        patch_sets = patch_sets_for(two_region_image, two_label_markers, layer)
        with pytest.raises(DataError):
            estimate_kernel_bank(PrincipalComponents(), patch_sets, layer, 0.01)


class TestStrategyConfig:
    """Strategy (de)serialization and validation."""

    @pytest.mark.parametrize("strategy", [
        Clustering(method="affinity", required_labels=(1, 2)),
        PrincipalComponents(seed=3),
        GradientDescent(loss="margin", clustering=Clustering(n_init=2)),
    ])
    def test_round_trip(self, strategy):
        assert strategy_from_dict(strategy_to_dict(strategy)) == strategy

    def test_default_is_clustering(self):
        assert strategy_from_dict(None) == Clustering()

    @pytest.mark.parametrize("config", [
        {"kind": "annealing"},
        {"kind": "clustering", "method": "dbscan"},
        {"kind": "clustering", "bogus": 1},
        {"kind": "sgd", "loss": "hinge"},
        {"kind": "sgd", "learning_rate": 0},
    ])
    def test_invalid(self, config):
        with pytest.raises(ConfigError):
            strategy_from_dict(config)

    def test_unknown_strategy_type(self, one_layer_arch):
        with pytest.raises(ConfigError):
            estimate_kernel_bank("kmeans", [], one_layer_arch[0], 0.01)

