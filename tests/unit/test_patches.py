"""Unit tests for marker sets and marker patch sampling."""

import numpy as np
import pytest

from flim import ConfigError, DataError, DimensionError, FlimLayer, MarkerSet, sample_marker_patches
from flim.adjacency import adjacency_from_layer


@pytest.fixture
def adjacency():
    return adjacency_from_layer(FlimLayer(kernel_size=(3, 3, 0)))


class TestMarkerSet:
    """Validation and grid mapping of markers."""

    def test_counts_and_labels(self, two_label_markers):
        assert two_label_markers.label_set == (1, 2)
        assert two_label_markers.counts() == {1: 12, 2: 12}
        assert two_label_markers.as_3d().shape == (24, 3)

    def test_shape_mismatch(self):
        with pytest.raises(DimensionError):
            MarkerSet(np.zeros((3, 2)), np.zeros(2))
        with pytest.raises(DimensionError):
            MarkerSet(np.zeros((3, 4)), np.zeros(3))

    def test_fractional_coordinates(self):
        with pytest.raises(DataError):
            MarkerSet(np.array([[0.5, 1.0]]), np.array([1]))

    def test_downsample_keeps_first_duplicate(self):
        markers = MarkerSet(np.array([[0, 0], [1, 1], [4, 4], [2, 3]]), np.array([1, 2, 1, 2]))
        down = markers.downsample(2)
        assert down.coords.tolist() == [[0, 0], [2, 2], [1, 1]]
        assert down.labels.tolist() == [1, 1, 2]

    def test_from_label_image(self):
        label_image = np.zeros((5, 5), dtype=int)
        label_image[1, 2] = 3
        label_image[4, 0] = 1
        markers = MarkerSet.from_label_image(label_image)
        assert markers.coords.tolist() == [[1, 2], [4, 0]]
        assert markers.labels.tolist() == [3, 1]


class TestPatchSampling:
    """Patch layout, zero padding and marker-based normalization."""

    def test_patch_layout(self, adjacency):
        image = np.arange(5 * 5 * 2, dtype=np.float32).reshape(5, 5, 2)
        markers = MarkerSet(np.array([[2, 2]]), np.array([1]))
        patches = sample_marker_patches(image, markers, adjacency, stdev_factor=0.01)
        assert patches.raw.shape == (1, 9 * 2)
        # element a * nchannels + c
        expected = np.stack([image[2 + dy, 2 + dx] for _, dy, dx in adjacency.offsets]).reshape(-1)
        np.testing.assert_array_equal(patches.raw[0], expected)

    def test_zero_padding_at_border(self, adjacency):
        image = np.ones((4, 4, 1), dtype=np.float32)
        markers = MarkerSet(np.array([[0, 0]]), np.array([1]))
        patches = sample_marker_patches(image, markers, adjacency, stdev_factor=0.01)
        assert patches.raw[0].sum() == 4  # only the 2x2 corner lies inside

    def test_normalization(self, two_region_image, two_label_markers, adjacency):
        patches = sample_marker_patches(two_region_image, two_label_markers, adjacency, stdev_factor=0.01)
        values = patches.raw.reshape(-1, 1).astype(np.float64)
        expected = (values - values.mean()) / (values.std() + 0.01)
        np.testing.assert_allclose(patches.normalized.reshape(-1, 1), expected, rtol=1e-5, atol=1e-5)
        assert set(patches.by_label()) == {1, 2}

    def test_constant_image_stays_finite(self, adjacency):
        image = np.full((6, 6, 1), 3.0, dtype=np.float32)
        markers = MarkerSet(np.array([[2, 2], [3, 3]]), np.array([1, 2]))
        patches = sample_marker_patches(image, markers, adjacency, stdev_factor=0.01)
        assert np.all(np.isfinite(patches.normalized))

    def test_stdev_factor_must_be_positive(self, two_region_image, two_label_markers, adjacency):
        with pytest.raises(ConfigError):
            sample_marker_patches(two_region_image, two_label_markers, adjacency, stdev_factor=0)

    def test_empty_markers(self, two_region_image, adjacency):
        empty = MarkerSet(np.empty((0, 2), dtype=int), np.empty(0, dtype=int))
        with pytest.raises(DataError):
            sample_marker_patches(two_region_image, empty, adjacency, stdev_factor=0.01)

    def test_marker_outside_image(self, two_region_image, adjacency):
        markers = MarkerSet(np.array([[16, 3]]), np.array([1]))
        with pytest.raises(DataError):
            sample_marker_patches(two_region_image, markers, adjacency, stdev_factor=0.01, image_id="a")

    def test_marker_dimension_mismatch(self, two_region_image, adjacency):
        markers = MarkerSet(np.array([[0, 1, 1]]), np.array([1]))
        with pytest.raises(DimensionError):
            sample_marker_patches(two_region_image, markers, adjacency, stdev_factor=0.01)
