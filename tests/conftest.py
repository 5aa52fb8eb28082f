"""
Test configuration and fixtures for FLIM tests.

Provides small synthetic images with two marked regions, architectures of
one and two layers, and assertion helpers shared by the test modules.
"""

import numpy as np
import pytest

from flim import Clustering, FlimArch, FlimLayer, MarkerSet, save_markers


@pytest.fixture
def random_seed():
    """Fixed random seed for reproducible tests."""
    return 42


@pytest.fixture
def two_region_image(random_seed):
    """16x16 single-band image: dark left half, bright right half, mild noise."""
    rng = np.random.default_rng(random_seed)
    image = np.zeros((16, 16, 1), dtype=np.float32)
    image[:, 8:] = 1.0
    image += 0.05 * rng.standard_normal(image.shape).astype(np.float32)
    return image


@pytest.fixture
def rgb_image(random_seed):
    """20x24 three-band image with a bright square."""
    rng = np.random.default_rng(random_seed + 1)
    image = 0.1 * rng.standard_normal((20, 24, 3)).astype(np.float32)
    image[5:15, 6:18] += np.array([1.0, 0.5, 0.2], dtype=np.float32)
    return image


@pytest.fixture
def two_label_markers():
    """Twelve markers per region of :func:`two_region_image` (label 1 dark, label 2 bright)."""
    left = [(y, x) for y in range(2, 14, 3) for x in (2, 4, 5)]
    right = [(y, x) for y in range(2, 14, 3) for x in (10, 11, 13)]
    coords = np.array(left + right)
    labels = np.array([1] * len(left) + [2] * len(right))
    return MarkerSet(coords, labels)


@pytest.fixture
def square_markers():
    """Markers inside and outside the square of :func:`rgb_image`."""
    inside = [(y, x) for y in (7, 10, 13) for x in (8, 12, 16)]
    outside = [(y, x) for y in (1, 18) for x in (1, 10, 22)]
    coords = np.array(inside + outside)
    labels = np.array([1] * len(inside) + [0] * len(outside))
    return MarkerSet(coords, labels)


@pytest.fixture
def one_layer_arch():
    """3x3 kernels, two candidates per label, four output channels."""
    layer = FlimLayer(kernel_size=(3, 3, 0), nkernels_per_image=4, nkernels_per_marker=2,
                      noutput_channels=4, relu=True)
    return FlimArch(layers=(layer,), stdev_factor=0.01)


@pytest.fixture
def two_layer_arch():
    """Second layer pools with stride 2 and skips back to the first."""
    first = FlimLayer(kernel_size=(3, 3, 0), nkernels_per_image=4, nkernels_per_marker=2,
                      noutput_channels=4, pool_type="max_pool", pool_size=(2, 2, 0), pool_stride=2)
    second = FlimLayer(kernel_size=(3, 3, 0), dilation_rate=(1, 1, 0), nkernels_per_image=4,
                       nkernels_per_marker=2, noutput_channels=3, skip_connection=(0,))
    return FlimArch(layers=(first, second), stdev_factor=0.01)


@pytest.fixture
def fast_clustering(random_seed):
    """k-means with few restarts for quick tests."""
    return Clustering(seed=random_seed, n_init=3)


def assert_unit_rows(K, tolerance=1e-6):
    """Assert that every kernel has unit Euclidean norm."""
    np.testing.assert_allclose(np.linalg.norm(K, axis=1), 1.0, atol=tolerance,
                               err_msg="kernels must be unit normalized")


def assert_symmetric_offsets(offsets):
    """Assert that the offset set is closed under negation."""
    as_set = {tuple(o) for o in np.asarray(offsets)}
    assert as_set == {tuple(-v for v in o) for o in as_set}, "adjacency must be symmetric around 0"


@pytest.fixture
def marked_dataset(tmp_path, two_region_image, two_label_markers):
    """
    Image and marker folders on disk.

    ``a.npy`` and ``b.npy`` (mirrored) carry markers; ``c.npy`` has none and
    is only used at extraction time.
    """
    images, seeds = tmp_path / "images", tmp_path / "markers"
    images.mkdir()
    seeds.mkdir()
    mirrored = two_region_image[:, ::-1].copy()
    flipped = MarkerSet(np.column_stack([two_label_markers.coords[:, 0], 15 - two_label_markers.coords[:, 1]]),
                        two_label_markers.labels)
    np.save(images / "a.npy", two_region_image)
    np.save(images / "b.npy", mirrored)
    np.save(images / "c.npy", two_region_image[::-1].copy())
    save_markers(two_label_markers, seeds / "a-seeds.txt", (16, 16))
    save_markers(flipped, seeds / "b-seeds.txt", (16, 16))
    return {"root": tmp_path, "images": images, "markers": seeds}
