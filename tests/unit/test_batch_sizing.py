"""Unit tests for memory-aware batch sizing."""

import pytest

from flim import FlimArch, FlimLayer, ResourceError
from flim.batch_sizing import (
    batch_size_cpu, batch_size_for_device, estimate_image_bytes, layer_output_channels,
)


@pytest.fixture
def arch():
    first = FlimLayer(noutput_channels=8, pool_type="max_pool", pool_size=(3, 3, 0), pool_stride=2)
    second = FlimLayer(noutput_channels=16, skip_connection=(0,))
    return FlimArch(layers=(first, second))


class TestFootprint:
    """Per-image memory estimate."""

    def test_channels(self, arch):
        assert layer_output_channels(arch, 3) == ([3, 8], [8, 24])

    def test_channels_of_curated_banks(self, arch):
        assert layer_output_channels(arch, 3, nkernels=[5, 16]) == ([3, 5], [5, 21])

    def test_known_footprint(self, arch):
        # layer 0: 100 voxels * (2*3 + 2*8) channels; layer 1: 25 * (2*8 + 2*24) + retained 25*8
        assert estimate_image_bytes(arch, 100, 3) == 4 * max(100 * 22, 25 * 64 + 200)

    def test_dense_is_larger(self, arch):
        assert estimate_image_bytes(arch, 4096, 3, dense=True) > estimate_image_bytes(arch, 4096, 3)

    def test_grows_with_image(self, arch):
        assert estimate_image_bytes(arch, 2000, 3) > estimate_image_bytes(arch, 1000, 3)

    def test_empty_image(self, arch):
        with pytest.raises(ResourceError):
            estimate_image_bytes(arch, 0, 3)


class TestBatchSize:
    """Images per batch."""

    def test_fixed_budget(self, arch):
        per_image = estimate_image_bytes(arch, 1024, 3)
        assert batch_size_cpu(arch, 1024, 3, memory_budget=per_image * 5 + 1) == 5

    def test_deterministic(self, arch):
        sizes = {batch_size_for_device(arch, 1024, 3, memory_budget=10 ** 7) for _ in range(3)}
        assert len(sizes) == 1

    def test_never_zero(self, arch):
        per_image = estimate_image_bytes(arch, 1024, 3)
        assert batch_size_cpu(arch, 1024, 3, memory_budget=per_image) == 1

    def test_image_exceeds_budget(self, arch):
        with pytest.raises(ResourceError):
            batch_size_cpu(arch, 10 ** 6, 3, memory_budget=1000)

    def test_available_memory(self, arch):
        assert batch_size_cpu(arch, 256, 3, max_memory_usage_ratio=0.5) >= 1

    def test_invalid_device(self, arch):
        with pytest.raises(ResourceError):
            batch_size_for_device(arch, 256, 3, device=-3)
