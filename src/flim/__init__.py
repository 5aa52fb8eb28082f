from .__about__ import __version__

from .exceptions import ConfigError, DataError, DimensionError, FlimError, ResourceError

from .architecture import FlimArch, FlimLayer, read_arch, write_arch
from .adjacency import AdjacencyRelation, adjacency_from_layer, atrous_factor, pooling_offsets
from .markers import MarkerSet
from .patches import PatchSet, sample_marker_patches

from .kernel_bank import (
    KernelBank, ParameterStore, curate_layer, select_kernels, select_kernels_from_file
)
from .estimation import (
    Clustering, GradientDescent, PrincipalComponents, EstimationStrategy,
    estimate_kernel_bank, strategy_from_dict, strategy_to_dict
)

from .backends import NumpyBackend, TorchBackend, resolve_backend
from .batch_sizing import batch_size_cpu, batch_size_for_device, batch_size_gpu, estimate_image_bytes
from .pipeline import FeatureExtractor, atrous_avg_pool, atrous_max_pool, extract_features_from_layer
from .training import learn_layer, learn_model

from .config import ExtractionConfig, TrainingConfig, load_config
from .deterministic import set_deterministic
from .io import (
    extract_features_to_dir, learn_model_from_dirs, load_image, load_markers, save_feature_map, save_markers
)

__all__ = [
    "__version__",
    "FlimError", "ConfigError", "DataError", "DimensionError", "ResourceError",
    "FlimArch", "FlimLayer", "read_arch", "write_arch",
    "AdjacencyRelation", "adjacency_from_layer", "atrous_factor", "pooling_offsets",
    "MarkerSet", "PatchSet", "sample_marker_patches",
    "KernelBank", "ParameterStore", "curate_layer", "select_kernels", "select_kernels_from_file",
    "Clustering", "GradientDescent", "PrincipalComponents", "EstimationStrategy",
    "estimate_kernel_bank", "strategy_from_dict", "strategy_to_dict",
    "NumpyBackend", "TorchBackend", "resolve_backend",
    "batch_size_cpu", "batch_size_gpu", "batch_size_for_device", "estimate_image_bytes",
    "FeatureExtractor", "atrous_avg_pool", "atrous_max_pool", "extract_features_from_layer",
    "learn_layer", "learn_model",
    "ExtractionConfig", "TrainingConfig", "load_config", "set_deterministic",
    "extract_features_to_dir", "learn_model_from_dirs", "load_image", "load_markers",
    "save_feature_map", "save_markers",
]
