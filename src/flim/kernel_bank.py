"""
Kernel banks, their parameter store, and manual kernel curation.

A kernel bank holds the learned filters of one layer: one row per kernel, the
columns flattened as ``adjacency position * nchannels + channel``. Banks
learned by clustering carry a per-kernel mean and standard deviation used to
normalize responses; banks refined by gradient descent carry a bias instead.

On disk a parameter store is a directory with one set of ``.npy`` files per
layer (numbered from 1)::

    conv1-kernels.npy   conv1-mean.npy   conv1-stdev.npy
    conv2-kernels.npy   conv2-bias.npy
    METADATA.json
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from .__about__ import __version__
from .exceptions import ConfigError, DimensionError

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class KernelBank:
    """
    Learned kernels of one layer.

    Attributes
    ----------
    weights : np.ndarray of shape (nkernels, adjacency_size * nchannels)
    mean, stdev : np.ndarray of shape (nkernels,), optional
        Response normalization statistics (clustering and PCA learners).
    bias : np.ndarray of shape (nkernels,), optional
        Additive bias (gradient-descent learner).
    """

    weights: np.ndarray
    mean: Optional[np.ndarray] = None
    stdev: Optional[np.ndarray] = None
    bias: Optional[np.ndarray] = None

    def __post_init__(self):
        self.weights = np.asarray(self.weights, dtype=np.float32)
        if self.weights.ndim != 2 or self.weights.shape[0] == 0:
            raise DimensionError(f"kernel weights must be a non-empty 2D matrix, got shape {self.weights.shape}")
        has_stats = self.mean is not None or self.stdev is not None
        if has_stats == (self.bias is not None):
            raise ConfigError("a kernel bank carries either mean/stdev or a bias, not both or neither")
        if has_stats and (self.mean is None or self.stdev is None):
            raise ConfigError("mean and stdev must be given together")
        for name in ("mean", "stdev", "bias"):
            value = getattr(self, name)
            if value is None:
                continue
            value = np.asarray(value, dtype=np.float32).reshape(-1)
            if value.shape != (self.nkernels,):
                raise DimensionError(f"{name} has {value.size} entries for {self.nkernels} kernels")
            setattr(self, name, value)

    @property
    def nkernels(self) -> int:
        return self.weights.shape[0]

    @property
    def nfeatures(self) -> int:
        return self.weights.shape[1]

    @property
    def normalized(self) -> bool:
        """True for banks whose responses are normalized by mean/stdev."""
        return self.bias is None

    def as_matrix(self) -> np.ndarray:
        """Weights, with the bias appended as a trailing column when present."""
        if self.bias is None:
            return self.weights.copy()
        return np.column_stack([self.weights, self.bias])

    def select(self, indices: Sequence[int]) -> "KernelBank":
        return select_kernels(self, indices)

    def checksum(self) -> str:
        return hashlib.sha256(self.as_matrix().tobytes()).hexdigest()


def validate_manifest(indices: Any, nkernels: int) -> List[int]:
    """Check a kernel selection: non-empty, integer, unique, in range."""
    if isinstance(indices, dict):
        indices = indices.get("selected_kernels")
    if indices is None or isinstance(indices, (str, bytes)) or not hasattr(indices, "__iter__"):
        raise ConfigError(f"kernel manifest must be a list of indices, got {indices!r}")
    indices = list(indices)
    if not indices:
        raise ConfigError("kernel manifest is empty")
    out = []
    for i in indices:
        if isinstance(i, (bool, np.bool_)) or not isinstance(i, (int, np.integer)):
            raise ConfigError(f"kernel index must be an integer, got {i!r}")
        if not 0 <= i < nkernels:
            raise ConfigError(f"kernel index {i} out of range for a bank of {nkernels} kernels")
        out.append(int(i))
    if len(set(out)) != len(out):
        raise ConfigError(f"kernel manifest has duplicate indices: {out}")
    return out


def select_kernels(bank: KernelBank, indices: Sequence[int]) -> KernelBank:
    """
    New bank holding exactly the kernels listed in ``indices``, in that order.

    Statistics or bias travel with their kernels unchanged.

    Raises
    ------
    ConfigError
        Empty manifest, duplicates, non-integers or indices out of range.
    """
    idx = validate_manifest(indices, bank.nkernels)

    def pick(values):
        return None if values is None else values[idx].copy()

    return KernelBank(weights=bank.weights[idx].copy(), mean=pick(bank.mean),
                      stdev=pick(bank.stdev), bias=pick(bank.bias))


def read_manifest(path: Union[str, Path]) -> List[int]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Kernel manifest not found: {path}")
    try:
        content = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Failed to parse kernel manifest {path}: {e}") from e
    if isinstance(content, dict):
        content = content.get("selected_kernels")
    if not isinstance(content, list):
        raise ConfigError(f"kernel manifest {path} must hold a list of indices")
    return content


def select_kernels_from_file(kernel_bank_path: Union[str, Path], manifest_path: Union[str, Path]) -> np.ndarray:
    """Rows of a stored kernel matrix (.npy) selected by a JSON manifest."""
    kernel_bank_path = Path(kernel_bank_path)
    if not kernel_bank_path.exists():
        raise FileNotFoundError(f"Kernel bank not found: {kernel_bank_path}")
    matrix = np.load(kernel_bank_path)
    if matrix.ndim != 2:
        raise DimensionError(f"kernel bank {kernel_bank_path} must be a 2D matrix, got shape {matrix.shape}")
    idx = validate_manifest(read_manifest(manifest_path), matrix.shape[0])
    return matrix[idx]


class ParameterStore:
    """Directory of per-layer kernel banks (layer ``i`` is stored as ``conv{i+1}``)."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def _path(self, layer_index: int, part: str) -> Path:
        return self.directory / f"conv{layer_index + 1}-{part}.npy"

    def has_layer(self, layer_index: int) -> bool:
        return self._path(layer_index, "kernels").exists()

    def save(self, layer_index: int, bank: KernelBank) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        np.save(self._path(layer_index, "kernels"), bank.weights)
        parts = {"mean": bank.mean, "stdev": bank.stdev, "bias": bank.bias}
        for part, value in parts.items():
            path = self._path(layer_index, part)
            if value is not None:
                np.save(path, value)
            elif path.exists():
                path.unlink()
        logger.info("saved layer %d: %d kernels x %d features to %s",
                    layer_index, bank.nkernels, bank.nfeatures, self.directory)

    def load(self, layer_index: int) -> KernelBank:
        kernels = self._path(layer_index, "kernels")
        if not kernels.exists():
            raise FileNotFoundError(f"No kernels for layer {layer_index} in {self.directory} ({kernels.name})")
        weights = np.load(kernels)
        bias_path = self._path(layer_index, "bias")
        if bias_path.exists():
            return KernelBank(weights=weights, bias=np.load(bias_path))
        mean_path, stdev_path = self._path(layer_index, "mean"), self._path(layer_index, "stdev")
        for path in (mean_path, stdev_path):
            if not path.exists():
                raise FileNotFoundError(f"Missing {path.name} for layer {layer_index} in {self.directory}")
        return KernelBank(weights=weights, mean=np.load(mean_path), stdev=np.load(stdev_path))

    def write_metadata(self, **fields: Any) -> Dict[str, Any]:
        self.directory.mkdir(parents=True, exist_ok=True)
        meta = {"version": __version__, "created": datetime.now().isoformat()}
        meta.update(fields)
        with open(self.directory / "METADATA.json", "w", encoding="utf-8") as fh:
            json.dump(meta, fh, indent=2)
        return meta

    def read_metadata(self) -> Dict[str, Any]:
        path = self.directory / "METADATA.json"
        if not path.exists():
            return {}
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)


def curate_layer(store: ParameterStore, layer_index: int, manifest: Union[Sequence[int], str, Path],
                 output_store: Optional[ParameterStore] = None) -> KernelBank:
    """
    Replace a stored layer by the kernels listed in ``manifest``.

    ``manifest`` is either a sequence of indices or the path of a JSON
    manifest. The result goes to ``output_store`` (default: in place).
    """
    if isinstance(manifest, (str, Path)):
        manifest = read_manifest(manifest)
    bank = select_kernels(store.load(layer_index), manifest)
    (output_store or store).save(layer_index, bank)
    return bank
