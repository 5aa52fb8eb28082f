"""
Network architecture description
================================

A FLIM network is an ordered sequence of convolutional layers, each one
learned from image markers. The architecture is read once, validated, and
passed explicitly to every component as an immutable value.

File layout (JSON or YAML)::

    {
      "stdev_factor": 0.01,
      "nlayers": 2,
      "apply_intrinsic_atrous": false,
      "layer1": {
        "conv": {"kernel_size": [3, 3, 0], "dilation_rate": [1, 1, 0],
                 "nkernels_per_image": 16, "nkernels_per_marker": 4,
                 "noutput_channels": 16},
        "relu": true,
        "pooling": {"type": "max_pool", "size": [3, 3, 0], "stride": 2}
      },
      "layer2": {..., "skip": [0]}
    }

Triples are ordered (x, y, z). A zero z-extent marks a 2D layer; it is kept
as written so that reading and writing a file reproduces it exactly.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from .exceptions import ConfigError

POOL_TYPES = ("no_pool", "avg_pool", "max_pool")


def _triple(value: Any, name: str, minimum: int) -> Tuple[int, int, int]:
    if isinstance(value, (str, bytes)) or not hasattr(value, "__len__") or len(value) != 3:
        raise ConfigError(f"{name} must be a list of 3 integers, got {value!r}")
    out = []
    for axis, v in zip("xyz", value):
        if isinstance(v, bool) or not isinstance(v, (int, float)) or int(v) != v:
            raise ConfigError(f"{name}[{axis}] must be an integer, got {v!r}")
        out.append(int(v))
    if out[0] < 1 or out[1] < 1 or out[2] < minimum:
        raise ConfigError(f"{name} must be positive along x and y, got {out}")
    return tuple(out)


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if value < 1:
        raise ConfigError(f"{name} must be >= 1, got {value}")
    return int(value)


@dataclass(frozen=True)
class FlimLayer:
    """
    Hyperparameters of one convolutional layer.

    Parameters
    ----------
    kernel_size : (int, int, int)
        Kernel extents along x, y and z. Extents must be odd; z may be 0 for 2D.
    dilation_rate : (int, int, int)
        Base dilation along x, y and z.
    nkernels_per_image : int
        Upper bound of kernel candidates estimated from one training image.
    nkernels_per_marker : int
        Upper bound of kernel candidates estimated from one marker label.
    noutput_channels : int
        Number of consensus kernels, i.e. output channels of the layer.
    relu : bool
        Apply rectified-linear activation.
    pool_type : {"no_pool", "avg_pool", "max_pool"}
    pool_size : (int, int, int)
        Pooling window extents (any positive size; ignored for "no_pool").
    pool_stride : int
        Pooling stride (ignored for "no_pool").
    skip_connection : tuple of int
        0-based indices of earlier layers whose outputs are concatenated to
        this layer's output before pooling.
    """

    kernel_size: Tuple[int, int, int] = (3, 3, 0)
    dilation_rate: Tuple[int, int, int] = (1, 1, 0)
    nkernels_per_image: int = 16
    nkernels_per_marker: int = 4
    noutput_channels: int = 16
    relu: bool = True
    pool_type: str = "no_pool"
    pool_size: Tuple[int, int, int] = (1, 1, 0)
    pool_stride: int = 1
    skip_connection: Tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self):
        ks = _triple(self.kernel_size, "kernel_size", 0)
        for axis, k in zip("xyz", ks):
            if k > 0 and k % 2 == 0:
                raise ConfigError(f"kernel_size[{axis}] must be odd, got {k}")
        object.__setattr__(self, "kernel_size", ks)
        object.__setattr__(self, "dilation_rate", _triple(self.dilation_rate, "dilation_rate", 0))
        object.__setattr__(self, "nkernels_per_image", _positive_int(self.nkernels_per_image, "nkernels_per_image"))
        object.__setattr__(self, "nkernels_per_marker", _positive_int(self.nkernels_per_marker, "nkernels_per_marker"))
        object.__setattr__(self, "noutput_channels", _positive_int(self.noutput_channels, "noutput_channels"))
        if not isinstance(self.relu, bool):
            raise ConfigError(f"relu must be a boolean, got {self.relu!r}")
        if self.pool_type not in POOL_TYPES:
            raise ConfigError(f"pool_type must be one of {POOL_TYPES}, got {self.pool_type!r}")
        object.__setattr__(self, "pool_size", _triple(self.pool_size, "pool_size", 0))
        object.__setattr__(self, "pool_stride", _positive_int(self.pool_stride, "pool_stride"))
        skip = self.skip_connection if self.skip_connection is not None else ()
        if isinstance(skip, (int, str)):
            raise ConfigError(f"skip_connection must be a list of layer indices, got {skip!r}")
        object.__setattr__(self, "skip_connection", tuple(_index(s) for s in skip))

    @property
    def pools(self) -> bool:
        return self.pool_type != "no_pool"

    @property
    def effective_stride(self) -> int:
        """Spatial reduction of the layer (1 when it does not pool)."""
        return self.pool_stride if self.pools else 1

    def to_dict(self) -> Dict[str, Any]:
        layer = {
            "conv": {
                "kernel_size": list(self.kernel_size),
                "nkernels_per_marker": self.nkernels_per_marker,
                "dilation_rate": list(self.dilation_rate),
                "nkernels_per_image": self.nkernels_per_image,
                "noutput_channels": self.noutput_channels,
            },
            "relu": self.relu,
            "pooling": {
                "type": self.pool_type,
                "size": list(self.pool_size),
                "stride": self.pool_stride,
            },
        }
        if self.skip_connection:
            layer["skip"] = list(self.skip_connection)
        return layer

    @classmethod
    def from_dict(cls, layer: Dict[str, Any], name: str = "layer") -> "FlimLayer":
        if not isinstance(layer, dict):
            raise ConfigError(f"{name} must be an object, got {type(layer).__name__}")
        try:
            conv = layer["conv"]
            pooling = layer.get("pooling", {"type": "no_pool", "size": [1, 1, 0], "stride": 1})
            return cls(
                kernel_size=conv["kernel_size"],
                dilation_rate=conv.get("dilation_rate", [1, 1, 0]),
                nkernels_per_image=conv["nkernels_per_image"],
                nkernels_per_marker=conv["nkernels_per_marker"],
                noutput_channels=conv["noutput_channels"],
                relu=layer.get("relu", True),
                pool_type=pooling["type"],
                pool_size=pooling.get("size", [1, 1, 0]),
                pool_stride=pooling.get("stride", 1),
                skip_connection=layer.get("skip") or (),
            )
        except (KeyError, TypeError) as e:
            raise ConfigError(f"{name} is missing field {e}") from e


def _index(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value or value < 0:
        raise ConfigError(f"skip connection must reference a layer index, got {value!r}")
    return int(value)


@dataclass(frozen=True)
class FlimArch:
    """Ordered layers plus the global hyperparameters of a FLIM network."""

    layers: Tuple[FlimLayer, ...]
    stdev_factor: float = 0.001
    apply_intrinsic_atrous: bool = False

    def __post_init__(self):
        layers = tuple(self.layers)
        if not layers:
            raise ConfigError("architecture needs at least one layer")
        for i, layer in enumerate(layers):
            if not isinstance(layer, FlimLayer):
                raise ConfigError(f"layer {i} is not a FlimLayer")
            for s in layer.skip_connection:
                if s >= i:
                    raise ConfigError(
                        f"layer {i} skip connection {s} must reference an earlier layer"
                    )
        object.__setattr__(self, "layers", layers)
        sf = self.stdev_factor
        if isinstance(sf, bool) or not isinstance(sf, (int, float)) or not sf > 0:
            raise ConfigError(f"stdev_factor must be > 0, got {sf!r}")
        object.__setattr__(self, "stdev_factor", float(sf))
        if not isinstance(self.apply_intrinsic_atrous, bool):
            raise ConfigError("apply_intrinsic_atrous must be a boolean")

    @property
    def nlayers(self) -> int:
        return len(self.layers)

    def __getitem__(self, index: int) -> FlimLayer:
        return self.layers[index]

    def __len__(self) -> int:
        return len(self.layers)

    def truncated(self, nlayers: int) -> "FlimArch":
        """Architecture made of the first ``nlayers`` layers."""
        if not 1 <= nlayers <= self.nlayers:
            raise ConfigError(f"cannot keep {nlayers} of {self.nlayers} layers")
        return replace(self, layers=self.layers[:nlayers])

    def to_dict(self) -> Dict[str, Any]:
        config = {
            "stdev_factor": self.stdev_factor,
            "nlayers": self.nlayers,
            "apply_intrinsic_atrous": self.apply_intrinsic_atrous,
        }
        for i, layer in enumerate(self.layers):
            config[f"layer{i + 1}"] = layer.to_dict()
        return config

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "FlimArch":
        if not isinstance(config, dict):
            raise ConfigError("architecture must be a mapping")
        try:
            nlayers = _positive_int(config["nlayers"], "nlayers")
            layers = []
            for i in range(nlayers):
                name = f"layer{i + 1}"
                if name not in config:
                    raise ConfigError(f"architecture declares {nlayers} layers but {name} is missing")
                layers.append(FlimLayer.from_dict(config[name], name))
            return cls(
                layers=tuple(layers),
                stdev_factor=config.get("stdev_factor", 0.001),
                apply_intrinsic_atrous=config.get("apply_intrinsic_atrous", False),
            )
        except KeyError as e:
            raise ConfigError(f"architecture is missing field {e}") from e


def read_arch(path: Union[str, Path]) -> FlimArch:
    """
    Read and validate an architecture file (.json, .yaml or .yml).

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ConfigError
        If the content cannot be parsed or fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Architecture file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            config = yaml.safe_load(text)
        else:
            config = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse architecture {path}: {e}") from e
    return FlimArch.from_dict(config)


def write_arch(arch: FlimArch, path: Union[str, Path], format: Optional[str] = None) -> None:
    """Write an architecture file; the format follows the extension unless given."""
    path = Path(path)
    if format is None:
        format = "yaml" if path.suffix.lower() in (".yaml", ".yml") else "json"
    config = arch.to_dict()
    with open(path, "w", encoding="utf-8") as f:
        if format == "yaml":
            yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)
        elif format == "json":
            json.dump(config, f, indent=2)
        else:
            raise ConfigError(f"Unsupported architecture format: {format}")
