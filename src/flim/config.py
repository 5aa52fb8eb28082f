"""
Run configuration for the command-line interface.

A config file (JSON or YAML) has up to three sections::

    strategy:            # kernel estimation, see flim.estimation
      kind: clustering
      method: kmeans
      seed: 0
    training:
      seed: 0
      deterministic: true
      device: -1
      n_jobs: 1
    extraction:
      device: -1
      dense: null                  # null = follow apply_intrinsic_atrous
      memory_budget: null          # bytes; null = fraction of free memory
      max_memory_usage_ratio: 0.8
      n_jobs: 1

Missing sections take their defaults; unknown sections or keys are errors.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError

from .architecture import FlimArch
from .deterministic import get_reproducibility_info
from .estimation import EstimationStrategy, strategy_from_dict, strategy_to_dict
from .exceptions import ConfigError

SECTIONS = ("strategy", "training", "extraction")
SCHEMA_VERSION = 1


class TrainingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    seed: int = 0
    deterministic: bool = True
    device: int = -1
    n_jobs: int = 1


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    device: int = -1
    dense: Optional[bool] = None
    memory_budget: Optional[PositiveInt] = None
    max_memory_usage_ratio: float = Field(0.8, gt=0.0, le=1.0)
    n_jobs: int = 1


def load_config(path: Union[str, Path, None]) -> Dict[str, Any]:
    """
    Read a JSON or YAML config file into a dict of sections.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    ConfigError
        If the file cannot be parsed or has unknown sections.
    """
    if not path:
        return {}
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            if path.suffix.lower() == ".json":
                config = json.load(fh)
            else:
                config = yaml.safe_load(fh)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}") from e
    config = config or {}
    if not isinstance(config, dict):
        raise ConfigError(f"config {path} must be a mapping of sections")
    unknown = set(config) - set(SECTIONS)
    if unknown:
        raise ConfigError(f"unknown config sections {sorted(unknown)}; expected {list(SECTIONS)}")
    return config


def _model(cls, values):
    try:
        return cls(**(values or {}))
    except ValidationError as e:
        raise ConfigError(f"invalid {cls.__name__}: {e}") from e


def training_config(config: Dict[str, Any]) -> TrainingConfig:
    return _model(TrainingConfig, config.get("training"))


def extraction_config(config: Dict[str, Any]) -> ExtractionConfig:
    return _model(ExtractionConfig, config.get("extraction"))


def estimation_strategy(config: Dict[str, Any]) -> EstimationStrategy:
    return strategy_from_dict(config.get("strategy"))


def make_metadata(arch: FlimArch, strategy: EstimationStrategy, image_ids, extra=None) -> Dict[str, Any]:
    meta = {
        "schema_version": SCHEMA_VERSION,
        "arch": arch.to_dict(),
        "strategy": strategy_to_dict(strategy),
        "images": [str(i) for i in image_ids],
        "nlayers": arch.nlayers,
        "reproducibility": get_reproducibility_info(),
    }
    if extra:
        meta.update(extra)
    return meta
