"""
Reproducible runs.

Kernel estimation is deterministic for a fixed seed on the CPU, but BLAS
threading can still reorder floating-point sums between runs. Pinning every
BLAS pool to one thread and seeding the Python, NumPy and PyTorch generators
makes learned banks bit-identical across runs on the same machine.
"""

import os
import random

import numpy as np
import torch

BLAS_THREAD_VARS = ("OPENBLAS_NUM_THREADS", "OMP_NUM_THREADS", "MKL_NUM_THREADS", "NUMEXPR_NUM_THREADS")


def set_deterministic(seed: int = 0) -> None:
    """
    Pin BLAS threads and seed every random generator.

    Environment variables only take effect for libraries loaded afterwards,
    so call this before heavy imports when possible.
    """
    for var in BLAS_THREAD_VARS:
        os.environ.setdefault(var, "1")
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    torch.use_deterministic_algorithms(True, warn_only=True)


def is_deterministic() -> bool:
    return all(os.environ.get(var) == "1" for var in BLAS_THREAD_VARS[:3])


def get_reproducibility_info() -> dict:
    """Threading settings and library versions, recorded in model metadata."""
    return {
        "threading": {var: os.environ.get(var, "unset") for var in BLAS_THREAD_VARS},
        "numpy_version": np.__version__,
        "torch_version": torch.__version__,
        "deterministic": is_deterministic(),
    }
