"""One JSON object per line on stdout, used by the command-line interface."""

import json
import sys
import time
from pathlib import Path

import numpy as np


def _plain(value):
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"cannot log a {type(value).__name__}")


def log(event: str, **fields):
    rec = {"ts": time.time(), "event": event}
    rec.update(fields)
    sys.stdout.write(json.dumps(rec, default=_plain) + "\n")
    sys.stdout.flush()
