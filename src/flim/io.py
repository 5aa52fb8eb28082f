"""
File adapters: images, marker files, feature maps and directory pipelines.

Directory conventions
---------------------
* Images are ``.npy`` arrays ((H, W[, C]) or (D, H, W, C)) or any 2D image
  Pillow can read.
* The markers of image ``name.ext`` live in ``<markers_dir>/name-seeds.txt``;
  only images with a marker file take part in training.
* Object masks share the image stem in ``<object_dir>`` (any image suffix).
* Feature maps are written as ``<output_dir>/name.npy``.
* An image list is a text/CSV file naming one image per line (first column).

Seeds file format::

    n xsize ysize [zsize]
    x y [z] marker_id label
    ...
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Union

import numpy as np
from PIL import Image

from .architecture import FlimArch
from .config import ExtractionConfig
from .estimation import EstimationStrategy
from .exceptions import DataError
from .kernel_bank import KernelBank, ParameterStore
from .markers import MarkerSet
from .pipeline import FeatureExtractor
from .training import learn_model

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".npy", ".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff", ".pgm", ".ppm")
SEEDS_SUFFIX = "-seeds.txt"

PathLike = Union[str, Path]


def load_image(path: PathLike) -> np.ndarray:
    """Read an image as float32: ``.npy`` as stored, other formats through Pillow."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")
    if path.suffix.lower() == ".npy":
        return np.load(path).astype(np.float32)
    with Image.open(path) as im:
        if im.mode in ("P", "LA", "RGBA", "CMYK", "YCbCr"):
            im = im.convert("RGB")
        return np.asarray(im, dtype=np.float32)


def load_mask(path: PathLike) -> np.ndarray:
    """Object mask as a boolean array (any nonzero value is object)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Object mask not found: {path}")
    if path.suffix.lower() == ".npy":
        return np.load(path) > 0
    with Image.open(path) as im:
        return np.asarray(im.convert("L")) > 0


def load_markers(path: PathLike) -> MarkerSet:
    """
    Read a seeds file into a :class:`MarkerSet`.

    The header gives the number of markers and the image size; a ``zsize``
    marks 3D coordinates. Coordinates are stored x-first in the file and
    returned in (y, x) / (z, y, x) order.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Marker file not found: {path}")
    lines = [ln.split() for ln in path.read_text(encoding="utf-8").splitlines() if ln.strip()]
    if not lines:
        raise DataError(f"marker file {path} is empty")
    header = lines[0]
    if len(header) not in (3, 4):
        raise DataError(f"marker file {path}: header must be 'n xsize ysize [zsize]', got {' '.join(header)!r}")
    try:
        n = int(header[0])
        rows = np.array([[int(v) for v in ln] for ln in lines[1:]], dtype=np.int64).reshape(-1, len(header) + 1)
    except ValueError as e:
        raise DataError(f"marker file {path}: {e}") from e
    if len(rows) != n:
        raise DataError(f"marker file {path} announces {n} markers but holds {len(rows)}")
    ndim = len(header) - 1
    coords = rows[:, :ndim][:, ::-1]
    return MarkerSet(coords, rows[:, -1])


def save_markers(markers: MarkerSet, path: PathLike, spatial_shape: Sequence[int]) -> None:
    """Write ``markers`` in the seeds format; ``spatial_shape`` is (H, W) or (D, H, W)."""
    size = list(spatial_shape)[::-1]
    lines = [" ".join(str(v) for v in [len(markers)] + size)]
    for i, (coord, label) in enumerate(zip(markers.coords, markers.labels)):
        lines.append(" ".join(str(int(v)) for v in list(coord[::-1]) + [i, label]))
    Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")


def save_feature_map(features: np.ndarray, path: PathLike) -> Path:
    """Write ``features`` as ``.npy`` through a temporary file, then rename it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".npy")
    try:
        with os.fdopen(fd, "wb") as fh:
            np.save(fh, np.asarray(features, dtype=np.float32))
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise
    return path


def read_image_list(path: PathLike) -> List[str]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image list not found: {path}")
    names = []
    for line in path.read_text(encoding="utf-8").splitlines():
        name = line.split(",")[0].strip()
        if name:
            names.append(name)
    return names


def list_images(directory: PathLike, image_list: Optional[PathLike] = None) -> List[Path]:
    """Images of ``directory`` in name order, or those named by ``image_list`` in list order."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Image directory not found: {directory}")
    if image_list is not None:
        paths = [directory / name for name in read_image_list(image_list)]
        for p in paths:
            if not p.exists():
                raise FileNotFoundError(f"Listed image not found: {p}")
    else:
        paths = sorted(p for p in directory.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)
    if not paths:
        raise DataError(f"no images in {directory}")
    return paths


def _find_mask(object_dir: Path, stem: str) -> Path:
    for suffix in IMAGE_SUFFIXES:
        candidate = object_dir / f"{stem}{suffix}"
        if candidate.exists():
            return candidate
    raise FileNotFoundError(f"No object mask for {stem!r} in {object_dir}")


def learn_model_from_dirs(orig_dir: PathLike, markers_dir: PathLike, param_dir: PathLike, arch: FlimArch,
                          strategy: Optional[EstimationStrategy] = None, image_list: Optional[PathLike] = None,
                          device: int = -1, n_jobs: int = 1) -> List[KernelBank]:
    """
    Learn a model from the marked images of ``orig_dir`` and store it in ``param_dir``.

    Images without a marker file in ``markers_dir`` are skipped.
    """
    markers_dir = Path(markers_dir)
    images, marker_sets, ids = [], [], []
    for path in list_images(orig_dir, image_list):
        seeds = markers_dir / f"{path.stem}{SEEDS_SUFFIX}"
        if not seeds.exists():
            continue
        images.append(load_image(path))
        marker_sets.append(load_markers(seeds))
        ids.append(path.name)
    if not images:
        raise DataError(f"no image of {orig_dir} has markers in {markers_dir}")
    logger.info("learning from %d marked images", len(images))
    return learn_model(images, marker_sets, arch, ParameterStore(param_dir), strategy, ids,
                       device=device, n_jobs=n_jobs)


def extract_features_to_dir(orig_dir: PathLike, param_dir: PathLike, arch: FlimArch, output_dir: PathLike,
                            image_list: Optional[PathLike] = None, object_dir: Optional[PathLike] = None,
                            nlayers: Optional[int] = None,
                            config: Optional[ExtractionConfig] = None) -> List[Path]:
    """
    Extract the features of every image of ``orig_dir`` into ``output_dir``.

    Images are loaded and processed batch by batch; each feature file is
    written atomically once its batch has finished.
    """
    config = config or ExtractionConfig()
    extractor = FeatureExtractor.from_config(arch, ParameterStore(param_dir), config)
    paths = list_images(orig_dir, image_list)
    object_dir = Path(object_dir) if object_dir is not None else None
    output_dir = Path(output_dir)
    written: List[Path] = []
    size = extractor.batch_size([load_image(paths[0])], nlayers)
    for start in range(0, len(paths), size):
        chunk = paths[start:start + size]
        images = [load_image(p) for p in chunk]
        masks = None
        if object_dir is not None:
            masks = [load_mask(_find_mask(object_dir, p.stem)) for p in chunk]
        features = extractor.extract_batch(images, masks, nlayers, image_ids=[p.name for p in chunk])
        for p, f in zip(chunk, features):
            written.append(save_feature_map(f, output_dir / f"{p.stem}.npy"))
        logger.info("wrote %d/%d feature maps to %s", len(written), len(paths), output_dir)
    return written
