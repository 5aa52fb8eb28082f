"""
Error taxonomy for marker-based feature learning.

Every error raised by the core derives from :class:`FlimError`, so callers can
catch the whole family at once. Geometry, data and shape errors are also
``ValueError`` (bad inputs), resource errors are also ``RuntimeError``
(the inputs were fine, the machine or the clustering service was not).
Missing files surface as the built-in ``FileNotFoundError``.
"""


class FlimError(Exception):
    """Base class for all feature-learning errors."""


class ConfigError(FlimError, ValueError):
    """Malformed architecture, invalid geometry or bad kernel manifest."""


class DataError(FlimError, ValueError):
    """Missing markers or images, empty label sets."""


class DimensionError(FlimError, ValueError):
    """Channel or spatial shape mismatch across layers or skip connections."""


class ResourceError(FlimError, RuntimeError):
    """Memory or device exhaustion, clustering non-convergence."""


def where(layer_index=None, image_id=None) -> str:
    parts = []
    if layer_index is not None:
        parts.append(f"layer {layer_index}")
    if image_id is not None:
        parts.append(f"image {image_id!r}")
    return f" ({', '.join(parts)})" if parts else ""
