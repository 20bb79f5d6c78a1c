from typing import Any, Type

import numpy as np

from corrpy.domain.errors import ConfigurationError, InvalidImageData, InvalidTextureData
from corrpy.domain.models import ImageDescriptor
from corrpy.domain.types import PIXEL_DTYPE


def _coerce(arr: np.ndarray, dtype: Any, error_cls: Type[ConfigurationError], name: str) -> np.ndarray:
    target = np.dtype(dtype)
    if arr.dtype == target:
        return arr

    if target.kind == "u":
        if arr.dtype.kind not in "uib":
            raise error_cls(f"{name}: expected integer pixels, got {arr.dtype}")
        limit = np.iinfo(target).max
        if arr.size and (arr.min() < 0 or arr.max() > limit):
            raise error_cls(f"{name}: values outside [0, {limit}]")
        return arr.astype(target)

    if target.kind == "f":
        if arr.dtype.kind not in "uif":
            raise error_cls(f"{name}: expected numeric values, got {arr.dtype}")
        return arr.astype(target)

    raise error_cls(f"{name}: unsupported target dtype {target}")


def _ensure_plane(data: Any, descriptor: ImageDescriptor, dtype: Any, error_cls: Type[ConfigurationError], name: str) -> np.ndarray:
    if data is None:
        raise error_cls(f"{name}: no data")
    arr = np.asarray(data)
    if arr.size != descriptor.pixel_count:
        raise error_cls(f"{name}: expected {descriptor.pixel_count} elements ({descriptor.width}x{descriptor.height}), got {arr.size}")
    if arr.ndim == 2 and arr.shape != descriptor.shape:
        raise error_cls(f"{name}: expected shape {descriptor.shape}, got {arr.shape}")
    if arr.ndim not in (1, 2):
        raise error_cls(f"{name}: expected a flat or 2-D array, got {arr.ndim} dimensions")
    arr = _coerce(arr, dtype, error_cls, name)
    return np.ascontiguousarray(arr.reshape(descriptor.shape))


def ensure_image(data: Any, descriptor: ImageDescriptor) -> np.ndarray:
    """
    Host-side check of an input frame. Returns a contiguous (height, width) uint16 array.
    """
    return _ensure_plane(data, descriptor, PIXEL_DTYPE, InvalidImageData, "image")


def ensure_reference_map(data: Any, descriptor: ImageDescriptor, dtype: Any, name: str = "reference map") -> np.ndarray:
    """
    Host-side check of a stage reference map (dark map, gain map, defect mask).
    """
    arr = _ensure_plane(data, descriptor, dtype, InvalidTextureData, name)
    if arr.dtype.kind == "f" and not np.all(np.isfinite(arr)):
        raise InvalidTextureData(f"{name}: contains non-finite values")
    return arr
