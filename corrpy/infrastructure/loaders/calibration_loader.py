import os
from typing import Any, Optional, Tuple

import numpy as np
import tifffile

from corrpy.domain.errors import InvalidTextureData
from corrpy.kernel.system.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_TIFF_EXTENSIONS = (".tif", ".tiff")
SUPPORTED_NUMPY_EXTENSIONS = (".npy",)
SUPPORTED_RAW_EXTENSIONS = (".raw", ".bin", ".dat")


def _read_raw(file_path: str, dtype: np.dtype, shape: Optional[Tuple[int, int]]) -> np.ndarray:
    """Headerless little-endian dump of one plane."""
    if shape is None:
        raise InvalidTextureData(f"{file_path}: raw calibration files need an explicit shape")
    count = shape[0] * shape[1]
    with open(file_path, "rb") as f:
        data = np.fromfile(f, dtype=dtype.newbyteorder("<"), count=count)
    if data.size < count:
        raise InvalidTextureData(f"{file_path}: expected {count} values, got {data.size}")
    return data.reshape(shape).astype(dtype)


def load_reference_map(file_path: str, dtype: Any, shape: Optional[Tuple[int, int]] = None) -> np.ndarray:
    """
    Loads a dark map, gain map or defect mask from disk.
    Multi-page or multi-channel files are rejected; calibration maps are
    single planes. Values are range-checked again when the stage is enabled.
    """
    target = np.dtype(dtype)
    ext = os.path.splitext(file_path)[1].lower()
    try:
        if ext in SUPPORTED_TIFF_EXTENSIONS:
            data = tifffile.imread(file_path)
        elif ext in SUPPORTED_NUMPY_EXTENSIONS:
            data = np.load(file_path, allow_pickle=False)
        elif ext in SUPPORTED_RAW_EXTENSIONS:
            return _read_raw(file_path, target, shape)
        else:
            raise InvalidTextureData(f"{file_path}: unsupported calibration format '{ext}'")
    except OSError as e:
        raise InvalidTextureData(f"{file_path}: {e}") from e

    data = np.squeeze(np.asarray(data))
    if data.ndim != 2:
        raise InvalidTextureData(f"{file_path}: expected a single plane, got shape {data.shape}")
    if shape is not None and data.shape != tuple(shape):
        raise InvalidTextureData(f"{file_path}: expected shape {tuple(shape)}, got {data.shape}")
    if target.kind == "f":
        data = data.astype(target)
    logger.info(f"Loaded calibration map {os.path.basename(file_path)}: {data.shape[1]}x{data.shape[0]} {data.dtype}")
    return data
