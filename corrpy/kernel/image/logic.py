import numpy as np

from corrpy.domain.models import ImageDescriptor


def pad_rows(plane: np.ndarray, descriptor: ImageDescriptor) -> np.ndarray:
    """
    (height, width) -> (height, padded_width), zero-filled padding column.
    """
    h, w = descriptor.shape
    if descriptor.padded_width == w:
        return np.ascontiguousarray(plane)
    out = np.zeros((h, descriptor.padded_width), dtype=plane.dtype)
    out[:, :w] = plane
    return out


def to_device_bytes(plane: np.ndarray, descriptor: ImageDescriptor) -> bytes:
    """
    Little-endian, row-padded bytes as laid out in a GPU buffer.
    16-bit planes end up packed two pixels per u32 word, low half first.
    """
    padded = pad_rows(plane, descriptor)
    return padded.astype(padded.dtype.newbyteorder("<"), copy=False).tobytes()


def from_device_bytes(raw: bytes | memoryview, descriptor: ImageDescriptor, dtype: np.dtype = np.dtype(np.uint16)) -> np.ndarray:
    """
    Inverse of to_device_bytes: strips row padding, returns an owned (height, width) array.
    """
    flat = np.frombuffer(raw, dtype=np.dtype(dtype).newbyteorder("<"), count=descriptor.padded_width * descriptor.height)
    plane = flat.reshape(descriptor.height, descriptor.padded_width)[:, : descriptor.width]
    return np.ascontiguousarray(plane).astype(dtype, copy=True)
