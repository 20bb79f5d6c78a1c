import numpy as np
from numba import njit, prange  # type: ignore

from corrpy.domain.types import ImageBuffer
from corrpy.kernel.system.numba_env import pin_threading_layer

pin_threading_layer()


@njit(parallel=True, cache=True)
def _apply_gain_jit(img: np.ndarray, gain: np.ndarray) -> np.ndarray:
    """
    Round-half-up v * gain in float32, saturated to 16 bits.
    """
    h, w = img.shape
    res = np.empty_like(img)
    half = np.float32(0.5)
    for y in prange(h):
        for x in range(w):
            scaled = np.floor(np.float32(img[y, x]) * gain[y, x] + half)
            if scaled <= 0.0:
                res[y, x] = np.uint16(0)
            elif scaled >= 65535.0:
                res[y, x] = np.uint16(65535)
            else:
                res[y, x] = np.uint16(scaled)
    return res


def apply_gain(img: ImageBuffer, gain_map: ImageBuffer) -> ImageBuffer:
    return _apply_gain_jit(
        np.ascontiguousarray(img, dtype=np.uint16),
        np.ascontiguousarray(gain_map, dtype=np.float32),
    )
