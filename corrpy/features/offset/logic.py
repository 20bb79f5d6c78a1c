import numpy as np
from numba import njit, prange  # type: ignore

from corrpy.domain.types import ImageBuffer
from corrpy.features.offset.models import MAX_OFFSET_CONSTANT
from corrpy.kernel.system.numba_env import pin_threading_layer

pin_threading_layer()


@njit(parallel=True, cache=True)
def _apply_offset_jit(img: np.ndarray, dark: np.ndarray, offset: np.int64) -> np.ndarray:
    """
    Saturating v + offset - dark.
    """
    h, w = img.shape
    res = np.empty_like(img)
    for y in prange(h):
        for x in range(w):
            lifted = np.int64(img[y, x]) + offset
            d = np.int64(dark[y, x])
            if lifted <= d:
                res[y, x] = np.uint16(0)
            elif lifted - d > 65535:
                res[y, x] = np.uint16(65535)
            else:
                res[y, x] = np.uint16(lifted - d)
    return res


def apply_offset(img: ImageBuffer, dark_map: ImageBuffer, offset: int) -> ImageBuffer:
    return _apply_offset_jit(
        np.ascontiguousarray(img, dtype=np.uint16),
        np.ascontiguousarray(dark_map, dtype=np.uint16),
        np.int64(min(max(int(offset), 0), MAX_OFFSET_CONSTANT)),
    )
