import numpy as np
from numba import njit, prange  # type: ignore

from corrpy.domain.types import ImageBuffer
from corrpy.features.defect.models import DefectParams
from corrpy.kernel.system.numba_env import pin_threading_layer

pin_threading_layer()


@njit(cache=True)
def _estimate(src: np.ndarray, mask: np.ndarray, weights: np.ndarray, y: int, x: int, r: int, separable: bool, direction: int) -> np.uint16:
    h, w = src.shape
    side = 2 * r + 1
    total = np.float32(0.0)
    acc = np.float32(0.0)
    for j in range(-r, r + 1):
        for i in range(-r, r + 1):
            if separable:
                along = j if direction == 1 else i
                across = i if direction == 1 else j
                if across != 0:
                    continue
                wt = weights[along + r]
            else:
                wt = weights[(j + r) * side + (i + r)]
            ny = y + j
            nx = x + i
            if wt <= 0.0 or nx < 0 or ny < 0 or nx >= w or ny >= h:
                continue
            if mask[ny, nx] != 0:
                continue
            acc = acc + wt * np.float32(src[ny, nx])
            total = total + wt
    if total <= 0.0:
        return src[y, x]
    value = np.floor(acc / total + np.float32(0.5))
    if value <= 0.0:
        return np.uint16(0)
    if value >= 65535.0:
        return np.uint16(65535)
    return np.uint16(value)


@njit(parallel=True, cache=True)
def _interpolate_pass_jit(src: np.ndarray, mask: np.ndarray, weights: np.ndarray, r: int, separable: bool, direction: int) -> np.ndarray:
    """
    One interpolation pass. Neighbours always come from `src`, never from
    pixels already rewritten in this pass.
    """
    h, w = src.shape
    res = src.copy()
    for y in prange(h):
        for x in range(w):
            if mask[y, x] != 0:
                res[y, x] = _estimate(src, mask, weights, y, x, r, separable, direction)
    return res


def interpolate_pass(img: ImageBuffer, mask: ImageBuffer, weights: np.ndarray, radius: int, separable: bool = False, direction: int = 0) -> ImageBuffer:
    """
    One pass over flat `weights`: a (2r+1)^2 kernel, or a 2r+1 line along
    x (direction 0) or y (direction 1) when separable.
    """
    return _interpolate_pass_jit(
        np.ascontiguousarray(img, dtype=np.uint16),
        np.ascontiguousarray(mask, dtype=np.uint16),
        np.ascontiguousarray(np.ravel(weights), dtype=np.float32),
        int(radius),
        bool(separable),
        int(direction),
    )


def interpolate_defects(img: ImageBuffer, mask: ImageBuffer, params: DefectParams) -> ImageBuffer:
    weights = params.weights_array()
    if not params.separable:
        return interpolate_pass(img, mask, weights, params.radius)
    horizontal = interpolate_pass(img, mask, weights, params.radius, True, 0)
    return interpolate_pass(horizontal, mask, weights, params.radius, True, 1)
