from dataclasses import dataclass
from typing import Any, Optional, Tuple

import numpy as np

from corrpy.domain.errors import InvalidKernelWeights

MAX_KERNEL_RADIUS = 7

DEFAULT_KERNEL_2D = (
    (1, 2, 3, 2, 1),
    (2, 3, 4, 3, 2),
    (3, 4, 0, 4, 3),
    (2, 3, 4, 3, 2),
    (1, 2, 3, 2, 1),
)
DEFAULT_KERNEL_1D = (1, 2, 0, 2, 1)


@dataclass(frozen=True)
class DefectParams:
    """
    Interpolation kernel for defect correction.

    `kernel_weights` is stored flat, row-major. In separable mode it is a
    single line of `side` weights applied along x, then along y.
    """

    kernel_weights: Tuple[float, ...]
    side: int
    separable: bool = False

    def __post_init__(self) -> None:
        expected = self.side if self.separable else self.side * self.side
        if len(self.kernel_weights) != expected:
            raise InvalidKernelWeights(f"Expected {expected} weights for side {self.side}, got {len(self.kernel_weights)}")
        if self.side % 2 == 0 or self.side < 1:
            raise InvalidKernelWeights(f"Kernel side must be odd, got {self.side}")
        if self.radius > MAX_KERNEL_RADIUS:
            raise InvalidKernelWeights(f"Kernel radius {self.radius} exceeds {MAX_KERNEL_RADIUS}")

    @property
    def radius(self) -> int:
        return self.side // 2

    def weights_array(self) -> np.ndarray:
        shape = (self.side,) if self.separable else (self.side, self.side)
        return np.asarray(self.kernel_weights, dtype=np.float32).reshape(shape)

    @classmethod
    def build(cls, kernel_weights: Optional[Any] = None, separable: bool = False) -> "DefectParams":
        if kernel_weights is None:
            kernel_weights = DEFAULT_KERNEL_1D if separable else DEFAULT_KERNEL_2D
        try:
            arr = np.asarray(kernel_weights, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidKernelWeights(f"Kernel weights are not numeric: {e}") from e

        if separable:
            if arr.ndim != 1:
                raise InvalidKernelWeights(f"Separable kernel must be 1-D, got shape {arr.shape}")
            side = arr.shape[0]
        else:
            if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
                raise InvalidKernelWeights(f"Kernel must be square 2-D, got shape {arr.shape}")
            side = arr.shape[0]

        if arr.size == 0 or not np.all(np.isfinite(arr)):
            raise InvalidKernelWeights("Kernel weights must be finite")
        if np.any(arr < 0):
            raise InvalidKernelWeights("Kernel weights must be non-negative")
        if not np.any(arr > 0):
            raise InvalidKernelWeights("Kernel has no positive weight")

        flat = tuple(float(w) for w in arr.astype(np.float32).ravel())
        return cls(kernel_weights=flat, side=int(side), separable=bool(separable))


def normalize_defect_params(params: Any) -> DefectParams:
    if params is None:
        return DefectParams.build()
    if isinstance(params, DefectParams):
        return params
    return DefectParams.build(params)
