from dataclasses import dataclass
from typing import Any

from corrpy.domain.errors import ConfigurationError

# Beyond this every pixel already saturates at 65535; keeps v + offset inside u32.
MAX_OFFSET_CONSTANT = 0x1FFFF


@dataclass(frozen=True)
class OffsetParams:
    """
    Constant added back after dark-map subtraction.
    """

    constant_offset: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.constant_offset, bool) or not isinstance(self.constant_offset, int) or self.constant_offset < 0:
            raise ConfigurationError(f"constant_offset must be a non-negative integer, got {self.constant_offset!r}")

    @property
    def effective_offset(self) -> int:
        return min(self.constant_offset, MAX_OFFSET_CONSTANT)


def normalize_offset_params(params: Any) -> OffsetParams:
    if params is None:
        return OffsetParams()
    if isinstance(params, OffsetParams):
        return params
    return OffsetParams(constant_offset=params)
