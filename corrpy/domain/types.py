from dataclasses import dataclass
from enum import StrEnum
from typing import Optional

import numpy as np

ImageBuffer = np.ndarray

PIXEL_DTYPE = np.uint16
GAIN_DTYPE = np.float32
PIXEL_MAX = 65535


class PowerPreference(StrEnum):
    NONE = "none"
    LOW_POWER = "low-power"
    HIGH_PERFORMANCE = "high-performance"

    @property
    def wgpu_value(self) -> Optional[str]:
        """Value accepted by wgpu's request_adapter, None lets the driver choose."""
        if self == PowerPreference.NONE:
            return None
        return str(self.value)


@dataclass(frozen=True)
class AppConfig:
    """
    Process-wide defaults, resolved once from the environment.
    """

    frame_slot_count: int
    power_preference: str
    readback_timeout: Optional[float]
    use_gpu: bool
    cpu_fallback: bool
    log_level: str
