from enum import IntEnum

from corrpy.domain.types import PowerPreference


class CPowerPreference(IntEnum):
    """Power preference as passed across the C boundary."""

    NONE = 0
    LOW_POWER = 1
    HIGH_PERFORMANCE = 2

    def to_power_preference(self) -> PowerPreference:
        return _TO_PREFERENCE[self]


_TO_PREFERENCE = {
    CPowerPreference.NONE: PowerPreference.NONE,
    CPowerPreference.LOW_POWER: PowerPreference.LOW_POWER,
    CPowerPreference.HIGH_PERFORMANCE: PowerPreference.HIGH_PERFORMANCE,
}
