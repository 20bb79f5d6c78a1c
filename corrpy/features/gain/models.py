from dataclasses import dataclass
from typing import Any

from corrpy.domain.errors import ConfigurationError


@dataclass(frozen=True)
class GainParams:
    """Gain correction is fully described by its map."""


def normalize_gain_params(params: Any) -> GainParams:
    if params is None or isinstance(params, GainParams):
        return params or GainParams()
    raise ConfigurationError(f"Gain correction takes no parameters, got {params!r}")
