import os
from typing import Optional

from corrpy.domain.types import AppConfig, PowerPreference


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_timeout(name: str, default: float) -> Optional[float]:
    raw = os.getenv(name)
    value = default if raw is None else float(raw)
    # 0 disables the deadline
    return value if value > 0 else None


def load_app_config() -> AppConfig:
    return AppConfig(
        frame_slot_count=max(1, int(os.getenv("CORRPY_FRAME_SLOTS", "10"))),
        power_preference=PowerPreference(os.getenv("CORRPY_POWER_PREFERENCE", PowerPreference.HIGH_PERFORMANCE.value)),
        readback_timeout=_env_timeout("CORRPY_READBACK_TIMEOUT", 5.0),
        use_gpu=_env_flag("CORRPY_USE_GPU", True),
        cpu_fallback=_env_flag("CORRPY_CPU_FALLBACK", False),
        log_level=os.getenv("CORRPY_LOG_LEVEL", "INFO").upper(),
    )


APP_CONFIG = load_app_config()
