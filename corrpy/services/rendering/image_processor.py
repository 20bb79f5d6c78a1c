from typing import Optional

from corrpy.domain.errors import ResourceError
from corrpy.domain.interfaces import ICorrectionEngine
from corrpy.domain.types import PowerPreference
from corrpy.kernel.system.config import APP_CONFIG
from corrpy.kernel.system.logging import get_logger
from corrpy.services.rendering.cpu_engine import CpuCorrectionEngine
from corrpy.services.rendering.gpu_engine import CorrectionEngine

logger = get_logger(__name__)


def create_pipeline(
    width: int,
    height: int,
    frame_slot_count: Optional[int] = None,
    power_preference: Optional[PowerPreference | str] = None,
    use_gpu: Optional[bool] = None,
    allow_cpu_fallback: Optional[bool] = None,
) -> ICorrectionEngine:
    """
    Builds the GPU pipeline, or the CPU reference pipeline when the GPU is
    disabled. GPU resource failures fall back to the CPU only if allowed;
    otherwise they propagate.
    """
    use_gpu = APP_CONFIG.use_gpu if use_gpu is None else use_gpu
    allow_cpu_fallback = APP_CONFIG.cpu_fallback if allow_cpu_fallback is None else allow_cpu_fallback

    if not use_gpu:
        logger.info("Correction pipeline: GPU disabled, using CPU backend")
        return CpuCorrectionEngine.create(width, height, frame_slot_count)

    try:
        engine = CorrectionEngine.create(width, height, frame_slot_count, power_preference)
        logger.info(f"Correction pipeline: acceleration backend {engine.backend_name} ready")
        return engine
    except ResourceError as e:
        if not allow_cpu_fallback:
            raise
        logger.warning(f"Correction pipeline: GPU unavailable ({e}), using CPU fallback")
        return CpuCorrectionEngine.create(width, height, frame_slot_count)
