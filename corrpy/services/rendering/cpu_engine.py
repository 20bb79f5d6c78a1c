from concurrent.futures import Future
from typing import Any, Dict, List, Optional

from corrpy.domain.errors import InvalidHandle
from corrpy.domain.models import ImageDescriptor, StageKind
from corrpy.domain.types import GAIN_DTYPE, PIXEL_DTYPE, ImageBuffer
from corrpy.features.defect.models import DefectParams
from corrpy.features.defect.processor import DefectProcessor
from corrpy.features.gain.processor import GainProcessor
from corrpy.features.offset.models import OffsetParams
from corrpy.features.offset.processor import OffsetProcessor
from corrpy.kernel.image.validation import ensure_image, ensure_reference_map
from corrpy.kernel.system.config import APP_CONFIG
from corrpy.kernel.system.logging import get_logger
from corrpy.kernel.system.rwlock import ReadWriteLock

logger = get_logger(__name__)


class CpuCorrectionEngine:
    """
    Host-side reference pipeline built on the numba kernels.
    Same surface and output as CorrectionEngine; frames complete before
    process_image returns.
    """

    def __init__(self, descriptor: ImageDescriptor, frame_slot_count: Optional[int] = None) -> None:
        self.descriptor = descriptor
        self._slots = frame_slot_count or APP_CONFIG.frame_slot_count
        self._processors: Dict[StageKind, Any] = {}
        self._lock = ReadWriteLock()
        self._destroyed = False

    @classmethod
    def create(cls, width: int, height: int, frame_slot_count: Optional[int] = None) -> "CpuCorrectionEngine":
        return cls(ImageDescriptor(width, height), frame_slot_count)

    def __enter__(self) -> "CpuCorrectionEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.destroy()

    @property
    def backend_name(self) -> str:
        return "CPU"

    def _check_alive(self) -> None:
        if self._destroyed:
            raise InvalidHandle("CpuCorrectionEngine has been destroyed")

    def _install(self, kind: StageKind, processor: Any) -> None:
        self._check_alive()
        with self._lock.write_locked():
            self._processors[kind] = processor
        logger.info(f"CPU pipeline: enabled {kind.label} stage")

    def enable_offset(self, dark_map: Any, offset_constant: int = 0) -> None:
        params = OffsetParams(offset_constant)
        dark = ensure_reference_map(dark_map, self.descriptor, PIXEL_DTYPE, name="offset.reference")
        self._install(StageKind.OFFSET, OffsetProcessor(dark, params))

    def enable_gain(self, gain_map: Any) -> None:
        gain = ensure_reference_map(gain_map, self.descriptor, GAIN_DTYPE, name="gain.reference")
        self._install(StageKind.GAIN, GainProcessor(gain))

    def enable_defect(self, defect_mask: Any, kernel_weights: Optional[Any] = None, separable: bool = False) -> None:
        params = DefectParams.build(kernel_weights, separable)
        mask = ensure_reference_map(defect_mask, self.descriptor, PIXEL_DTYPE, name="defect.reference")
        self._install(StageKind.DEFECT, DefectProcessor(mask, params))

    def disable(self, kind: StageKind) -> None:
        self._check_alive()
        with self._lock.write_locked():
            self._processors.pop(StageKind(kind), None)

    def stage_kinds(self) -> List[StageKind]:
        self._check_alive()
        with self._lock.read_locked():
            return sorted(self._processors)

    def _run(self, img: ImageBuffer) -> ImageBuffer:
        with self._lock.read_locked():
            processors = [self._processors[k] for k in sorted(self._processors)]
        for processor in processors:
            img = processor.process(img)
        return img.copy()

    def process_image(self, image: Any, block: bool = False, timeout: Optional[float] = None) -> "Future[ImageBuffer]":
        self._check_alive()
        plane = ensure_image(image, self.descriptor)
        future: "Future[ImageBuffer]" = Future()
        try:
            future.set_result(self._run(plane))
        except Exception as e:
            future.set_exception(e)
        return future

    def process_image_sync(self, image: Any, timeout: Optional[float] = None) -> ImageBuffer:
        self._check_alive()
        return self._run(ensure_image(image, self.descriptor))

    def capacity(self) -> int:
        self._check_alive()
        return self._slots

    def drain(self, timeout: Optional[float] = None) -> bool:
        return True

    def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        with self._lock.write_locked():
            self._processors.clear()
