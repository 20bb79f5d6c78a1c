from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, List, Optional

import numpy as np

from corrpy.domain.errors import InvalidHandle, Timeout
from corrpy.domain.models import ImageDescriptor, SlotState, StageKind
from corrpy.domain.types import GAIN_DTYPE, PIXEL_DTYPE, ImageBuffer, PowerPreference
from corrpy.features.defect.models import DefectParams
from corrpy.features.offset.models import OffsetParams
from corrpy.infrastructure.gpu.device import GPUContext, acquire_context
from corrpy.infrastructure.gpu.resources import ResourceAllocator
from corrpy.infrastructure.gpu.shader_loader import ShaderLoader
from corrpy.infrastructure.loaders.calibration_loader import load_reference_map
from corrpy.kernel.system.config import APP_CONFIG
from corrpy.kernel.system.event_loop import EventLoopThread
from corrpy.kernel.system.logging import get_logger
from corrpy.kernel.system.rwlock import ReadWriteLock
from corrpy.services.rendering.compositor import PipelineCompositor
from corrpy.services.rendering.frame_ring import FrameSlotRing
from corrpy.services.rendering.stage_registry import CorrectionStageRegistry
from corrpy.services.rendering.synchronizer import SubmissionSynchronizer

logger = get_logger(__name__)

_UNSET: Any = object()


class CorrectionEngine:
    """
    GPU correction pipeline for one image geometry.

    Owns the device, the enabled stages and a ring of frame slots. Stage
    configuration and frame submission may be called from any thread;
    frames are driven to completion on a private event loop thread.
    """

    def __init__(
        self,
        context: GPUContext,
        descriptor: ImageDescriptor,
        frame_slot_count: Optional[int] = None,
        readback_timeout: Optional[float] = _UNSET,
    ) -> None:
        self.context = context
        self.descriptor = descriptor
        self.readback_timeout = APP_CONFIG.readback_timeout if readback_timeout is _UNSET else readback_timeout
        self._lock = ReadWriteLock()
        self._destroyed = False

        self._loop = EventLoopThread(name=f"corrpy-{descriptor.width}x{descriptor.height}").start()
        try:
            self.allocator = ResourceAllocator(context, descriptor)
            self.registry = CorrectionStageRegistry(self.allocator, self._lock, ShaderLoader(context.device))
            self.compositor = PipelineCompositor(self.registry, descriptor)
            self.synchronizer = SubmissionSynchronizer(context, descriptor, self.readback_timeout)
            self.ring = FrameSlotRing(
                self.allocator,
                self.registry,
                self.compositor,
                self.synchronizer,
                self._loop,
                frame_slot_count or APP_CONFIG.frame_slot_count,
            )
        except Exception:
            self._loop.stop()
            raise
        logger.info(f"CorrectionEngine ready: {descriptor.width}x{descriptor.height}, {self.ring.capacity()} slot(s) on {context.adapter_description}")

    @classmethod
    def create(
        cls,
        width: int,
        height: int,
        frame_slot_count: Optional[int] = None,
        power_preference: Optional[PowerPreference | str] = None,
        readback_timeout: Optional[float] = _UNSET,
    ) -> "CorrectionEngine":
        """
        Validates the geometry, then acquires a device. Dimension errors are
        raised before any adapter is touched.
        """
        descriptor = ImageDescriptor(width, height)
        context = acquire_context(power_preference or APP_CONFIG.power_preference)
        try:
            return cls(context, descriptor, frame_slot_count, readback_timeout)
        except Exception:
            context.close()
            raise

    def __enter__(self) -> "CorrectionEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.destroy()

    def _check_alive(self) -> None:
        if self._destroyed:
            raise InvalidHandle("CorrectionEngine has been destroyed")

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def backend_name(self) -> str:
        return self.context.backend_name

    # Configuration

    def enable_offset(self, dark_map: Any, offset_constant: int = 0) -> None:
        self._check_alive()
        self.registry.enable(StageKind.OFFSET, dark_map, OffsetParams(offset_constant))

    def enable_gain(self, gain_map: Any) -> None:
        self._check_alive()
        self.registry.enable(StageKind.GAIN, gain_map)

    def enable_defect(self, defect_mask: Any, kernel_weights: Optional[Any] = None, separable: bool = False) -> None:
        self._check_alive()
        self.registry.enable(StageKind.DEFECT, defect_mask, DefectParams.build(kernel_weights, separable))

    def enable_offset_from_file(self, path: str, offset_constant: int = 0) -> None:
        self.enable_offset(load_reference_map(path, PIXEL_DTYPE, self.descriptor.shape), offset_constant)

    def enable_gain_from_file(self, path: str) -> None:
        self.enable_gain(load_reference_map(path, GAIN_DTYPE, self.descriptor.shape))

    def enable_defect_from_file(self, path: str, kernel_weights: Optional[Any] = None, separable: bool = False) -> None:
        self.enable_defect(load_reference_map(path, PIXEL_DTYPE, self.descriptor.shape), kernel_weights, separable)

    def disable(self, kind: StageKind) -> None:
        self._check_alive()
        self.registry.disable(kind)

    def stage_kinds(self) -> List[StageKind]:
        self._check_alive()
        return self.registry.stage_kinds()

    # Processing

    def process_image(self, image: Any, block: bool = False, timeout: Optional[float] = None) -> "Future[ImageBuffer]":
        """
        Schedules one frame and returns a future of the corrected image.
        With every slot in flight this raises RingBufferFull, or waits up to
        `timeout` seconds for a slot when `block` is set.
        """
        self._check_alive()
        return self.ring.enqueue(image, block=block, timeout=timeout)

    def process_image_sync(self, image: Any, timeout: Optional[float] = None) -> ImageBuffer:
        """Blocks for a free slot and for the result."""
        future = self.process_image(image, block=True, timeout=timeout)
        try:
            result: np.ndarray = future.result(timeout)
        except FutureTimeoutError as e:
            if isinstance(e, Timeout):
                raise
            raise Timeout(f"Frame not completed within {timeout}s") from None
        return result

    def capacity(self) -> int:
        self._check_alive()
        return self.ring.capacity()

    def slot_states(self) -> List[SlotState]:
        self._check_alive()
        return self.ring.slot_states()

    def drain(self, timeout: Optional[float] = None) -> bool:
        self._check_alive()
        return self.ring.drain(timeout)

    # Teardown

    def destroy(self, timeout: Optional[float] = 5.0) -> None:
        """
        Waits for in-flight frames, then releases every GPU resource.
        Frames still running after `timeout` fail with GpuExecutionFailed.
        Further calls are no-ops.
        """
        if self._destroyed:
            return
        self._destroyed = True
        self.ring.close()
        if not self.ring.drain(timeout):
            abandoned = self.ring.abandon_in_flight(f"CorrectionEngine destroyed with frames in flight after {timeout}s")
            logger.warning(f"CorrectionEngine: {abandoned} frame(s) still in flight after {timeout}s, abandoning")
        self._loop.stop()
        self.ring.destroy()
        self.registry.destroy()
        self.context.close()
        logger.info("CorrectionEngine: GPU resources released")
