import threading
import time
from concurrent.futures import Future, InvalidStateError
from functools import partial
from typing import Any, Callable, List, Optional, Set

import numpy as np

from corrpy.domain.errors import CorrectionError, GpuExecutionFailed, InvalidHandle, RingBufferFull
from corrpy.domain.models import SLOT_TRANSITIONS, ImageDescriptor, SlotState
from corrpy.infrastructure.gpu.resources import FrameBuffers, ResourceAllocator
from corrpy.kernel.image.validation import ensure_image
from corrpy.kernel.system.event_loop import EventLoopThread
from corrpy.kernel.system.logging import get_logger
from corrpy.services.rendering.compositor import PipelineCompositor
from corrpy.services.rendering.stage_registry import CorrectionStageRegistry, StageResources
from corrpy.services.rendering.synchronizer import SubmissionSynchronizer

logger = get_logger(__name__)


class FrameSlot:
    """
    Buffers of one in-flight frame and its lifecycle state.
    """

    def __init__(self, index: int, buffers: FrameBuffers, on_idle: Callable[[], None]) -> None:
        self.index = index
        self.buffers = buffers
        self._state = SlotState.IDLE
        self._guard = threading.Lock()
        self._on_idle = on_idle
        self.abandoned = False

    @property
    def state(self) -> SlotState:
        return self._state

    def transition(self, new_state: SlotState) -> None:
        with self._guard:
            if new_state not in SLOT_TRANSITIONS[self._state]:
                raise RuntimeError(f"slot {self.index}: illegal transition {self._state} -> {new_state}")
            self._state = new_state
        if new_state == SlotState.IDLE:
            self._on_idle()


class FrameSlotRing:
    """
    Fixed ring of frame slots. A slot is claimed only from Idle, so a frame
    never overwrites buffers the device may still read or write.

    Claims search forward from the slot after the last one claimed, which
    keeps round-robin order while tolerating out-of-order completion.
    """

    def __init__(
        self,
        allocator: ResourceAllocator,
        registry: CorrectionStageRegistry,
        compositor: PipelineCompositor,
        synchronizer: SubmissionSynchronizer,
        loop: EventLoopThread,
        capacity: int,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"Frame slot count must be at least 1, got {capacity}")
        self.descriptor: ImageDescriptor = allocator.descriptor
        self.registry = registry
        self.compositor = compositor
        self.synchronizer = synchronizer
        self.loop = loop
        self._available = threading.Condition()
        self._head = 0
        self._closed = False
        self._outstanding: Set["Future[np.ndarray]"] = set()
        self._slots: List[FrameSlot] = []
        try:
            for i in range(capacity):
                self._slots.append(FrameSlot(i, allocator.allocate_frame(i), self._notify_idle))
        except Exception:
            for slot in self._slots:
                slot.buffers.destroy()
            raise
        logger.info(f"Frame ring: {capacity} slot(s) of {allocator.frame_bytes} bytes")

    def _notify_idle(self) -> None:
        with self._available:
            self._available.notify_all()

    def capacity(self) -> int:
        return len(self._slots)

    def slot_states(self) -> List[SlotState]:
        return [slot.state for slot in self._slots]

    def _find_idle(self) -> Optional[FrameSlot]:
        n = len(self._slots)
        for step in range(n):
            slot = self._slots[(self._head + step) % n]
            if slot.state == SlotState.IDLE:
                return slot
        return None

    def claim(self, block: bool = False, timeout: Optional[float] = None) -> FrameSlot:
        """
        Moves the next Idle slot to Uploading. Raises RingBufferFull when
        none is free (immediately, or after `timeout` when blocking).
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._available:
            while True:
                if self._closed:
                    raise InvalidHandle("Frame ring is closed")
                slot = self._find_idle()
                if slot is not None:
                    slot.transition(SlotState.UPLOADING)
                    self._head = (slot.index + 1) % len(self._slots)
                    return slot
                if not block:
                    raise RingBufferFull(f"All {len(self._slots)} frame slots are in flight")
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise RingBufferFull(f"No frame slot became free within {timeout}s")
                self._available.wait(remaining)

    def enqueue(self, image: Any, block: bool = False, timeout: Optional[float] = None) -> "Future[np.ndarray]":
        """
        Validates `image`, claims a slot and schedules the frame. The stage
        set is captured now; later enable/disable calls do not affect it.
        """
        plane = ensure_image(image, self.descriptor)
        slot = self.claim(block=block, timeout=timeout)
        try:
            stages = self.registry.snapshot()
        except Exception:
            slot.transition(SlotState.IDLE)
            raise
        try:
            frame = self.loop.submit(self._run_frame(slot, plane, stages))
        except Exception:
            self._release(stages)
            slot.transition(SlotState.IDLE)
            raise
        result: "Future[np.ndarray]" = Future()
        result.set_running_or_notify_cancel()
        with self._available:
            self._outstanding.add(result)
        frame.add_done_callback(partial(self._forward, result))
        return result

    def _forward(self, result: "Future[np.ndarray]", frame: "Future[np.ndarray]") -> None:
        with self._available:
            self._outstanding.discard(result)
        if frame.cancelled():
            error: Optional[BaseException] = GpuExecutionFailed("Frame cancelled by engine shutdown")
        else:
            error = frame.exception()
        try:
            if error is not None:
                result.set_exception(error)
            else:
                result.set_result(frame.result())
        except InvalidStateError:
            # already failed by abandon_in_flight()
            pass

    @staticmethod
    def _release(stages: List[StageResources]) -> None:
        for stage in stages:
            stage.release()

    async def _run_frame(self, slot: FrameSlot, plane: np.ndarray, stages: List[StageResources]) -> np.ndarray:
        try:
            commands = self.compositor.build_frame_commands(slot.index, slot.buffers, plane, stages)
            pending = self.synchronizer.submit(commands, slot, lambda: self._release(stages))
        except BaseException as e:
            self._release(stages)
            slot.transition(SlotState.IDLE)
            if isinstance(e, CorrectionError) or not isinstance(e, Exception):
                raise
            raise GpuExecutionFailed(f"slot {slot.index}: failed to record frame: {e}") from e
        logger.debug(f"Submitted frame on slot {slot.index} ({len(commands.dispatches)} dispatches)")
        return await self.synchronizer.await_result(pending, self.synchronizer.timeout)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Waits until every slot is Idle. Returns False on timeout."""
        with self._available:
            return self._available.wait_for(lambda: all(s.state == SlotState.IDLE for s in self._slots), timeout)

    def abandon_in_flight(self, reason: str) -> int:
        """
        Gives up on frames that did not finish in time. Their callers get
        GpuExecutionFailed, and their slots keep their buffers until the
        device itself is released.
        """
        with self._available:
            outstanding = list(self._outstanding)
            self._outstanding.clear()
            abandoned = 0
            for slot in self._slots:
                if slot.state != SlotState.IDLE:
                    slot.abandoned = True
                    abandoned += 1
        for result in outstanding:
            try:
                result.set_exception(GpuExecutionFailed(reason))
            except InvalidStateError:
                pass
        return abandoned

    def close(self) -> None:
        with self._available:
            self._closed = True
            self._available.notify_all()

    def destroy(self) -> None:
        self.close()
        for slot in self._slots:
            if slot.abandoned:
                logger.warning(f"Slot {slot.index} abandoned in flight, buffers left to device teardown")
                continue
            slot.buffers.destroy()
