import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import numpy as np
import wgpu  # type: ignore

from corrpy.domain.errors import CorrectionError, GpuExecutionFailed, Timeout
from corrpy.domain.models import ImageDescriptor, SlotState
from corrpy.infrastructure.gpu.device import GPUContext
from corrpy.kernel.image.logic import from_device_bytes
from corrpy.kernel.system.logging import get_logger
from corrpy.services.rendering.compositor import FrameCommands

logger = get_logger(__name__)


class OneShot:
    """
    Notification carrying exactly one value or one error.
    Later resolutions are ignored. May be resolved from any thread.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()

    def done(self) -> bool:
        return self._future.done()

    def _resolve(self, value: Any, error: Optional[BaseException]) -> None:
        if self._future.done():
            return
        if error is not None:
            self._future.set_exception(error)
        else:
            self._future.set_result(value)

    def _dispatch(self, value: Any, error: Optional[BaseException]) -> None:
        try:
            on_loop = asyncio.get_running_loop() is self._loop
        except RuntimeError:
            on_loop = False
        if on_loop:
            self._resolve(value, error)
        else:
            self._loop.call_soon_threadsafe(self._resolve, value, error)

    def set_result(self, value: Any) -> None:
        self._dispatch(value, None)

    def set_exception(self, error: BaseException) -> None:
        self._dispatch(None, error)

    async def wait(self) -> Any:
        return await self._future


@dataclass
class PendingSubmission:
    """One submitted frame. Its result resolves exactly once."""

    slot_index: int
    commands: FrameCommands
    result: OneShot
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)


async def _settle(outcome: Any) -> Any:
    if inspect.isawaitable(outcome):
        return await outcome
    return outcome


class SubmissionSynchronizer:
    """
    Bridges queue submission to readback completion.

    After submission a driver task waits for the readback buffer to map,
    copies it out, unmaps and returns the slot to Idle. The driver always
    runs to completion, even when the caller stops waiting, so a slot is
    never reused while its buffers may still be written by the device.
    """

    def __init__(self, context: GPUContext, descriptor: ImageDescriptor, timeout: Optional[float] = None) -> None:
        self.context = context
        self.descriptor = descriptor
        self.timeout = timeout

    def submit(self, commands: FrameCommands, slot: Any, on_complete: Callable[[], None]) -> PendingSubmission:
        """
        Enqueues `commands` and returns immediately. Must be called on the
        event loop that will drive completion. `on_complete` runs just before the
        slot returns to Idle, whatever the outcome.
        """
        try:
            self.context.queue.submit([commands.command_buffer])
        except Exception as e:
            raise GpuExecutionFailed(f"slot {slot.index}: queue submission failed: {e}") from e
        slot.transition(SlotState.DISPATCHED)

        pending = PendingSubmission(slot_index=slot.index, commands=commands, result=OneShot())
        pending.task = asyncio.get_running_loop().create_task(self._drive(pending, slot, on_complete))
        return pending

    async def _drive(self, pending: PendingSubmission, slot: Any, on_complete: Callable[[], None]) -> None:
        readback = slot.buffers.readback.buffer
        try:
            try:
                await _settle(readback.map_async(wgpu.MapMode.READ))
            except Exception as e:
                raise GpuExecutionFailed(f"slot {slot.index}: readback mapping failed: {e}") from e
            slot.transition(SlotState.READING_BACK)
            try:
                raw = bytes(readback.read_mapped())
            finally:
                readback.unmap()
            pending.result.set_result(from_device_bytes(raw, self.descriptor))
        except Exception as e:
            error = e if isinstance(e, CorrectionError) else GpuExecutionFailed(f"slot {slot.index}: {e}")
            if error is not e:
                error.__cause__ = e
            logger.error(f"Frame on slot {slot.index} failed: {error}")
            pending.result.set_exception(error)
        finally:
            try:
                on_complete()
            finally:
                slot.transition(SlotState.IDLE)

    async def await_result(self, pending: PendingSubmission, timeout: Optional[float] = None) -> np.ndarray:
        """
        Waits for the frame's result. On timeout the frame keeps running and
        its slot is released when the device finishes.
        """
        try:
            return await asyncio.wait_for(asyncio.shield(pending.result.wait()), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Frame on slot {pending.slot_index} not read back within {timeout}s")
            raise Timeout(f"Readback of slot {pending.slot_index} exceeded {timeout}s") from None
