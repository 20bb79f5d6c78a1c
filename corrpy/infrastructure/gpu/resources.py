from dataclasses import dataclass
from typing import Any, Union

import numpy as np
import wgpu  # type: ignore

from corrpy.domain.errors import BufferCreationError
from corrpy.domain.models import ImageDescriptor
from corrpy.infrastructure.gpu.device import GPUContext
from corrpy.kernel.image.logic import to_device_bytes
from corrpy.kernel.image.validation import ensure_reference_map
from corrpy.kernel.system.logging import get_logger

logger = get_logger(__name__)

COPY_ALIGNMENT = 4

STAGING_USAGE = wgpu.BufferUsage.COPY_SRC | wgpu.BufferUsage.COPY_DST
WORKING_USAGE = wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_SRC | wgpu.BufferUsage.COPY_DST
SNAPSHOT_USAGE = wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST
READBACK_USAGE = wgpu.BufferUsage.MAP_READ | wgpu.BufferUsage.COPY_DST
REFERENCE_USAGE = wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST
UNIFORM_USAGE = wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST


def aligned(size: int, alignment: int = COPY_ALIGNMENT) -> int:
    return (size + alignment - 1) // alignment * alignment


class GPUBuffer:
    """
    Owned device buffer with its byte size and label.
    """

    def __init__(self, context: GPUContext, size: int, usage: int, label: str = "") -> None:
        self._context = context
        self.size = aligned(size)
        self.usage = usage
        self.label = label
        try:
            self.buffer: Any = context.device.create_buffer(size=self.size, usage=usage, label=label)
        except Exception as e:
            raise BufferCreationError(f"Failed to allocate {self.size} bytes for '{label}': {e}") from e

    @property
    def is_destroyed(self) -> bool:
        return self.buffer is None

    def upload(self, data: Union[bytes, memoryview, np.ndarray], offset: int = 0) -> None:
        """Queue-ordered write; lands before any later submission on the same queue."""
        if self.buffer is None:
            raise RuntimeError(f"Upload to destroyed buffer '{self.label}'")
        payload = data.tobytes() if isinstance(data, np.ndarray) else bytes(data)
        if offset + len(payload) > self.size:
            raise ValueError(f"Upload of {len(payload)} bytes at {offset} overflows '{self.label}' ({self.size} bytes)")
        if len(payload) % COPY_ALIGNMENT:
            payload += b"\x00" * (COPY_ALIGNMENT - len(payload) % COPY_ALIGNMENT)
        self._context.queue.write_buffer(self.buffer, offset, payload)

    def destroy(self) -> None:
        if self.buffer is not None:
            self.buffer.destroy()
            self.buffer = None


@dataclass
class FrameBuffers:
    """
    Per-slot buffers: host upload, in-place working copy, mappable readback.
    """

    staging: GPUBuffer
    working: GPUBuffer
    readback: GPUBuffer

    def destroy(self) -> None:
        for buf in (self.staging, self.working, self.readback):
            buf.destroy()


class ResourceAllocator:
    """
    Sizes every buffer from the pipeline's ImageDescriptor. Host-side checks
    run before any allocation is requested from the device.
    """

    def __init__(self, context: GPUContext, descriptor: ImageDescriptor) -> None:
        self.context = context
        self.descriptor = descriptor

    @property
    def frame_bytes(self) -> int:
        return self.descriptor.padded_byte_size()

    def allocate_frame(self, index: int) -> FrameBuffers:
        size = self.frame_bytes
        buffers = []
        try:
            for name, usage in (
                ("staging", STAGING_USAGE),
                ("working", WORKING_USAGE),
                ("readback", READBACK_USAGE),
            ):
                buffers.append(GPUBuffer(self.context, size, usage, label=f"slot{index}.{name}"))
        except Exception:
            for buf in buffers:
                buf.destroy()
            raise
        return FrameBuffers(*buffers)

    def allocate_snapshot(self) -> GPUBuffer:
        """
        Read-only copy of a working buffer for kernels that read neighbours
        while writing in place. Frames execute in submission order on the
        one queue, so every slot can share it.
        """
        return GPUBuffer(self.context, self.frame_bytes, SNAPSHOT_USAGE, label="frame.snapshot")

    def upload(self, reference_data: Any, dtype: Any, label: str) -> GPUBuffer:
        """
        Validates a full-frame reference map and uploads it row-padded.
        Called once per stage enable, never per frame.
        """
        plane = ensure_reference_map(reference_data, self.descriptor, dtype, name=label)
        payload = to_device_bytes(plane, self.descriptor)
        buf = GPUBuffer(self.context, len(payload), REFERENCE_USAGE, label=label)
        try:
            buf.upload(payload)
        except Exception:
            buf.destroy()
            raise
        logger.debug(f"Uploaded {label}: {len(payload)} bytes")
        return buf

    def upload_array(self, data: np.ndarray, label: str) -> GPUBuffer:
        """Small auxiliary storage buffer (e.g. kernel weights)."""
        payload = np.ascontiguousarray(data).tobytes()
        buf = GPUBuffer(self.context, max(len(payload), COPY_ALIGNMENT), REFERENCE_USAGE, label=label)
        buf.upload(payload)
        return buf

    def upload_uniform(self, data: bytes, label: str) -> GPUBuffer:
        buf = GPUBuffer(self.context, aligned(len(data), 16), UNIFORM_USAGE, label=label)
        buf.upload(data)
        return buf
