"""
In-memory stand-in for the parts of wgpu the engine touches.

Buffers are bytearrays; queue submission replays recorded copies and
executes compute passes through the numba reference kernels, decoding the
same packed layout and uniform blocks the WGSL kernels read.
"""

import asyncio
import struct
import threading
from typing import Any, Dict, List, Optional

import numpy as np

from corrpy.domain.models import ImageDescriptor
from corrpy.domain.types import PowerPreference
from corrpy.features.defect.logic import interpolate_pass
from corrpy.features.gain.logic import apply_gain
from corrpy.features.offset.logic import apply_offset
from corrpy.infrastructure.gpu.device import GPUContext
from corrpy.kernel.image.logic import from_device_bytes, to_device_bytes


class FakeBuffer:
    def __init__(self, device: "FakeDevice", size: int, usage: int, label: str = "") -> None:
        self.device = device
        self.size = size
        self.usage = usage
        self.label = label
        self.data = bytearray(size)
        self.destroyed = False
        self.mapped = False

    async def map_async(self, mode: int, offset: int = 0, size: Optional[int] = None) -> None:
        self.device.map_calls += 1
        while not self.device.map_gate.is_set():
            await asyncio.sleep(0.001)
        if self.device.fail_maps:
            raise RuntimeError(f"map of '{self.label}' rejected")
        if self.destroyed:
            raise RuntimeError(f"map of destroyed buffer '{self.label}'")
        self.mapped = True

    def read_mapped(self) -> memoryview:
        if not self.mapped:
            raise RuntimeError(f"'{self.label}' is not mapped")
        return memoryview(bytes(self.data))

    def unmap(self) -> None:
        self.mapped = False

    def destroy(self) -> None:
        self.destroyed = True


class FakeQueue:
    def __init__(self, device: "FakeDevice") -> None:
        self.device = device
        self.submissions = 0

    def write_buffer(self, buffer: FakeBuffer, offset: int, data: Any) -> None:
        payload = bytes(data)
        buffer.data[offset : offset + len(payload)] = payload

    def submit(self, command_buffers: List["FakeCommandBuffer"]) -> None:
        if self.device.fail_submits:
            raise RuntimeError("queue submission rejected")
        self.submissions += 1
        for cb in command_buffers:
            for op in cb.ops:
                op()


class FakeComputePass:
    def __init__(self, encoder: "FakeCommandEncoder") -> None:
        self.encoder = encoder
        self.pipeline: Any = None
        self.bind_group: Any = None

    def set_pipeline(self, pipeline: Any) -> None:
        self.pipeline = pipeline

    def set_bind_group(self, index: int, bind_group: Any) -> None:
        self.bind_group = bind_group

    def dispatch_workgroups(self, x: int, y: int = 1, z: int = 1) -> None:
        pipeline, bind_group = self.pipeline, self.bind_group
        self.encoder.device.dispatches.append((pipeline.label, x, y))
        self.encoder.ops.append(lambda: execute_pipeline(pipeline.label, bind_group, x, y))

    def end(self) -> None:
        pass


class FakeCommandBuffer:
    def __init__(self, ops: List[Any]) -> None:
        self.ops = ops


class FakeCommandEncoder:
    def __init__(self, device: "FakeDevice") -> None:
        self.device = device
        self.ops: List[Any] = []

    def copy_buffer_to_buffer(self, src: FakeBuffer, src_offset: int, dst: FakeBuffer, dst_offset: int, size: int) -> None:
        def op() -> None:
            dst.data[dst_offset : dst_offset + size] = src.data[src_offset : src_offset + size]

        self.ops.append(op)

    def begin_compute_pass(self, **kwargs: Any) -> FakeComputePass:
        return FakeComputePass(self)

    def finish(self) -> FakeCommandBuffer:
        return FakeCommandBuffer(self.ops)


class FakeObject:
    def __init__(self, **kwargs: Any) -> None:
        self.__dict__.update(kwargs)


class FakeDevice:
    def __init__(self) -> None:
        self.queue = FakeQueue(self)
        self.buffers: List[FakeBuffer] = []
        self.dispatches: List[Any] = []
        self.shader_modules: List[Any] = []
        self.pipelines: List[Any] = []
        self.map_gate = threading.Event()
        self.map_gate.set()
        self.map_calls = 0
        self.fail_maps = False
        self.fail_submits = False
        self.fail_shaders = False
        self.destroyed = False
        self.limits: Dict[str, int] = {"max-storage-buffer-binding-size": 1 << 30}

    def create_buffer(self, size: int, usage: int, label: str = "", **kwargs: Any) -> FakeBuffer:
        buf = FakeBuffer(self, size, usage, label)
        self.buffers.append(buf)
        return buf

    def create_shader_module(self, label: str = "", code: str = "", **kwargs: Any) -> Any:
        if self.fail_shaders:
            raise RuntimeError(f"WGSL compilation failed for {label}")
        module = FakeObject(label=label, code=code)
        self.shader_modules.append(module)
        return module

    def create_bind_group_layout(self, label: str = "", entries: Any = (), **kwargs: Any) -> Any:
        return FakeObject(label=label, entries=list(entries))

    def create_pipeline_layout(self, label: str = "", bind_group_layouts: Any = (), **kwargs: Any) -> Any:
        return FakeObject(label=label, bind_group_layouts=list(bind_group_layouts))

    def create_compute_pipeline(self, label: str = "", layout: Any = None, compute: Any = None, **kwargs: Any) -> Any:
        pipeline = FakeObject(label=label, layout=layout, compute=compute)
        self.pipelines.append(pipeline)
        return pipeline

    def create_bind_group(self, label: str = "", layout: Any = None, entries: Any = (), **kwargs: Any) -> Any:
        return FakeObject(label=label, layout=layout, entries={e["binding"]: e["resource"]["buffer"] for e in entries})

    def create_command_encoder(self, **kwargs: Any) -> FakeCommandEncoder:
        return FakeCommandEncoder(self)

    def destroy(self) -> None:
        self.destroyed = True

    def live_buffers(self) -> List[FakeBuffer]:
        return [b for b in self.buffers if not b.destroyed]


class FakeAdapter:
    def __init__(self, adapter_type: str = "DiscreteGPU", description: str = "Fake GPU", features: Any = ()) -> None:
        self.info = {"adapter_type": adapter_type, "description": description, "backend_type": "Fake"}
        self.features = set(features)
        self.limits = {"max-storage-buffer-binding-size": 1 << 30, "max-buffer-size": 1 << 31, "max-bind-groups": 4}
        self.device_requests: List[Dict[str, Any]] = []
        self.device = FakeDevice()

    def request_device_sync(self, **kwargs: Any) -> FakeDevice:
        self.device_requests.append(kwargs)
        return self.device


class FakeGPU:
    def __init__(self, adapters: List[FakeAdapter]) -> None:
        self.adapters = adapters

    def enumerate_adapters_sync(self) -> List[FakeAdapter]:
        return list(self.adapters)


def _descriptor(uniform: FakeBuffer) -> ImageDescriptor:
    width, height = struct.unpack_from("<2I", uniform.data, 0)
    return ImageDescriptor(width, height)


def _plane(buf: FakeBuffer, desc: ImageDescriptor, dtype: Any = np.uint16) -> np.ndarray:
    return from_device_bytes(bytes(buf.data[: desc.padded_byte_size(np.dtype(dtype).itemsize)]), desc, np.dtype(dtype))


def _store(buf: FakeBuffer, plane: np.ndarray, desc: ImageDescriptor) -> None:
    payload = to_device_bytes(plane, desc)
    buf.data[: len(payload)] = payload


def _covers(desc: ImageDescriptor, gx: int, gy: int) -> None:
    if gx * 16 < desc.width or gy * 16 < desc.height:
        raise AssertionError(f"dispatch {gx}x{gy} does not cover {desc.width}x{desc.height}")


def execute_pipeline(label: str, bind_group: Any, gx: int, gy: int) -> None:
    b = bind_group.entries
    if label == "offset-correction":
        desc = _descriptor(b[2])
        _covers(desc, gx, gy)
        offset = struct.unpack_from("<4I", b[2].data, 0)[3]
        _store(b[1], apply_offset(_plane(b[1], desc), _plane(b[0], desc), offset), desc)
    elif label == "gain-correction":
        desc = _descriptor(b[2])
        _covers(desc, gx, gy)
        _store(b[1], apply_gain(_plane(b[1], desc), _plane(b[0], desc, np.float32)), desc)
    elif label == "defect-correction":
        desc = _descriptor(b[4])
        _covers(desc, gx, gy)
        _, _, _, radius, direction, separable, _, _ = struct.unpack_from("<8I", b[4].data, 0)
        side = 2 * radius + 1
        count = side if separable else side * side
        weights = np.frombuffer(bytes(b[3].data[: count * 4]), dtype="<f4")
        result = interpolate_pass(_plane(b[1], desc), _plane(b[0], desc), weights, radius, bool(separable), direction)
        _store(b[2], result, desc)
    else:
        raise AssertionError(f"unknown pipeline {label}")


def make_context(adapter: Optional[FakeAdapter] = None) -> GPUContext:
    adapter = adapter or FakeAdapter()
    return GPUContext(
        adapter=adapter,
        device=adapter.request_device_sync(),
        power_preference=PowerPreference.HIGH_PERFORMANCE,
        info=dict(adapter.info),
    )


def make_engine(width: int, height: int, frame_slot_count: int = 4, readback_timeout: Optional[float] = 5.0) -> Any:
    from corrpy.services.rendering.gpu_engine import CorrectionEngine

    return CorrectionEngine(make_context(), ImageDescriptor(width, height), frame_slot_count, readback_timeout)
