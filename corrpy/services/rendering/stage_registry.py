import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import wgpu  # type: ignore

from corrpy.domain.errors import InvalidHandle, ShaderCreationError
from corrpy.domain.interfaces import StageDefinition
from corrpy.domain.models import StageKind
from corrpy.features.defect.stage import DEFECT_STAGE
from corrpy.features.gain.stage import GAIN_STAGE
from corrpy.features.offset.stage import OFFSET_STAGE
from corrpy.infrastructure.gpu.resources import FrameBuffers, GPUBuffer, ResourceAllocator
from corrpy.infrastructure.gpu.shader_loader import ShaderLoader
from corrpy.kernel.image.validation import ensure_reference_map
from corrpy.kernel.system.logging import get_logger
from corrpy.kernel.system.rwlock import ReadWriteLock

logger = get_logger(__name__)

STAGE_DEFINITIONS: Dict[StageKind, StageDefinition] = {
    StageKind.OFFSET: OFFSET_STAGE,
    StageKind.GAIN: GAIN_STAGE,
    StageKind.DEFECT: DEFECT_STAGE,
}


class StageResources:
    """
    GPU-resident state of one enabled stage: reference map, extra buffers
    and one uniform block per pass. Immutable once built.

    Frames hold a reference while in flight. A retired stage (replaced or
    disabled) is destroyed when its last frame releases it.
    """

    def __init__(
        self,
        definition: StageDefinition,
        params: Any,
        reference: GPUBuffer,
        extras: Dict[str, GPUBuffer],
        uniforms: List[GPUBuffer],
    ) -> None:
        self.definition = definition
        self.params = params
        self.reference = reference
        self.extras = extras
        self.uniforms = uniforms
        self._refs = 0
        self._retired = False
        self._destroyed = False
        self._guard = threading.Lock()

    @property
    def kind(self) -> StageKind:
        return self.definition.kind

    @property
    def passes(self) -> int:
        return len(self.uniforms)

    @property
    def in_flight(self) -> int:
        return self._refs

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def acquire(self) -> "StageResources":
        with self._guard:
            if self._destroyed:
                raise RuntimeError(f"{self.definition.label}: stage already destroyed")
            self._refs += 1
        return self

    def release(self) -> None:
        with self._guard:
            if self._refs <= 0:
                raise RuntimeError(f"{self.definition.label}: release() without acquire()")
            self._refs -= 1
            ready = self._retired and self._refs == 0
        if ready:
            self._destroy()

    def retire(self) -> None:
        with self._guard:
            self._retired = True
            ready = self._refs == 0
        if ready:
            self._destroy()
        else:
            logger.debug(f"{self.definition.label}: retired with {self._refs} frame(s) in flight, destruction deferred")

    def _destroy(self) -> None:
        with self._guard:
            if self._destroyed:
                return
            self._destroyed = True
        self.reference.destroy()
        for buf in self.extras.values():
            buf.destroy()
        for buf in self.uniforms:
            buf.destroy()
        logger.debug(f"{self.definition.label}: GPU resources released")


@dataclass(frozen=True)
class StagePipeline:
    pipeline: Any
    layout: Any


class CorrectionStageRegistry:
    """
    Enabled stages keyed by kind, plus the compute pipeline of each kind.

    Enabling validates on the host first, uploads outside the lock, then
    swaps the new stage in under the write lock so a frame being composed
    never sees a half-built stage. Pipelines are compiled lazily and kept
    for the registry's lifetime.
    """

    def __init__(self, allocator: ResourceAllocator, lock: ReadWriteLock, shader_loader: Optional[ShaderLoader] = None) -> None:
        self.allocator = allocator
        self.lock = lock
        self.shader_loader = shader_loader or ShaderLoader(allocator.context.device)
        self._stages: Dict[StageKind, StageResources] = {}
        self._pipelines: Dict[StageKind, StagePipeline] = {}
        self._pipeline_guard = threading.Lock()
        self._snapshot: Optional[GPUBuffer] = None
        self._closed = False

    @property
    def device(self) -> Any:
        return self.allocator.context.device

    @property
    def snapshot_buffer(self) -> Optional[GPUBuffer]:
        """Shared neighbour-read copy; None until a stage that needs it is enabled."""
        return self._snapshot

    @property
    def is_closed(self) -> bool:
        return self._closed

    def pipeline_for(self, kind: StageKind) -> StagePipeline:
        with self._pipeline_guard:
            cached = self._pipelines.get(kind)
            if cached is not None:
                return cached
            definition = STAGE_DEFINITIONS[kind]
            module = self.shader_loader.load(definition.shader)
            try:
                layout = self.device.create_bind_group_layout(
                    label=f"{definition.label}.layout",
                    entries=[
                        {
                            "binding": spec.binding,
                            "visibility": wgpu.ShaderStage.COMPUTE,
                            "buffer": {"type": spec.buffer_type},
                        }
                        for spec in definition.bindings
                    ],
                )
                pipeline_layout = self.device.create_pipeline_layout(
                    label=f"{definition.label}.pipeline_layout",
                    bind_group_layouts=[layout],
                )
                pipeline = self.device.create_compute_pipeline(
                    label=definition.label,
                    layout=pipeline_layout,
                    compute={"module": module, "entry_point": "main"},
                )
            except Exception as e:
                raise ShaderCreationError(f"Failed to build pipeline for {definition.label}: {e}") from e
            built = StagePipeline(pipeline=pipeline, layout=layout)
            self._pipelines[kind] = built
            logger.info(f"Built compute pipeline: {definition.label}")
            return built

    def _ensure_snapshot(self) -> GPUBuffer:
        with self._pipeline_guard:
            self._check_open()
            if self._snapshot is None:
                self._snapshot = self.allocator.allocate_snapshot()
                logger.debug(f"Allocated shared snapshot buffer: {self._snapshot.size} bytes")
            return self._snapshot

    def _build(self, kind: StageKind, reference_map: Any, params: Any) -> StageResources:
        definition = STAGE_DEFINITIONS[kind]
        owned: List[GPUBuffer] = []
        try:
            reference = self.allocator.upload(reference_map, definition.reference_dtype, label=f"{kind.label}.reference")
            owned.append(reference)
            extras: Dict[str, GPUBuffer] = {}
            for name, data in definition.pack_extras(params).items():
                extras[name] = self.allocator.upload_array(data, label=f"{kind.label}.{name}")
                owned.append(extras[name])
            uniforms: List[GPUBuffer] = []
            for i, block in enumerate(definition.pack_uniforms(self.allocator.descriptor, params)):
                uniforms.append(self.allocator.upload_uniform(block, label=f"{kind.label}.params{i}"))
                owned.append(uniforms[-1])
        except Exception:
            for buf in owned:
                buf.destroy()
            raise
        return StageResources(definition, params, reference, extras, uniforms)

    def _check_open(self) -> None:
        if self._closed:
            raise InvalidHandle("Stage registry has been destroyed")

    def enable(self, kind: StageKind, reference_map: Any, params: Any = None) -> StageResources:
        """
        Validates and uploads a stage, then atomically replaces any stage of
        the same kind. The replaced stage lives on until its frames complete.
        Invalid parameters or maps are rejected before any device call.
        """
        kind = StageKind(kind)
        self._check_open()
        definition = STAGE_DEFINITIONS[kind]
        params = definition.normalize_params(params)
        plane = ensure_reference_map(reference_map, self.allocator.descriptor, definition.reference_dtype, name=f"{kind.label}.reference")

        self.pipeline_for(kind)
        if definition.reads_snapshot:
            self._ensure_snapshot()
        stage = self._build(kind, plane, params)
        with self.lock.write_locked():
            closed = self._closed
            previous = None if closed else self._stages.get(kind)
            if not closed:
                self._stages[kind] = stage
        if closed:
            stage.retire()
            raise InvalidHandle("Stage registry was destroyed while enabling a stage")
        if previous is not None:
            previous.retire()
            logger.info(f"Replaced {kind.label} stage")
        else:
            logger.info(f"Enabled {kind.label} stage")
        return stage

    def disable(self, kind: StageKind) -> bool:
        kind = StageKind(kind)
        with self.lock.write_locked():
            previous = self._stages.pop(kind, None)
        if previous is None:
            return False
        previous.retire()
        logger.info(f"Disabled {kind.label} stage")
        return True

    def snapshot(self) -> List[StageResources]:
        """
        Enabled stages in application order, each acquired for one frame.
        The caller must release every returned stage.
        """
        with self.lock.read_locked():
            return [self._stages[kind].acquire() for kind in sorted(self._stages)]

    def stage_kinds(self) -> List[StageKind]:
        with self.lock.read_locked():
            return sorted(self._stages)

    def create_bind_group(self, stage: StageResources, buffers: FrameBuffers, pass_index: int = 0) -> Any:
        """Bind group for one pass of `stage` over one frame slot's buffers."""
        layout = self.pipeline_for(stage.kind).layout
        entries = []
        for spec in stage.definition.bindings:
            if spec.role == "reference":
                buf = stage.reference
            elif spec.role == "working":
                buf = buffers.working
            elif spec.role == "snapshot":
                if self._snapshot is None:
                    raise RuntimeError(f"{stage.definition.label}: no snapshot buffer allocated")
                buf = self._snapshot
            elif spec.role == "uniform":
                buf = stage.uniforms[pass_index]
            else:
                buf = stage.extras[spec.role]
            entries.append({"binding": spec.binding, "resource": {"buffer": buf.buffer, "offset": 0, "size": buf.size}})
        return self.device.create_bind_group(
            label=f"{stage.definition.label}.pass{pass_index}",
            layout=layout,
            entries=entries,
        )

    def destroy(self) -> None:
        """
        Retires every stage and closes the registry. Later enables raise
        InvalidHandle.
        """
        with self.lock.write_locked():
            self._closed = True
            stages = list(self._stages.values())
            self._stages.clear()
        for stage in stages:
            stage.retire()
        with self._pipeline_guard:
            self._pipelines.clear()
            if self._snapshot is not None:
                self._snapshot.destroy()
                self._snapshot = None
