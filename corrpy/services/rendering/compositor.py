import math
from dataclasses import dataclass, field
from typing import Any, List, Sequence, Tuple

from corrpy.domain.models import ImageDescriptor
from corrpy.infrastructure.gpu.resources import FrameBuffers
from corrpy.kernel.image.logic import to_device_bytes
from corrpy.kernel.system.logging import get_logger
from corrpy.services.rendering.stage_registry import CorrectionStageRegistry, StageResources

logger = get_logger(__name__)


def dispatch_size(width: int, height: int, workgroup: Tuple[int, int] = (16, 16)) -> Tuple[int, int]:
    """Workgroup grid covering the full image, last partial tile included."""
    return math.ceil(width / workgroup[0]), math.ceil(height / workgroup[1])


@dataclass
class FrameCommands:
    command_buffer: Any
    slot_index: int
    dispatches: List[Tuple[str, int, int]] = field(default_factory=list)


class PipelineCompositor:
    """
    Records one frame as a single command buffer:
    staging -> working, one compute pass per enabled stage pass, working -> readback.
    Passes that read neighbours first copy working into the registry's
    shared snapshot buffer.
    """

    def __init__(self, registry: CorrectionStageRegistry, descriptor: ImageDescriptor) -> None:
        self.registry = registry
        self.descriptor = descriptor

    @property
    def device(self) -> Any:
        return self.registry.device

    def build_frame_commands(self, slot_index: int, buffers: FrameBuffers, image: Any, stages: Sequence[StageResources]) -> FrameCommands:
        """
        `image` must already be validated. The upload goes through the queue,
        so it lands before the returned command buffer executes.
        With no stages the frame is a pass-through copy.
        """
        size = self.descriptor.padded_byte_size()
        buffers.staging.upload(to_device_bytes(image, self.descriptor))

        encoder = self.device.create_command_encoder(label=f"frame.slot{slot_index}")
        encoder.copy_buffer_to_buffer(buffers.staging.buffer, 0, buffers.working.buffer, 0, size)

        dispatches: List[Tuple[str, int, int]] = []
        snapshot = self.registry.snapshot_buffer
        for stage in stages:
            pipeline = self.registry.pipeline_for(stage.kind).pipeline
            gx, gy = dispatch_size(self.descriptor.width, self.descriptor.height, stage.definition.workgroup)
            for pass_index in range(stage.passes):
                if stage.definition.reads_snapshot and snapshot is not None:
                    encoder.copy_buffer_to_buffer(buffers.working.buffer, 0, snapshot.buffer, 0, size)
                bind_group = self.registry.create_bind_group(stage, buffers, pass_index)
                compute_pass = encoder.begin_compute_pass(label=f"{stage.definition.label}.pass{pass_index}")
                compute_pass.set_pipeline(pipeline)
                compute_pass.set_bind_group(0, bind_group)
                compute_pass.dispatch_workgroups(gx, gy)
                compute_pass.end()
                dispatches.append((stage.definition.label, gx, gy))

        encoder.copy_buffer_to_buffer(buffers.working.buffer, 0, buffers.readback.buffer, 0, size)
        return FrameCommands(command_buffer=encoder.finish(), slot_index=slot_index, dispatches=dispatches)
