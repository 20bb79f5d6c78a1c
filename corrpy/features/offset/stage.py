import os
import struct
from typing import List

import numpy as np
import wgpu  # type: ignore

from corrpy.domain.interfaces import BindingSpec, StageDefinition
from corrpy.domain.models import ImageDescriptor, StageKind
from corrpy.features.offset.models import OffsetParams, normalize_offset_params


def pack_offset_uniforms(descriptor: ImageDescriptor, params: OffsetParams) -> List[bytes]:
    return [struct.pack("<4I", descriptor.width, descriptor.height, descriptor.row_words, params.effective_offset)]


OFFSET_STAGE = StageDefinition(
    kind=StageKind.OFFSET,
    label="offset-correction",
    shader=os.path.join("features", "offset", "shaders", "offset.wgsl"),
    bindings=(
        BindingSpec(0, "reference", wgpu.BufferBindingType.read_only_storage),
        BindingSpec(1, "working", wgpu.BufferBindingType.storage),
        BindingSpec(2, "uniform", wgpu.BufferBindingType.uniform),
    ),
    reference_dtype=np.uint16,
    normalize_params=normalize_offset_params,
    pack_uniforms=pack_offset_uniforms,
    pack_extras=lambda params: {},
)
