import os
import struct
from typing import List

import numpy as np
import wgpu  # type: ignore

from corrpy.domain.interfaces import BindingSpec, StageDefinition
from corrpy.domain.models import ImageDescriptor, StageKind
from corrpy.features.gain.models import GainParams, normalize_gain_params


def pack_gain_uniforms(descriptor: ImageDescriptor, params: GainParams) -> List[bytes]:
    return [struct.pack("<4I", descriptor.width, descriptor.height, descriptor.row_words, 0)]


GAIN_STAGE = StageDefinition(
    kind=StageKind.GAIN,
    label="gain-correction",
    shader=os.path.join("features", "gain", "shaders", "gain.wgsl"),
    bindings=(
        BindingSpec(0, "reference", wgpu.BufferBindingType.read_only_storage),
        BindingSpec(1, "working", wgpu.BufferBindingType.storage),
        BindingSpec(2, "uniform", wgpu.BufferBindingType.uniform),
    ),
    reference_dtype=np.float32,
    normalize_params=normalize_gain_params,
    pack_uniforms=pack_gain_uniforms,
    pack_extras=lambda params: {},
)
