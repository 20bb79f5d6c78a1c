import os
import struct
from typing import Dict, List

import numpy as np
import wgpu  # type: ignore

from corrpy.domain.interfaces import BindingSpec, StageDefinition
from corrpy.domain.models import ImageDescriptor, StageKind
from corrpy.features.defect.models import DefectParams, normalize_defect_params

DIRECTION_HORIZONTAL = 0
DIRECTION_VERTICAL = 1


def pack_defect_uniforms(descriptor: ImageDescriptor, params: DefectParams) -> List[bytes]:
    """
    One parameter block per pass: a single 2-D pass, or an x pass then a y
    pass sharing the layout with only the direction flag toggled.
    """
    directions = (DIRECTION_HORIZONTAL, DIRECTION_VERTICAL) if params.separable else (DIRECTION_HORIZONTAL,)
    return [
        struct.pack(
            "<8I",
            descriptor.width,
            descriptor.height,
            descriptor.row_words,
            params.radius,
            direction,
            int(params.separable),
            0,
            0,
        )
        for direction in directions
    ]


def pack_defect_extras(params: DefectParams) -> Dict[str, np.ndarray]:
    return {"weights": np.ascontiguousarray(params.weights_array().ravel(), dtype="<f4")}


DEFECT_STAGE = StageDefinition(
    kind=StageKind.DEFECT,
    label="defect-correction",
    shader=os.path.join("features", "defect", "shaders", "defect.wgsl"),
    bindings=(
        BindingSpec(0, "reference", wgpu.BufferBindingType.read_only_storage),
        BindingSpec(1, "snapshot", wgpu.BufferBindingType.read_only_storage),
        BindingSpec(2, "working", wgpu.BufferBindingType.storage),
        BindingSpec(3, "weights", wgpu.BufferBindingType.read_only_storage),
        BindingSpec(4, "uniform", wgpu.BufferBindingType.uniform),
    ),
    reference_dtype=np.uint16,
    normalize_params=normalize_defect_params,
    pack_uniforms=pack_defect_uniforms,
    pack_extras=pack_defect_extras,
    reads_snapshot=True,
)
