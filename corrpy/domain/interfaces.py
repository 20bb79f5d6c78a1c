from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np

from corrpy.domain.models import ImageDescriptor, StageKind
from corrpy.domain.types import ImageBuffer


@dataclass(frozen=True)
class BindingSpec:
    """
    One entry of a stage's bind group layout.
    `role` names the buffer bound at dispatch time:
      reference - the stage's reference map
      working   - the frame's shared working buffer (read-write)
      snapshot  - a read-only copy of the working buffer taken before the pass
      uniform   - the per-pass parameter block
      anything else - an extra buffer uploaded with the stage (e.g. "weights")
    """

    binding: int
    role: str
    buffer_type: str


@dataclass(frozen=True)
class StageDefinition:
    """
    Static description of a correction stage kind: its kernel, its binding
    layout and how its parameters become GPU data.
    """

    kind: StageKind
    label: str
    shader: str
    bindings: Tuple[BindingSpec, ...]
    reference_dtype: Any
    normalize_params: Callable[[Any], Any]
    pack_uniforms: Callable[[ImageDescriptor, Any], List[bytes]]
    pack_extras: Callable[[Any], Dict[str, np.ndarray]]
    reads_snapshot: bool = False
    workgroup: Tuple[int, int] = (16, 16)


class ICorrectionEngine(Protocol):
    """
    Surface shared by the GPU engine and the CPU reference engine.
    """

    descriptor: ImageDescriptor

    def enable_offset(self, dark_map: Any, offset_constant: int = 0) -> None: ...

    def enable_gain(self, gain_map: Any) -> None: ...

    def enable_defect(self, defect_mask: Any, kernel_weights: Optional[Any] = None, separable: bool = False) -> None: ...

    def disable(self, kind: StageKind) -> None: ...

    def stage_kinds(self) -> List[StageKind]: ...

    def process_image(self, image: Any, block: bool = False, timeout: Optional[float] = None) -> "Future[ImageBuffer]": ...

    def process_image_sync(self, image: Any, timeout: Optional[float] = None) -> ImageBuffer: ...

    def capacity(self) -> int: ...

    def destroy(self) -> None: ...
