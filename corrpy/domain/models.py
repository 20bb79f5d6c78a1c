from dataclasses import dataclass
from enum import IntEnum, StrEnum

from corrpy.domain.errors import InvalidImageData


class StageKind(IntEnum):
    """
    Correction stage kinds. The value is the fixed application order:
    dark removal precedes gain normalization, both precede defect
    interpolation (which estimates from already-corrected neighbours).
    """

    OFFSET = 0
    GAIN = 1
    DEFECT = 2

    @property
    def label(self) -> str:
        return self.name.lower()


class SlotState(StrEnum):
    IDLE = "idle"
    UPLOADING = "uploading"
    DISPATCHED = "dispatched"
    READING_BACK = "reading_back"


SLOT_TRANSITIONS = {
    SlotState.IDLE: (SlotState.UPLOADING,),
    SlotState.UPLOADING: (SlotState.DISPATCHED, SlotState.IDLE),
    SlotState.DISPATCHED: (SlotState.READING_BACK, SlotState.IDLE),
    SlotState.READING_BACK: (SlotState.IDLE,),
}


@dataclass(frozen=True)
class ImageDescriptor:
    """
    Geometry shared by every buffer of a pipeline.

    16-bit pixels live on the GPU as packed u32 words (two pixels per word),
    with rows padded to an even width so each row starts on a word boundary.
    """

    width: int
    height: int
    element_size: int = 2

    def __post_init__(self) -> None:
        for name in ("width", "height", "element_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidImageData(f"{name} must be a positive integer, got {value!r}")

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def byte_size(self) -> int:
        return self.width * self.height * self.element_size

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def padded_width(self) -> int:
        return self.width + (self.width & 1)

    @property
    def row_words(self) -> int:
        return self.padded_width // 2

    def padded_byte_size(self, element_size: int | None = None) -> int:
        """Device-side size of a full-frame buffer with `element_size` bytes per pixel."""
        size = self.element_size if element_size is None else element_size
        return self.padded_width * self.height * size
