from corrpy.domain.types import ImageBuffer
from corrpy.features.offset.logic import apply_offset
from corrpy.features.offset.models import OffsetParams


class OffsetProcessor:
    def __init__(self, dark_map: ImageBuffer, params: OffsetParams):
        self.dark_map = dark_map
        self.params = params

    def process(self, image: ImageBuffer) -> ImageBuffer:
        return apply_offset(image, self.dark_map, self.params.effective_offset)
