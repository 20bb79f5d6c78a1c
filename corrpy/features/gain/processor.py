from corrpy.domain.types import ImageBuffer
from corrpy.features.gain.logic import apply_gain


class GainProcessor:
    def __init__(self, gain_map: ImageBuffer):
        self.gain_map = gain_map

    def process(self, image: ImageBuffer) -> ImageBuffer:
        return apply_gain(image, self.gain_map)
