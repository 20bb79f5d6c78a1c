from corrpy.domain.types import ImageBuffer
from corrpy.features.defect.logic import interpolate_defects
from corrpy.features.defect.models import DefectParams


class DefectProcessor:
    def __init__(self, defect_mask: ImageBuffer, params: DefectParams):
        self.defect_mask = defect_mask
        self.params = params

    def process(self, image: ImageBuffer) -> ImageBuffer:
        if not self.defect_mask.any():
            return image
        return interpolate_defects(image, self.defect_mask, self.params)
