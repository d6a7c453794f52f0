from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class OutputFormat(str, Enum):
    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"


class OutputSpec(BaseModel):
    """Resolved output encoding for a processed image."""
    model_config = ConfigDict(frozen=True)

    format: OutputFormat
    mime_type: str
    quality: float = Field(..., gt=0.0, le=1.0, description="Encoder quality, 0..1")
    extension: str
    pil_format: str

    @property
    def encoder_quality(self) -> int:
        """Quality on Pillow's 1..100 scale."""
        return max(1, min(100, round(self.quality * 100)))

    @property
    def is_lossless(self) -> bool:
        return self.format == OutputFormat.PNG or self.quality >= 1.0
