from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


class ImageFormat(Enum):
    JPEG = "image/jpeg"
    WEBP = "image/webp"

    @property
    def mime_type(self) -> str:
        return self.value

    @property
    def pillow_format(self) -> str:
        """Format name as understood by ``PIL.Image.save``."""
        return self.name


class PresetName(Enum):
    UPLOAD = "upload"
    AI = "ai"


@dataclass(frozen=True)
class CompressionPreset:
    """
    A fixed combination of bounding box, quality and output format.

    ``quality`` is expressed in ``(0, 1]`` and mapped onto the codec's own
    scale when encoding.
    """

    name: PresetName
    max_width: int
    max_height: int
    quality: float
    target_format: ImageFormat = ImageFormat.JPEG

    def __post_init__(self):
        if self.max_width <= 0 or self.max_height <= 0:
            raise ValueError(
                f"Preset bounds must be positive, got {self.max_width}x{self.max_height}"
            )
        if not 0 < self.quality <= 1:
            raise ValueError(f"Preset quality must be in (0, 1], got {self.quality}")

    @property
    def codec_quality(self) -> int:
        """Quality on Pillow's 1-100 scale."""
        return max(1, min(100, round(self.quality * 100)))


# Archived and displayed asset: favour fidelity
UPLOAD_PRESET = CompressionPreset(
    name=PresetName.UPLOAD,
    max_width=1920,
    max_height=1920,
    quality=0.8,
    target_format=ImageFormat.JPEG,
)

# Captioning request: favour payload size and round-trip time
AI_PRESET = CompressionPreset(
    name=PresetName.AI,
    max_width=1280,
    max_height=1280,
    quality=0.7,
    target_format=ImageFormat.JPEG,
)

PRESETS = MappingProxyType(
    {
        PresetName.UPLOAD: UPLOAD_PRESET,
        PresetName.AI: AI_PRESET,
    }
)


def get_preset(name: PresetName | str) -> CompressionPreset:
    return PRESETS[PresetName(name)]
