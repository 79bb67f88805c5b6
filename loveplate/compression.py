"""
Resize and re-encode photos before they leave the uploader.

Every selected photo is compressed twice, once per preset: a small copy for
the captioning call and a larger one for durable storage. The two artifacts
are computed independently and are never interchangeable.
"""

import asyncio
import base64
import io
import logging
import re
import uuid
from dataclasses import dataclass, field

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from loveplate.errors import DecodeError, EncodeError
from loveplate.presets import CompressionPreset, ImageFormat, PresetName

register_heif_opener()

log = logging.getLogger(__name__)

DATA_URI_PREFIX = re.compile(r"^data:[\w/+.-]+;base64,")

# flattening colour for sources with an alpha channel
BACKGROUND = (255, 255, 255)


@dataclass(frozen=True, eq=False)
class SourceImage:
    """The untouched bytes of a photo the user picked."""

    data: bytes
    mime_type: str | None = None
    filename: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class EncodedArtifact:
    """One preset applied to one source: raw base64 payload plus bookkeeping."""

    base64: str
    estimated_bytes: int
    width: int
    height: int
    source_width: int
    source_height: int
    preset: PresetName
    format: ImageFormat

    @property
    def mime_type(self) -> str:
        return self.format.mime_type

    @property
    def human_size(self) -> str:
        return format_human_size(self.estimated_bytes)


def estimate_decoded_size(b64: str) -> int:
    """Bytes represented by a base64 payload (no data-URI header)."""
    padding = len(b64) - len(b64.rstrip("="))
    return max(0, (len(b64) * 3) // 4 - min(padding, 2))


def format_human_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"


def strip_data_uri(text: str) -> str:
    """Drop a ``data:<mime>;base64,`` header if one is present."""
    return DATA_URI_PREFIX.sub("", text, count=1)


def fit_box(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """
    Target size for ``width`` x ``height`` inside a ``max_width`` x
    ``max_height`` box.

    Images already inside the box keep their size. Otherwise the wider side
    (width on ties) is clamped to its bound and the other side follows the
    aspect ratio.
    """
    if width <= 0 or height <= 0:
        raise DecodeError(f"Image has no pixels ({width}x{height})")

    if width <= max_width and height <= max_height:
        return width, height

    aspect = width / height
    if width >= height:
        target_w = max_width
        target_h = target_w / aspect
    else:
        target_h = max_height
        target_w = target_h * aspect

    return max(1, round(target_w)), max(1, round(target_h))


def fit_within(width: int, height: int, preset: CompressionPreset) -> tuple[int, int]:
    """Target size for ``width`` x ``height`` inside the preset's bounding box."""
    return fit_box(width, height, preset.max_width, preset.max_height)


def decode_image(data: bytes) -> Image.Image:
    """Decode bytes into an upright, fully loaded Pillow image."""
    if not data:
        raise DecodeError("Image is empty")

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
        img = ImageOps.exif_transpose(img)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise DecodeError(f"Could not decode image: {e}") from e
    except Image.DecompressionBombError as e:
        raise DecodeError(f"Image is too large to decode: {e}") from e

    return img


def to_rgb(img: Image.Image) -> Image.Image:
    if img.mode == "RGB":
        return img
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        flattened = Image.new("RGB", rgba.size, BACKGROUND)
        flattened.paste(rgba, mask=rgba.getchannel("A"))
        return flattened
    return img.convert("RGB")


def encode_image(img: Image.Image, preset: CompressionPreset) -> bytes:
    buf = io.BytesIO()
    try:
        img.save(
            buf,
            format=preset.target_format.pillow_format,
            quality=preset.codec_quality,
        )
    except (KeyError, ValueError, OSError) as e:
        raise EncodeError(
            f"Could not encode {preset.target_format.name} at quality {preset.quality}: {e}"
        ) from e
    return buf.getvalue()


def compress_sync(source: SourceImage, preset: CompressionPreset) -> EncodedArtifact:
    img = decode_image(source.data)
    source_width, source_height = img.size
    width, height = fit_within(source_width, source_height, preset)

    img = to_rgb(img)
    if (width, height) != img.size:
        img = img.resize((width, height), Image.Resampling.LANCZOS)

    encoded = encode_image(img, preset)
    payload = base64.b64encode(encoded).decode("ascii")
    artifact = EncodedArtifact(
        base64=payload,
        estimated_bytes=estimate_decoded_size(payload),
        width=width,
        height=height,
        source_width=source_width,
        source_height=source_height,
        preset=preset.name,
        format=preset.target_format,
    )
    log.debug(
        f"Compressed {source.filename or source.id} with {preset.name.value} preset: "
        f"{source_width}x{source_height} -> {width}x{height}, "
        f"{format_human_size(source.size)} -> {artifact.human_size}"
    )
    return artifact


async def compress(source: SourceImage, preset: CompressionPreset) -> EncodedArtifact:
    """Run :func:`compress_sync` off the event loop."""
    return await asyncio.to_thread(compress_sync, source, preset)