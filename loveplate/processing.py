"""Server-side renditions stored for every uploaded photo."""

import io
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from PIL import Image, ImageOps

from loveplate.compression import decode_image, fit_box, to_rgb

log = logging.getLogger(__name__)

MAX_FULL_SIZE = 2000
THUMB_SIZE = 400
JPEG_QUALITY = 80

EXIF_DATETIME_ORIGINAL = 0x9003
EXIF_DATETIME = 0x0132
EXIF_IFD = 0x8769


@dataclass
class ProcessedImage:
    full_bytes: bytes
    thumb_bytes: bytes
    width: int
    height: int
    captured_at: datetime | None = None


def captured_at(img: Image.Image) -> datetime | None:
    """Capture time from EXIF, if the camera recorded one."""
    exif = img.getexif()
    raw = exif.get_ifd(EXIF_IFD).get(EXIF_DATETIME_ORIGINAL) or exif.get(EXIF_DATETIME)
    if not raw:
        return None
    try:
        return datetime.strptime(str(raw).strip("\x00 "), "%Y:%m:%d %H:%M:%S").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        log.debug(f"Ignoring unparseable EXIF date {raw!r}")
        return None


def _jpeg(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()


def process_image(data: bytes) -> ProcessedImage:
    """
    Produce the stored renditions of an upload.

    The full rendition is rotated upright and fit within 2000x2000; the
    thumbnail is a 400x400 centre crop. Both are JPEG. Raises DecodeError
    when ``data`` is not an image.
    """
    img = decode_image(data)
    with Image.open(io.BytesIO(data)) as original:
        taken = captured_at(original)
    img = to_rgb(img)

    width, height = fit_box(img.width, img.height, MAX_FULL_SIZE, MAX_FULL_SIZE)
    full = img if (width, height) == img.size else img.resize(
        (width, height), Image.Resampling.LANCZOS
    )
    thumb = ImageOps.fit(
        img, (THUMB_SIZE, THUMB_SIZE), Image.Resampling.LANCZOS, centering=(0.5, 0.5)
    )

    processed = ProcessedImage(
        full_bytes=_jpeg(full),
        thumb_bytes=_jpeg(thumb),
        width=width,
        height=height,
        captured_at=taken,
    )
    log.debug(
        f"Processed upload {img.width}x{img.height} -> {width}x{height}, "
        f"full {len(processed.full_bytes)} B, thumb {len(processed.thumb_bytes)} B"
    )
    return processed
