import base64
import binascii
from dataclasses import dataclass

from loveplate.compression import strip_data_uri
from loveplate.errors import DecodeError

EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/png": "png",
}


@dataclass(frozen=True)
class BinaryPayload:
    """Raw bytes ready to be sent as a multipart file part."""

    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)

    def filename(self, stem: str = "photo") -> str:
        ext = EXTENSIONS.get(self.mime_type, "bin")
        return f"{stem}.{ext}"

    def as_file_part(self, filename: str | None = None) -> tuple[str, bytes, str]:
        """``(filename, content, content_type)`` as accepted by httpx ``files=``."""
        return filename or self.filename(), self.data, self.mime_type


def to_binary(b64: str, mime_type: str) -> BinaryPayload:
    """
    Decode a base64 payload back into bytes.

    Decoding is strict: characters outside the base64 alphabet or a length
    that is not a multiple of four raise :class:`DecodeError`.
    """
    try:
        data = base64.b64decode(strip_data_uri(b64), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Malformed base64 payload: {e}") from e
    return BinaryPayload(data=data, mime_type=mime_type)
