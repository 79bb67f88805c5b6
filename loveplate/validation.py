import re

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# ~10 MB of image once base64 encoded
MAX_BASE64_LENGTH = 14_000_000

PATH_PATTERN = re.compile(r"/[^\s:]+")


def is_valid_uuid(value) -> bool:
    return isinstance(value, str) and bool(UUID_PATTERN.match(value))


def is_valid_base64_image(value) -> bool:
    """Cheap shape check before an image payload is forwarded anywhere."""
    if not isinstance(value, str):
        return False
    return 0 < len(value) <= MAX_BASE64_LENGTH


def sanitize_error_message(error) -> str:
    """Error text that is safe to return to a client (no filesystem paths)."""
    if isinstance(error, Exception):
        return PATH_PATTERN.sub("[path]", str(error))
    return "An unexpected error occurred"
