"""Pytest fixtures for loveplate tests."""

from __future__ import annotations

import io
import os
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest

# Settings are read when loveplate.main is imported
os.environ.setdefault("AWS_S3_BUCKET", "test-bucket")
os.environ.setdefault("POLICY_AUD", "test-aud")
os.environ.setdefault("TEAM_DOMAIN", "test.cloudflareaccess.com")
os.environ.setdefault("HOST", "http://testserver")
os.environ.setdefault("BACKFILL_DELAY", "0")
_scratch = Path(tempfile.mkdtemp(prefix="loveplate-"))
os.environ.setdefault("DB_FILE", str(_scratch / "photos.sqlite"))
os.environ.setdefault("ADMIN_FILE", str(_scratch / "admins.json"))

from PIL import Image  # noqa: E402

from loveplate.captioning import CaptioningError  # noqa: E402
from loveplate.compression import SourceImage  # noqa: E402
from loveplate.schema import BilingualDescription  # noqa: E402

OWNER = "cook@example.com"
ADMIN = "admin@example.com"
STRANGER = "guest@example.com"


def make_image_bytes(
    width: int,
    height: int,
    fmt: str = "JPEG",
    mode: str = "RGB",
    color=(200, 80, 40),
) -> bytes:
    """Encode a solid-colour image in memory."""
    if mode == "RGBA" and len(color) == 3:
        color = (*color, 128)
    img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def landscape_jpeg() -> bytes:
    """A 4000x3000 photo, larger than both presets."""
    return make_image_bytes(4000, 3000)


@pytest.fixture
def small_jpeg() -> bytes:
    """A photo already inside both presets' bounds."""
    return make_image_bytes(640, 480)


@pytest.fixture
def landscape_source(landscape_jpeg: bytes) -> SourceImage:
    return SourceImage(data=landscape_jpeg, mime_type="image/jpeg", filename="dinner.jpg")


@pytest.fixture
def small_source(small_jpeg: bytes) -> SourceImage:
    return SourceImage(data=small_jpeg, mime_type="image/jpeg", filename="lunch.jpg")


class FakeCaptioner:
    """Records calls and returns a fixed caption, or raises ``error``."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[str] = []

    async def describe(self, image_base64: str, mime_type: str = "image/jpeg"):
        self.calls.append(image_base64)
        if self.error is not None:
            raise self.error
        return BilingualDescription(
            dish_name="番茄炒蛋",
            en="Silky eggs folded into bright tomatoes.",
            cn="嫩滑的鸡蛋裹着鲜亮的番茄。",
        )


@pytest.fixture
def captioner() -> FakeCaptioner:
    return FakeCaptioner()


@pytest.fixture
def failing_captioner() -> FakeCaptioner:
    return FakeCaptioner(
        CaptioningError("RATE_LIMIT", "AI service is temporarily busy.", True)
    )


class FakeBucket:
    """In-memory stand-in for the S3 helpers used by the routes."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_keys: set[str] = set()

    def upload_file_bytes(self, file_bytes, bucket, object_name, content_type=None):
        if object_name.split("/")[-1] in self.fail_keys:
            return False
        self.objects[object_name] = file_bytes
        return True

    def get_file_bytes(self, bucket, object_name):
        try:
            return self.objects[object_name]
        except KeyError:
            raise FileNotFoundError(object_name)

    def get_file_stream(self, bucket, object_name):
        data = self.get_file_bytes(bucket, object_name)
        return {"Body": io.BytesIO(data), "ContentType": "image/jpeg"}

    def delete_files(self, bucket, object_names):
        for key in object_names:
            self.objects.pop(key, None)
        return True


@pytest.fixture
def bucket() -> Generator[FakeBucket, None, None]:
    fake = FakeBucket()
    with (
        patch("loveplate.main.upload_file_bytes", fake.upload_file_bytes),
        patch("loveplate.main.get_file_bytes", fake.get_file_bytes),
        patch("loveplate.main.get_file_stream", fake.get_file_stream),
        patch("loveplate.main.delete_files", fake.delete_files),
    ):
        yield fake


class Api:
    """A TestClient plus switches for who is signed in."""

    def __init__(self, client, captioner: FakeCaptioner, bucket: FakeBucket):
        self.client = client
        self.captioner = captioner
        self.bucket = bucket
        self.user = OWNER

    def login(self, email: str) -> None:
        self.user = email

    def upload(self, data: bytes, filename: str = "dinner.jpg", **fields):
        return self.client.post(
            "/api/upload", files={"file": (filename, data, "image/jpeg")}, data=fields
        )


@pytest.fixture
def api(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    bucket: FakeBucket,
    captioner: FakeCaptioner,
) -> Generator[Api, None, None]:
    """
    The FastAPI app on a fresh SQLite file, with S3, captioning and
    Cloudflare Access replaced by fakes.
    """
    from fastapi.testclient import TestClient

    from loveplate.auth.cloudflare import admin_emails, current_user
    from loveplate.captioning import get_captioner
    from loveplate.main import app
    from loveplate.utils import get_settings

    monkeypatch.setenv("DB_FILE", str(tmp_path / "photos.sqlite"))
    get_settings.cache_clear()

    with TestClient(app) as client:
        state = Api(client, captioner, bucket)
        app.dependency_overrides[current_user] = lambda: state.user
        app.dependency_overrides[admin_emails] = lambda: {ADMIN}
        app.dependency_overrides[get_captioner] = lambda: captioner
        try:
            yield state
        finally:
            app.dependency_overrides.clear()

    get_settings.cache_clear()
