"""Tests for the select -> caption -> submit upload flow."""

from __future__ import annotations

import asyncio
import base64
import io

import pytest
from PIL import Image

from loveplate.compression import EncodedArtifact, SourceImage, compress
from loveplate.errors import DecodeError, StaleResultDiscarded, UploadPrecompressionFailed
from loveplate.presets import AI_PRESET, UPLOAD_PRESET, CompressionPreset, PresetName
from loveplate.schema import BilingualDescription
from loveplate.session import SelectionState, UploadSession

from conftest import FakeCaptioner


def tag(source: SourceImage, preset: str) -> str:
    return base64.b64encode(f"{source.id}:{preset}".encode()).decode()


class FakeUploader:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = []

    async def upload(self, payload, filename, caption=None):
        self.calls.append((payload, filename, caption))
        if self.error is not None:
            raise self.error
        return {"id": "photo-1", "filename": filename}


class GatedCompressor:
    """
    Compressor whose results are released by the test, per source.

    Each artifact encodes ``<source id>:<preset>`` (see :func:`tag`) so tests
    can tell which selection a result belongs to.
    """

    def __init__(self, fail: set[PresetName] | None = None):
        self.gates: dict[str, asyncio.Event] = {}
        self.fail = fail or set()
        self.started: list[tuple[str, PresetName]] = []

    def gate(self, source: SourceImage) -> asyncio.Event:
        return self.gates.setdefault(source.id, asyncio.Event())

    async def __call__(self, source: SourceImage, preset: CompressionPreset) -> EncodedArtifact:
        self.started.append((source.id, preset.name))
        # the result is delivered even if the caller has moved on
        await asyncio.shield(self.gate(source).wait())
        if preset.name in self.fail:
            raise DecodeError()
        return EncodedArtifact(
            base64=tag(source, preset.name.value),
            estimated_bytes=1,
            width=1,
            height=1,
            source_width=1,
            source_height=1,
            preset=preset.name,
            format=preset.target_format,
        )


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()


class TestHappyPath:
    """Tests for a selection that goes all the way through."""

    @pytest.mark.asyncio
    async def test_select_caption_submit(
        self, landscape_source: SourceImage, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        """Both artifacts are made, the AI one is captioned, the upload one is sent."""
        session = UploadSession(captioner, uploader)

        selection = await session.select(landscape_source)
        await session.wait_ready()

        assert selection.state is SelectionState.SUBMIT_READY
        assert selection.ai_artifact.preset is PresetName.AI
        assert selection.upload_artifact.preset is PresetName.UPLOAD
        assert selection.caption.dish_name == "番茄炒蛋"
        assert captioner.calls == [selection.ai_artifact.base64]

        upload_base64 = selection.upload_artifact.base64
        result = await session.submit()

        assert result["id"] == "photo-1"
        assert selection.state is SelectionState.DONE
        assert selection.ai_artifact is None and selection.upload_artifact is None

        payload, filename, caption = uploader.calls[0]
        assert filename == "dinner.jpg"
        assert caption.en.startswith("Silky")
        assert payload.mime_type == "image/jpeg"
        with Image.open(io.BytesIO(payload.data)) as img:
            assert img.size == (1920, 1440)
        # never the AI copy
        assert captioner.calls[0] != upload_base64

    @pytest.mark.asyncio
    async def test_lazy_upload_artifact(
        self, small_source: SourceImage, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        """With eager_upload off the upload copy is made at submit time."""
        session = UploadSession(captioner, uploader, eager_upload=False)

        selection = await session.select(small_source)
        await session.wait_ready()
        assert selection.state is SelectionState.SUBMIT_READY
        assert selection.upload_artifact is None

        await session.submit()
        assert selection.state is SelectionState.DONE
        assert len(uploader.calls) == 1

    @pytest.mark.asyncio
    async def test_submit_waits_for_background_work(
        self, small_source: SourceImage, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        session = UploadSession(captioner, uploader)
        await session.select(small_source)

        await session.submit()

        _, _, caption = uploader.calls[0]
        assert caption is not None

    @pytest.mark.asyncio
    async def test_edited_caption_is_uploaded(
        self, small_source: SourceImage, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        session = UploadSession(captioner, uploader)
        await session.select(small_source)
        await session.wait_ready()

        mine = BilingualDescription(dish_name="面", en="Noodles", cn="面条")
        session.edit_caption(mine)
        await session.submit()

        assert uploader.calls[0][2] == mine

    @pytest.mark.asyncio
    async def test_regenerate_caption(
        self, small_source: SourceImage, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        session = UploadSession(captioner, uploader)
        await session.select(small_source)
        await session.wait_ready()

        caption = await session.regenerate_caption()

        assert caption.dish_name == "番茄炒蛋"
        assert len(captioner.calls) == 2


class TestDegradedPaths:
    """Tests for failures that do or do not stop the upload."""

    @pytest.mark.asyncio
    async def test_captioning_failure_is_not_fatal(
        self, small_source: SourceImage, failing_captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        session = UploadSession(failing_captioner, uploader)

        selection = await session.select(small_source)
        await session.wait_ready()

        assert selection.caption is None
        assert selection.notice
        assert selection.state is SelectionState.SUBMIT_READY

        await session.submit()
        assert uploader.calls[0][2] is None
        assert selection.state is SelectionState.DONE

    @pytest.mark.asyncio
    async def test_ai_compression_failure_is_not_fatal(
        self, small_source: SourceImage, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        compressor = GatedCompressor(fail={PresetName.AI})
        compressor.gate(small_source).set()
        session = UploadSession(captioner, uploader, compressor=compressor)

        selection = await session.select(small_source)
        await session.wait_ready()

        assert selection.error == "Could not read this image."
        assert selection.notice
        assert captioner.calls == []
        assert selection.state is SelectionState.SUBMIT_READY

        await session.submit()
        assert selection.state is SelectionState.DONE

    @pytest.mark.asyncio
    async def test_upload_compression_failure_is_fatal(
        self, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        session = UploadSession(captioner, uploader)
        selection = await session.select(SourceImage(data=b"not an image"))
        await session.wait_ready()

        assert selection.state is SelectionState.FAILED
        with pytest.raises(UploadPrecompressionFailed):
            await session.submit()
        assert uploader.calls == []

    @pytest.mark.asyncio
    async def test_retry_after_failure(
        self, small_source: SourceImage, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        attempts = {"upload": 0}

        async def flaky(source, preset):
            if preset.name is PresetName.UPLOAD:
                attempts["upload"] += 1
                if attempts["upload"] == 1:
                    raise DecodeError()
            return await compress(source, preset)

        session = UploadSession(captioner, uploader, compressor=flaky)
        selection = await session.select(small_source)
        await session.wait_ready()
        assert selection.state is SelectionState.FAILED

        session.retry()
        await session.wait_ready()
        assert selection.state is SelectionState.SUBMIT_READY

        await session.submit()
        assert selection.state is SelectionState.DONE

    @pytest.mark.asyncio
    async def test_late_caption_keeps_upload_failure(
        self, small_source: SourceImage, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        """An AI result arriving after the upload copy failed leaves the selection FAILED."""
        ai_gate = asyncio.Event()
        upload_attempts = []

        async def compressor(source, preset):
            if preset.name is PresetName.UPLOAD:
                upload_attempts.append(preset)
                if len(upload_attempts) == 1:
                    raise DecodeError()
                return await compress(source, preset)
            await ai_gate.wait()
            return await compress(source, preset)

        session = UploadSession(captioner, uploader, compressor=compressor)
        selection = await session.select(small_source)
        for _ in range(3):
            await asyncio.sleep(0)
        assert selection.state is SelectionState.FAILED

        ai_gate.set()
        await session.wait_ready()

        assert selection.state is SelectionState.FAILED
        assert selection.caption is not None

        session.retry()
        await session.wait_ready()
        assert selection.state is SelectionState.SUBMIT_READY

    @pytest.mark.asyncio
    async def test_double_submit_uploads_once(
        self, small_source: SourceImage, captioner: FakeCaptioner
    ) -> None:
        release = asyncio.Event()

        class SlowUploader(FakeUploader):
            async def upload(self, payload, filename, caption=None):
                await release.wait()
                return await super().upload(payload, filename, caption)

        uploader = SlowUploader()
        session = UploadSession(captioner, uploader)
        await session.select(small_source)

        first = asyncio.create_task(session.submit())
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError, match="already in progress"):
            await session.submit()
        release.set()

        assert (await first)["id"] == "photo-1"
        assert len(uploader.calls) == 1

    @pytest.mark.asyncio
    async def test_uploader_failure_keeps_artifact(
        self, small_source: SourceImage, captioner: FakeCaptioner
    ) -> None:
        uploader = FakeUploader(error=RuntimeError("Failed to upload image"))
        session = UploadSession(captioner, uploader)
        selection = await session.select(small_source)

        with pytest.raises(RuntimeError):
            await session.submit()

        assert selection.state is SelectionState.SUBMIT_READY
        assert selection.upload_artifact is not None
        assert selection.error == "Failed to upload image"


class TestStaleness:
    """Results for a replaced or cancelled selection never reach state."""

    @pytest.mark.asyncio
    async def test_replaced_selection_result_is_dropped(
        self, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        compressor = GatedCompressor()
        session = UploadSession(captioner, uploader, compressor=compressor)
        first = SourceImage(data=b"a", filename="a.jpg")
        second = SourceImage(data=b"b", filename="b.jpg")

        a = await session.select(first)
        await asyncio.sleep(0)
        b = await session.select(second)

        # A finishes after B was picked
        compressor.gate(first).set()
        await asyncio.sleep(0)
        compressor.gate(second).set()
        await session.wait_ready()

        assert a.state is SelectionState.CANCELLED
        assert a.ai_artifact is None and a.upload_artifact is None
        assert session.current is b
        assert b.ai_artifact.base64 == tag(second, "ai")
        assert b.upload_artifact.base64 == tag(second, "upload")
        assert captioner.calls == [tag(second, "ai")]

    @pytest.mark.asyncio
    async def test_ensure_current_rejects_old_generation(
        self, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        session = UploadSession(captioner, uploader, compressor=GatedCompressor())
        a = await session.select(SourceImage(data=b"a"))
        await session.select(SourceImage(data=b"b"))

        with pytest.raises(StaleResultDiscarded) as exc_info:
            session._ensure_current(a)
        assert exc_info.value.generation == 1
        assert exc_info.value.current == 2
        session.cancel()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(
        self, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        session = UploadSession(captioner, uploader, compressor=GatedCompressor())
        session.cancel()
        assert session.state is SelectionState.IDLE

        selection = await session.select(SourceImage(data=b"a"))
        session.cancel()
        session.cancel()

        assert selection.state is SelectionState.CANCELLED
        assert session.current is None
        assert session.state is SelectionState.IDLE
        with pytest.raises(RuntimeError):
            await session.submit()
        await asyncio.sleep(0)

    @pytest.mark.asyncio
    async def test_cancel_during_submit_wait(
        self, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        compressor = GatedCompressor()
        source = SourceImage(data=b"a")
        session = UploadSession(captioner, uploader, compressor=compressor)
        await session.select(source)

        submitting = asyncio.create_task(session.submit())
        await asyncio.sleep(0)
        session.cancel()
        compressor.gate(source).set()

        assert await submitting is None
        assert uploader.calls == []


class TestPresetsArePassedThrough:
    @pytest.mark.asyncio
    async def test_each_track_uses_its_own_preset(
        self, captioner: FakeCaptioner, uploader: FakeUploader
    ) -> None:
        compressor = GatedCompressor()
        source = SourceImage(data=b"a")
        compressor.gate(source).set()
        session = UploadSession(captioner, uploader, compressor=compressor)

        await session.select(source)
        await session.wait_ready()

        assert sorted(name.value for _, name in compressor.started) == ["ai", "upload"]
        assert session.ai_preset is AI_PRESET
        assert session.upload_preset is UPLOAD_PRESET
