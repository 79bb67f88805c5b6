"""
Upload flow for one photo at a time.

Picking a photo starts two independent compressions: the AI preset copy is
sent for captioning straight away, the upload preset copy is kept until the
user confirms. Picking another photo or cancelling abandons everything that
belonged to the previous pick; results that arrive afterwards are dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from loveplate.compression import EncodedArtifact, SourceImage, compress
from loveplate.errors import (
    CaptioningUnavailable,
    EncodeError,
    ImagePipelineError,
    StaleResultDiscarded,
    UploadPrecompressionFailed,
)
from loveplate.payload import BinaryPayload, to_binary
from loveplate.presets import AI_PRESET, UPLOAD_PRESET, CompressionPreset
from loveplate.schema import BilingualDescription

log = logging.getLogger(__name__)

Compressor = Callable[[SourceImage, CompressionPreset], Awaitable[EncodedArtifact]]


class Captioner(Protocol):
    async def describe(self, image_base64: str) -> BilingualDescription: ...


class Uploader(Protocol):
    async def upload(
        self,
        payload: BinaryPayload,
        filename: str | None,
        caption: BilingualDescription | None = None,
    ) -> Any: ...


class SelectionState(Enum):
    IDLE = "idle"
    SELECTED = "selected"
    AI_COMPRESSING = "ai_compressing"
    AI_READY = "ai_ready"
    UPLOAD_COMPRESSING = "upload_compressing"
    SUBMIT_READY = "submit_ready"
    SUBMITTING = "submitting"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = {SelectionState.DONE, SelectionState.CANCELLED}
# states in which background work may still move the selection forward
PREPARING_STATES = {
    SelectionState.SELECTED,
    SelectionState.AI_COMPRESSING,
    SelectionState.AI_READY,
    SelectionState.UPLOAD_COMPRESSING,
    SelectionState.SUBMIT_READY,
}
# the only states the caption track may move out of; never FAILED or later
AI_TRACK_STATES = {SelectionState.SELECTED, SelectionState.AI_COMPRESSING}


@dataclass(eq=False)
class Selection:
    """Everything owned by one pick of one photo."""

    source: SourceImage
    generation: int
    state: SelectionState = SelectionState.SELECTED
    ai_artifact: EncodedArtifact | None = None
    upload_artifact: EncodedArtifact | None = None
    caption: BilingualDescription | None = None
    caption_pending: bool = False
    ai_done: bool = False
    submitting: bool = False
    """Set while a submit() call owns the selection."""
    notice: str | None = None
    """Informational message, e.g. that no caption could be generated."""
    error: str | None = None
    """User-facing error for the current attempt."""
    upload_error: UploadPrecompressionFailed | None = None
    result: Any = None
    caption_task: asyncio.Task | None = field(default=None, repr=False)
    upload_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def tasks(self) -> list[asyncio.Task]:
        return [t for t in (self.caption_task, self.upload_task) if t is not None]

    def release(self):
        self.ai_artifact = None
        self.upload_artifact = None


class UploadSession:
    """
    Drives the select -> caption -> submit flow for a single uploader.

    Only one selection is current at a time. Each selection carries a
    generation number; background work checks it is still current before
    touching any state.
    """

    def __init__(
        self,
        captioner: Captioner,
        uploader: Uploader,
        ai_preset: CompressionPreset = AI_PRESET,
        upload_preset: CompressionPreset = UPLOAD_PRESET,
        eager_upload: bool = True,
        compressor: Compressor = compress,
    ):
        self.captioner = captioner
        self.uploader = uploader
        self.ai_preset = ai_preset
        self.upload_preset = upload_preset
        self.eager_upload = eager_upload
        self._compress = compressor
        self._generation = 0
        self._current: Selection | None = None

    @property
    def current(self) -> Selection | None:
        return self._current

    @property
    def state(self) -> SelectionState:
        """State of the current selection, IDLE when nothing is picked."""
        if self._current is None:
            return SelectionState.IDLE
        return self._current.state

    def _is_current(self, selection: Selection) -> bool:
        return selection is self._current and not selection.is_terminal

    def _ensure_current(self, selection: Selection):
        if not self._is_current(selection):
            current = self._current.generation if self._current else None
            raise StaleResultDiscarded(selection.generation, current)

    def _advance(self, selection: Selection):
        if selection.state not in PREPARING_STATES or not selection.ai_done:
            return
        if selection.upload_artifact is not None or not self.eager_upload:
            selection.state = SelectionState.SUBMIT_READY
        else:
            selection.state = SelectionState.UPLOAD_COMPRESSING

    @staticmethod
    def _set_ai_state(selection: Selection, state: SelectionState):
        # an upload failure or a submit in progress outranks caption progress
        if selection.state in AI_TRACK_STATES:
            selection.state = state

    async def select(self, source: SourceImage) -> Selection:
        """
        Make ``source`` the current photo and start preparing it.

        Any previous selection is cancelled first.
        """
        self.cancel()
        self._generation += 1
        selection = Selection(source=source, generation=self._generation)
        self._current = selection
        log.debug(f"Selected {source.filename or source.id} as selection {selection.generation}")

        selection.caption_task = asyncio.create_task(self._caption_track(selection))
        if self.eager_upload:
            selection.upload_task = asyncio.create_task(self._upload_track(selection))
        return selection

    async def _caption_track(self, selection: Selection):
        try:
            self._set_ai_state(selection, SelectionState.AI_COMPRESSING)
            try:
                artifact = await self._compress(selection.source, self.ai_preset)
            except ImagePipelineError as e:
                self._ensure_current(selection)
                log.warning(f"AI compression failed for selection {selection.generation}: {e}")
                selection.error = e.user_message
                selection.notice = CaptioningUnavailable.user_message
                return

            self._ensure_current(selection)
            selection.ai_artifact = artifact
            self._set_ai_state(selection, SelectionState.AI_READY)
            selection.caption_pending = True
            await self._describe(selection)
        except StaleResultDiscarded as e:
            log.debug(str(e))
        finally:
            if self._is_current(selection):
                selection.caption_pending = False
                selection.ai_done = True
                self._advance(selection)

    async def _describe(self, selection: Selection):
        try:
            caption = await self.captioner.describe(selection.ai_artifact.base64)
        except Exception as e:
            self._ensure_current(selection)
            unavailable = CaptioningUnavailable(e)
            log.warning(f"Captioning unavailable for selection {selection.generation}: {e!r}")
            selection.notice = str(unavailable)
            return
        self._ensure_current(selection)
        selection.caption = caption
        selection.notice = None

    async def _upload_track(self, selection: Selection):
        try:
            await self._prepare_upload(selection)
        except StaleResultDiscarded as e:
            log.debug(str(e))
        except UploadPrecompressionFailed:
            # recorded on the selection, surfaced by submit()
            pass

    async def _prepare_upload(self, selection: Selection):
        try:
            artifact = await self._compress(selection.source, self.upload_preset)
        except ImagePipelineError as e:
            self._ensure_current(selection)
            if isinstance(e, EncodeError):
                log.error(f"Upload preset could not be encoded: {e}")
            else:
                log.warning(f"Upload compression failed for selection {selection.generation}: {e}")
            failure = UploadPrecompressionFailed()
            failure.__cause__ = e
            selection.upload_error = failure
            selection.error = failure.user_message
            selection.state = SelectionState.FAILED
            raise failure from e

        self._ensure_current(selection)
        selection.upload_artifact = artifact
        self._advance(selection)

    async def wait_ready(self) -> Selection | None:
        """Wait for the current selection's background work to settle."""
        selection = self._current
        if selection is None:
            return None
        pending = [t for t in selection.tasks() if not t.done()]
        if pending:
            await asyncio.wait(pending)
        return selection

    async def regenerate_caption(self) -> BilingualDescription | None:
        """Ask for a new caption using the current AI artifact."""
        selection = self._current
        if selection is None or selection.ai_artifact is None:
            return None
        try:
            selection.caption_pending = True
            await self._describe(selection)
        except StaleResultDiscarded as e:
            log.debug(str(e))
            return None
        finally:
            selection.caption_pending = False
        return selection.caption

    def edit_caption(self, caption: BilingualDescription):
        """Replace the caption with the user's own text."""
        if self._current is not None and not self._current.is_terminal:
            self._current.caption = caption
            self._current.notice = None

    def retry(self) -> Selection | None:
        """Restart upload preparation after it failed."""
        selection = self._current
        if selection is None or selection.state is not SelectionState.FAILED:
            return selection
        selection.upload_error = None
        selection.error = None
        selection.state = SelectionState.UPLOAD_COMPRESSING
        selection.upload_task = asyncio.create_task(self._upload_track(selection))
        return selection

    async def submit(self, wait_for_caption: bool = True) -> Any:
        """
        Upload the current photo.

        Waits for the upload artifact (computing it now if it was never
        started), turns it back into bytes and hands them to the uploader
        along with whatever caption exists. Returns the uploader's result, or
        None if the selection was cancelled or replaced in the meantime.

        :raises UploadPrecompressionFailed: the upload copy could not be made
        """
        selection = self._current
        if selection is None or selection.is_terminal:
            raise RuntimeError("No photo selected")
        if selection.submitting:
            raise RuntimeError("Upload already in progress")
        if selection.state is SelectionState.FAILED:
            raise selection.upload_error or UploadPrecompressionFailed()

        # claimed before the first await so a second submit cannot slip in
        selection.submitting = True
        try:
            return await self._submit(selection, wait_for_caption)
        finally:
            selection.submitting = False

    async def _submit(self, selection: Selection, wait_for_caption: bool) -> Any:
        if wait_for_caption and selection.caption_task and not selection.caption_task.done():
            await asyncio.wait([selection.caption_task])
        if selection.upload_task and not selection.upload_task.done():
            await asyncio.wait([selection.upload_task])
        if not self._is_current(selection):
            log.debug(f"Selection {selection.generation} went away before submit")
            return None

        if selection.upload_artifact is None:
            if selection.state is SelectionState.FAILED:
                raise selection.upload_error
            selection.state = SelectionState.UPLOAD_COMPRESSING
            try:
                await self._prepare_upload(selection)
            except StaleResultDiscarded as e:
                log.debug(str(e))
                return None

        artifact = selection.upload_artifact
        selection.state = SelectionState.SUBMITTING
        payload = to_binary(artifact.base64, artifact.mime_type)
        try:
            result = await self.uploader.upload(
                payload, selection.source.filename, selection.caption
            )
        except Exception as e:
            if self._is_current(selection):
                selection.state = SelectionState.SUBMIT_READY
                selection.error = str(e)
            raise

        if self._is_current(selection):
            selection.result = result
            selection.state = SelectionState.DONE
            selection.error = None
            selection.release()
            log.info(f"Uploaded selection {selection.generation} ({artifact.human_size})")
        return result

    def cancel(self):
        """
        Abandon the current selection. Safe to call at any time, any number of
        times.
        """
        selection = self._current
        if selection is None:
            return
        self._current = None
        if selection.is_terminal:
            return
        for task in selection.tasks():
            if not task.done():
                task.cancel()
        selection.release()
        selection.state = SelectionState.CANCELLED
        log.debug(f"Cancelled selection {selection.generation}")
