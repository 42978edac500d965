"""
Voice Attachment Pipeline - capture, preview, upload, attach.

States:
    idle -> permission-requested -> recording -> stopped -> uploading -> attached
    with error reachable from permission, start and stop failures; error
    always settles back in idle with the reason kept on `error`.

The capture device, timers and level polling are released on every terminal
transition and on teardown, so the microphone is never left open after the
user is done with it.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol
from uuid import uuid4

from app.config import settings
from app.features.annotation.domain import (
    AnnotationError,
    Highlight,
    IdentityRequiredError,
    UserIdentity,
    VoiceExplanation,
)
from app.features.annotation.services.notification_fanout import NotificationFanout
from app.features.annotation.services.presence_tracker import PresenceTracker
from app.features.annotation.services.sync_channel import SyncChannel
from app.infrastructure.observability.logging import get_logger
from app.services.blob_storage import BlobStorage

logger = get_logger(__name__)


class PipelineState(StrEnum):
    IDLE = "idle"
    PERMISSION_REQUESTED = "permission-requested"
    RECORDING = "recording"
    STOPPED = "stopped"
    UPLOADING = "uploading"
    ATTACHED = "attached"
    ERROR = "error"


class CaptureErrorReason(StrEnum):
    DENIED = "denied"
    NO_DEVICE = "no-device"
    UNSUPPORTED = "unsupported"
    INTERRUPTED = "interrupted"


CAPTURE_ERROR_MESSAGES = {
    CaptureErrorReason.DENIED: "Microphone access was denied. Allow it in your browser settings to record.",
    CaptureErrorReason.NO_DEVICE: "No microphone was found. Connect one and try again.",
    CaptureErrorReason.UNSUPPORTED: "Audio recording is not supported on this device.",
    CaptureErrorReason.INTERRUPTED: "Recording stopped unexpectedly. Please record again.",
}


class CaptureError(AnnotationError):
    """The capture device refused or could not provide audio."""

    def __init__(self, reason: CaptureErrorReason | str, message: str | None = None):
        self.reason = CaptureErrorReason(reason)
        super().__init__(message or CAPTURE_ERROR_MESSAGES[self.reason])


class InvalidPipelineStateError(AnnotationError):
    """The requested operation is not allowed in the current pipeline state."""


class UploadFailedError(AnnotationError):
    """The clip could not be uploaded or attached; the recording is kept for retry."""


class CaptureDevice(Protocol):
    """Microphone handle supplied by the client runtime."""

    mime_type: str

    async def open(self) -> None:
        """Ask for access; raise CaptureError with a reason on refusal."""
        ...

    async def start(self, on_chunk: Callable[[bytes], None]) -> None:
        ...

    async def stop(self) -> None:
        """Stop capturing; any buffered audio is flushed through on_chunk first."""
        ...

    def level(self) -> float:
        """Current input amplitude in [0, 1]."""
        ...

    async def close(self) -> None:
        """Release the device so the OS recording indicator turns off."""
        ...


@dataclass(slots=True, frozen=True)
class AttachmentTarget:
    """The highlight a recording will be attached to."""

    doc_id: str
    highlight_id: str


@dataclass(slots=True)
class AudioClip:
    data: bytes
    mime_type: str
    duration_seconds: int

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return self.mime_type.split("/")[-1].split(";")[0] or "bin"


class VoicePipeline:
    """One recording session for one highlight."""

    def __init__(
        self,
        target: AttachmentTarget,
        device: CaptureDevice,
        storage: BlobStorage,
        sync: SyncChannel,
        fanout: NotificationFanout,
        identity: Callable[[], UserIdentity | None],
        presence: PresenceTracker | None = None,
        on_state: Callable[[PipelineState], None] | None = None,
        on_level: Callable[[float], None] | None = None,
        on_progress: Callable[[float], None] | None = None,
        max_seconds: int | None = None,
        level_interval: float | None = None,
        tick_seconds: float = 1.0,
    ):
        self.target = target
        self.device = device
        self.storage = storage
        self.sync = sync
        self.fanout = fanout
        self.presence = presence
        self._identity = identity
        self._on_state = on_state
        self._on_level = on_level
        self._on_progress = on_progress
        self.max_seconds = max_seconds or settings.RECORDING_MAX_SECONDS
        self.level_interval = level_interval or settings.RECORDING_LEVEL_POLL_SECONDS
        self.tick_seconds = tick_seconds

        self.state = PipelineState.IDLE
        self.error: AnnotationError | None = None
        self.duration = 0
        self.level = 0.0
        self.progress = 0.0
        self.clip: AudioClip | None = None
        self.explanation: VoiceExplanation | None = None

        self._chunks: list[bytes] = []
        self._device_open = False
        self._timers: list[asyncio.Task] = []
        self._uploaded_url: str | None = None
        self._upload_id: str | None = None
        self._recording_user: str | None = None

    # =================================================================
    # CAPTURE
    # =================================================================

    async def request_permission(self, auto_start: bool = False) -> None:
        """
        Ask the device for access.

        With auto_start (the help flow) recording begins as soon as access is
        granted; otherwise the pipeline waits in idle for start_capture.

        Raises:
            CaptureError: If access is refused; the pipeline is back in idle
        """
        self._require(PipelineState.IDLE, PipelineState.ERROR)
        self.error = None
        self._set_state(PipelineState.PERMISSION_REQUESTED)

        try:
            await self.device.open()
        except CaptureError as e:
            await self._fail(e)
            raise
        self._device_open = True

        if auto_start:
            await self._begin_recording()
        else:
            self._set_state(PipelineState.IDLE)

    async def start_capture(self) -> None:
        self._require(PipelineState.IDLE, PipelineState.ERROR)
        if not self._device_open:
            await self.request_permission(auto_start=True)
            return
        await self._begin_recording()

    async def stop_capture(self) -> AudioClip:
        """Stop recording and assemble the chunks into one playable clip."""
        self._require(PipelineState.RECORDING)
        await self._cancel_timers()

        try:
            await self.device.stop()
        except Exception as e:
            logger.error(
                "Capture device failed to stop",
                doc_id=self.target.doc_id,
                highlight_id=self.target.highlight_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._chunks = []
            error = CaptureError(CaptureErrorReason.INTERRUPTED)
            await self._fail(error)
            raise error from e
        await self._release_device()

        self.clip = AudioClip(
            data=b"".join(self._chunks),
            mime_type=self.device.mime_type,
            duration_seconds=self.duration,
        )
        self._chunks = []
        self._uploaded_url = None
        self._upload_id = None
        self._set_state(PipelineState.STOPPED)

        logger.info(
            "Recording stopped",
            doc_id=self.target.doc_id,
            highlight_id=self.target.highlight_id,
            duration_seconds=self.clip.duration_seconds,
            size_bytes=self.clip.size,
        )
        return self.clip

    async def retry(self) -> None:
        """Discard the clip (or error) and go back to idle to record again."""
        self._require(PipelineState.STOPPED, PipelineState.ERROR, PipelineState.IDLE)
        self.clip = None
        self.error = None
        self.duration = 0
        self.progress = 0.0
        self._uploaded_url = None
        self._upload_id = None
        self._set_state(PipelineState.IDLE)

    # =================================================================
    # UPLOAD & ATTACH
    # =================================================================

    async def upload(self, transcript: str | None = None) -> VoiceExplanation:
        """
        Upload the clip, attach it to the highlight and notify its creator.

        Raises:
            IdentityRequiredError: If nobody is signed in
            UploadFailedError: If upload or attach failed; the pipeline returns
                to stopped with the clip kept
        """
        self._require(PipelineState.STOPPED)
        user = self._identity()
        if user is None:
            raise IdentityRequiredError("Sign in to share a voice explanation")

        clip = self.clip
        if self._upload_id is None:
            self._upload_id = f"voice_{uuid4().hex}"
        explanation_id = self._upload_id
        self.progress = 0.0
        self._set_state(PipelineState.UPLOADING)

        try:
            if self._uploaded_url is None:
                self._uploaded_url = await self.storage.upload(
                    f"audio/{self.target.doc_id}/{explanation_id}.{clip.extension}",
                    clip.data,
                    clip.mime_type,
                    self._report_progress,
                )
            explanation = VoiceExplanation.new(
                self._uploaded_url,
                user,
                explanation_id=explanation_id,
                duration_seconds=clip.duration_seconds,
                file_size=clip.size,
                transcript=transcript,
            )
            highlight = await self.sync.publish_attachment(
                self.target.doc_id, self.target.highlight_id, explanation
            )
        except Exception as e:
            logger.error(
                "Voice explanation upload failed",
                doc_id=self.target.doc_id,
                highlight_id=self.target.highlight_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._set_state(PipelineState.STOPPED)
            raise UploadFailedError("Could not share your recording. Please try again.") from e

        self.explanation = explanation
        self.clip = None
        self._uploaded_url = None
        self._upload_id = None
        self._set_state(PipelineState.ATTACHED)

        logger.info(
            "Voice explanation attached",
            doc_id=self.target.doc_id,
            highlight_id=self.target.highlight_id,
            explanation_id=explanation.id,
            user_id=user.uid,
        )
        await self._notify_creator(highlight, user)
        return explanation

    async def teardown(self) -> None:
        """Release device, timers and polling; safe to call in any state."""
        await self._cancel_timers()
        await self._release_device()
        self._chunks = []
        if self.state in (PipelineState.RECORDING, PipelineState.PERMISSION_REQUESTED):
            self._set_state(PipelineState.IDLE)

    # =================================================================
    # INTERNALS
    # =================================================================

    async def _begin_recording(self) -> None:
        self._chunks = []
        self.duration = 0
        self.clip = None

        try:
            await self.device.start(self._chunks.append)
        except CaptureError as e:
            await self._fail(e)
            raise

        self._set_state(PipelineState.RECORDING)
        self._timers = [
            asyncio.create_task(self._tick()),
            asyncio.create_task(self._poll_level()),
        ]
        await self._set_recording_flag(True)

        logger.info(
            "Recording started",
            doc_id=self.target.doc_id,
            highlight_id=self.target.highlight_id,
            max_seconds=self.max_seconds,
        )

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            self.duration += 1
            if self.duration >= self.max_seconds:
                logger.info("Recording reached duration cap", max_seconds=self.max_seconds)
                try:
                    await self.stop_capture()
                except CaptureError as e:
                    # stop_capture already moved to error and back to idle
                    logger.warning("Automatic stop failed", doc_id=self.target.doc_id, reason=e.reason.value)
                return

    async def _poll_level(self) -> None:
        while True:
            self.level = self.device.level()
            if self._on_level:
                self._on_level(self.level)
            await asyncio.sleep(self.level_interval)

    async def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        timers, self._timers = self._timers, []
        for task in timers:
            if task is not current:
                task.cancel()
        for task in timers:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _release_device(self) -> None:
        if self._device_open:
            self._device_open = False
            try:
                await self.device.close()
            except Exception as e:
                logger.warning("Capture device close failed", error=str(e))
        self.level = 0.0
        await self._set_recording_flag(False)

    async def _set_recording_flag(self, is_recording: bool) -> None:
        if self.presence is None:
            return
        if is_recording:
            user = self._identity()
            if user is None:
                return
            self._recording_user = user.uid
            await self.presence.set_recording(self.target.doc_id, user.uid, True)
        elif self._recording_user is not None:
            user_id, self._recording_user = self._recording_user, None
            await self.presence.set_recording(self.target.doc_id, user_id, False)

    async def _fail(self, error: CaptureError) -> None:
        self.error = error
        logger.warning(
            "Audio capture unavailable",
            doc_id=self.target.doc_id,
            reason=error.reason.value,
        )
        self._set_state(PipelineState.ERROR)
        await self._cancel_timers()
        await self._release_device()
        self._set_state(PipelineState.IDLE)

    async def _notify_creator(self, highlight: Highlight, helper: UserIdentity) -> None:
        try:
            await self.fanout.notify_explanation_attached(
                self.target.doc_id, highlight.id, helper, highlight.created_by
            )
        except Exception as e:
            logger.error(
                "Explanation notification failed",
                doc_id=self.target.doc_id,
                highlight_id=highlight.id,
                error=str(e),
            )

    def _report_progress(self, fraction: float) -> None:
        self.progress = max(0.0, min(1.0, fraction))
        if self._on_progress:
            self._on_progress(self.progress)

    def _require(self, *allowed: PipelineState) -> None:
        if self.state not in allowed:
            raise InvalidPipelineStateError(
                f"Cannot do that while {self.state.value}; expected one of "
                f"{', '.join(state.value for state in allowed)}"
            )

    def _set_state(self, state: PipelineState) -> None:
        if state == self.state:
            return
        logger.debug("Voice pipeline transition", from_state=self.state.value, to_state=state.value)
        self.state = state
        if self._on_state:
            self._on_state(state)
