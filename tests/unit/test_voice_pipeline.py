import asyncio

import pytest

from app.features.annotation.domain import HelpRequest, HighlightDraft, Position
from app.features.annotation.services.voice_pipeline import (
    AttachmentTarget,
    CaptureError,
    CaptureErrorReason,
    InvalidPipelineStateError,
    PipelineState,
    UploadFailedError,
    VoicePipeline,
)
from tests.conftest import FakeBlobStorage, FakeCaptureDevice

DOC = "doc-1"


async def _highlight(sync_channel, owner):
    draft = HighlightDraft(
        text="backpropagation",
        page_number=4,
        position=Position(x=0.1, y=0.3),
        help_request=HelpRequest.new("explain", owner),
    )
    return await sync_channel.publish_create(DOC, draft, owner)


def _pipeline(target, device, storage, sync_channel, fanout, user, tracker=None, **kwargs):
    states = []
    pipeline = VoicePipeline(
        target,
        device,
        storage,
        sync_channel,
        fanout,
        lambda: user,
        presence=tracker,
        on_state=states.append,
        level_interval=0.001,
        **kwargs,
    )
    return pipeline, states


async def _wait_for(predicate, timeout: float = 2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_permission_denied_returns_to_idle_with_reason(sync_channel, fanout, blob_storage, bob):
    device = FakeCaptureDevice(deny="denied")
    pipeline, states = _pipeline(AttachmentTarget(DOC, "h1"), device, blob_storage, sync_channel, fanout, bob)

    with pytest.raises(CaptureError):
        await pipeline.request_permission()

    assert pipeline.state == PipelineState.IDLE
    assert pipeline.error.reason == CaptureErrorReason.DENIED
    assert states == [PipelineState.PERMISSION_REQUESTED, PipelineState.ERROR, PipelineState.IDLE]


@pytest.mark.asyncio
async def test_record_stop_upload_attach(sync_channel, fanout, blob_storage, capture_device, alice, bob):
    highlight = await _highlight(sync_channel, alice)
    progress = []
    pipeline, states = _pipeline(
        AttachmentTarget(DOC, highlight.id),
        capture_device,
        blob_storage,
        sync_channel,
        fanout,
        bob,
        on_progress=progress.append,
    )

    await pipeline.request_permission(auto_start=True)
    assert pipeline.state == PipelineState.RECORDING

    clip = await pipeline.stop_capture()
    assert clip.data == b"voice-clip"
    assert capture_device.closed is True

    explanation = await pipeline.upload(transcript="think of it as blame assignment")

    assert pipeline.state == PipelineState.ATTACHED
    assert progress[-1] == 1.0
    assert explanation.recorded_by == "bob"
    assert explanation.transcript == "think of it as blame assignment"
    path, _, content_type = blob_storage.uploads[0]
    assert path == f"audio/{DOC}/{explanation.id}.webm"
    assert content_type == "audio/webm"
    assert states[-2:] == [PipelineState.UPLOADING, PipelineState.ATTACHED]

    stored = await sync_channel.highlights.get(DOC, highlight.id)
    assert stored.needs_help is False
    assert [item.audio_url for item in stored.voice_explanations] == [explanation.audio_url]
    assert len(await fanout.unread(alice.uid)) == 1


@pytest.mark.asyncio
async def test_recording_auto_stops_at_cap(sync_channel, fanout, blob_storage, capture_device, bob):
    pipeline, _ = _pipeline(
        AttachmentTarget(DOC, "h1"),
        capture_device,
        blob_storage,
        sync_channel,
        fanout,
        bob,
        max_seconds=3,
        tick_seconds=0.005,
    )

    await pipeline.start_capture()
    await _wait_for(lambda: pipeline.state == PipelineState.STOPPED)

    assert pipeline.clip.duration_seconds == 3
    assert capture_device.closed is True
    assert pipeline.level == 0.0


@pytest.mark.asyncio
async def test_upload_failure_keeps_clip_for_retry(sync_channel, fanout, capture_device, alice, bob):
    highlight = await _highlight(sync_channel, alice)
    storage = FakeBlobStorage(failures=1)
    pipeline, _ = _pipeline(AttachmentTarget(DOC, highlight.id), capture_device, storage, sync_channel, fanout, bob)

    await pipeline.start_capture()
    await pipeline.stop_capture()

    with pytest.raises(UploadFailedError):
        await pipeline.upload()

    assert pipeline.state == PipelineState.STOPPED
    assert pipeline.clip is not None

    explanation = await pipeline.upload()
    assert pipeline.state == PipelineState.ATTACHED
    assert len(storage.uploads) == 1
    assert storage.uploads[0][0].endswith(f"{explanation.id}.webm")


@pytest.mark.asyncio
async def test_attach_failure_does_not_reupload(sync_channel, fanout, blob_storage, capture_device, bob):
    pipeline, _ = _pipeline(AttachmentTarget(DOC, "missing"), capture_device, blob_storage, sync_channel, fanout, bob)
    await pipeline.start_capture()
    await pipeline.stop_capture()

    for _ in range(2):
        with pytest.raises(UploadFailedError):
            await pipeline.upload()

    assert len(blob_storage.uploads) == 1
    assert pipeline.state == PipelineState.STOPPED


@pytest.mark.asyncio
async def test_retry_discards_clip(sync_channel, fanout, blob_storage, capture_device, bob):
    pipeline, _ = _pipeline(AttachmentTarget(DOC, "h1"), capture_device, blob_storage, sync_channel, fanout, bob)
    await pipeline.start_capture()
    await pipeline.stop_capture()

    await pipeline.retry()

    assert pipeline.state == PipelineState.IDLE
    assert pipeline.clip is None
    assert pipeline.duration == 0


@pytest.mark.asyncio
async def test_stop_outside_recording_is_rejected(sync_channel, fanout, blob_storage, capture_device, bob):
    pipeline, _ = _pipeline(AttachmentTarget(DOC, "h1"), capture_device, blob_storage, sync_channel, fanout, bob)

    with pytest.raises(InvalidPipelineStateError):
        await pipeline.stop_capture()


@pytest.mark.asyncio
async def test_teardown_releases_device_and_recording_flag(
    sync_channel, fanout, blob_storage, capture_device, tracker, bob
):
    await tracker.join(DOC, bob)
    pipeline, _ = _pipeline(
        AttachmentTarget(DOC, "h1"), capture_device, blob_storage, sync_channel, fanout, bob, tracker=tracker
    )

    await pipeline.start_capture()
    assert [record.user_id for record in tracker.recording_users(await tracker.roster(DOC))] == ["bob"]

    await pipeline.teardown()

    assert pipeline.state == PipelineState.IDLE
    assert capture_device.closed is True
    assert tracker.recording_users(await tracker.roster(DOC)) == []


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_attach(
    sync_channel, fanout, blob_storage, capture_device, alice, bob, monkeypatch
):
    highlight = await _highlight(sync_channel, alice)

    async def broken(*args, **kwargs):
        raise RuntimeError("inbox unavailable")

    monkeypatch.setattr(fanout, "notify_explanation_attached", broken)
    pipeline, _ = _pipeline(AttachmentTarget(DOC, highlight.id), capture_device, blob_storage, sync_channel, fanout, bob)
    await pipeline.start_capture()
    await pipeline.stop_capture()

    await pipeline.upload()

    assert pipeline.state == PipelineState.ATTACHED


@pytest.mark.asyncio
async def test_device_stop_failure_settles_in_idle(sync_channel, fanout, blob_storage, tracker, bob):
    await tracker.join(DOC, bob)
    device = FakeCaptureDevice(fail_stop=RuntimeError("stream ended"))
    pipeline, states = _pipeline(
        AttachmentTarget(DOC, "h1"), device, blob_storage, sync_channel, fanout, bob, tracker=tracker
    )
    await pipeline.start_capture()

    with pytest.raises(CaptureError):
        await pipeline.stop_capture()

    assert pipeline.state == PipelineState.IDLE
    assert pipeline.error.reason == CaptureErrorReason.INTERRUPTED
    assert states[-2:] == [PipelineState.ERROR, PipelineState.IDLE]
    assert device.closed is True
    assert tracker.recording_users(await tracker.roster(DOC)) == []

    with pytest.raises(InvalidPipelineStateError):
        await pipeline.stop_capture()
    assert device.stop_calls == 1


@pytest.mark.asyncio
async def test_auto_stop_failure_is_reported_on_the_pipeline(sync_channel, fanout, blob_storage, bob):
    device = FakeCaptureDevice(fail_stop=RuntimeError("stream ended"))
    pipeline, _ = _pipeline(
        AttachmentTarget(DOC, "h1"),
        device,
        blob_storage,
        sync_channel,
        fanout,
        bob,
        max_seconds=2,
        tick_seconds=0.005,
    )

    await pipeline.start_capture()
    await _wait_for(lambda: pipeline.error is not None)

    assert pipeline.state == PipelineState.IDLE
    assert pipeline.error.reason == CaptureErrorReason.INTERRUPTED
    assert device.closed is True


@pytest.mark.asyncio
async def test_retried_attach_after_landed_write_is_not_duplicated(
    sync_channel, fanout, blob_storage, capture_device, document_repo, alice, bob, monkeypatch
):
    highlight = await _highlight(sync_channel, alice)
    pipeline, _ = _pipeline(
        AttachmentTarget(DOC, highlight.id), capture_device, blob_storage, sync_channel, fanout, bob
    )
    await pipeline.start_capture()
    await pipeline.stop_capture()

    original = sync_channel.publish_attachment
    calls = {"count": 0}

    async def lands_then_errors(doc_id, highlight_id, explanation):
        calls["count"] += 1
        result = await original(doc_id, highlight_id, explanation)
        if calls["count"] == 1:
            raise ConnectionError("acknowledgement lost")
        return result

    monkeypatch.setattr(sync_channel, "publish_attachment", lands_then_errors)

    with pytest.raises(UploadFailedError):
        await pipeline.upload()
    explanation = await pipeline.upload()

    stored = await sync_channel.highlights.get(DOC, highlight.id)
    assert [item.id for item in stored.voice_explanations] == [explanation.id]
    stats = await document_repo.get_stats(DOC)
    assert stats.total_voice_explanations == 1
    assert stats.help_requests_open == 0
