import asyncio

import pytest

from app.features.annotation.domain import HelpRequest, Position
from app.features.annotation.services.document_session import DocumentSession
from app.features.annotation.services.voice_pipeline import (
    AttachmentTarget,
    PipelineState,
    VoicePipeline,
)

DOC = "intro-to-ml"


@pytest.mark.asyncio
async def test_help_request_answered_by_voice(
    sync_channel, tracker, fanout, blob_storage, capture_device, alice, bob
):
    async with (
        DocumentSession(DOC, alice, sync_channel, tracker) as alice_session,
        DocumentSession(DOC, bob, sync_channel, tracker) as bob_session,
    ):
        # Alice asks for an explanation of a passage on page 2
        pending = alice_session.store.create_pending(
            "neural networks", Position(x=0.1, y=0.2, width=0.3, height=0.03), 2
        )
        highlight = await alice_session.store.commit(pending, HelpRequest.new("explain", alice))
        assert highlight.needs_help is True

        seen_by_bob = bob_session.store.highlights_for_page(2)
        assert [item.id for item in seen_by_bob] == [highlight.id]
        assert seen_by_bob[0].needs_help is True

        # Bob records a 12-second answer
        pipeline = VoicePipeline(
            AttachmentTarget(DOC, highlight.id),
            capture_device,
            blob_storage,
            sync_channel,
            fanout,
            lambda: bob,
            presence=tracker,
            tick_seconds=0.001,
            level_interval=0.001,
        )
        await pipeline.request_permission(auto_start=True)
        assert [record.user_id for record in alice_session.recording_users()] == ["bob"]

        while pipeline.duration < 12:
            await asyncio.sleep(0)
        clip = await pipeline.stop_capture()
        assert clip.duration_seconds == 12
        assert alice_session.recording_users() == []

        explanation = await pipeline.upload()
        assert pipeline.state == PipelineState.ATTACHED

        updated = alice_session.store.highlights_for_page(2)[0]
        assert [item.id for item in updated.voice_explanations] == [explanation.id]
        assert updated.voice_explanations[0].duration_seconds == 12
        assert updated.needs_help is False

        unread = await fanout.unread(alice.uid)
        assert len(unread) == 1
        assert unread[0].highlight_id == highlight.id
        assert unread[0].from_user_id == bob.uid
        assert await fanout.unread(bob.uid) == []

        await pipeline.teardown()

    assert await tracker.roster(DOC) == []
