import json

import pytest

from app.features.annotation.domain import (
    HelpRequest,
    Highlight,
    HighlightDraft,
    HighlightNotFoundError,
    IdentityRequiredError,
    PermissionDeniedError,
    Position,
    SyncError,
    VoiceExplanation,
)

DOC = "doc-1"


def _draft(text="gradient descent", help_request=None):
    return HighlightDraft(
        text=text,
        page_number=1,
        position=Position(x=0.1, y=0.1),
        help_request=help_request,
    )


def _explanation(user, url="https://blobs.test/a.webm"):
    return VoiceExplanation.new(url, user, duration_seconds=8, file_size=1024)


@pytest.mark.asyncio
async def test_create_assigns_id_and_counts(sync_channel, document_repo, alice):
    highlight = await sync_channel.publish_create(DOC, _draft(help_request=HelpRequest.new("explain", alice)), alice)

    assert highlight.id and not highlight.is_pending
    assert highlight.color == "#ffeb3b"
    assert highlight.created_by == "alice"
    assert highlight.sequence == 1

    stats = await document_repo.get_stats(DOC)
    assert stats.total_highlights == 1
    assert stats.help_requests_open == 1
    assert stats.last_activity_by == "alice"


@pytest.mark.asyncio
async def test_create_requires_identity(sync_channel):
    with pytest.raises(IdentityRequiredError):
        await sync_channel.publish_create(DOC, _draft(), None)


@pytest.mark.asyncio
async def test_create_write_failure_is_sync_error(sync_channel, fake_redis, alice):
    fake_redis.fail_writes = True

    with pytest.raises(SyncError):
        await sync_channel.publish_create(DOC, _draft(), alice)


@pytest.mark.asyncio
async def test_first_attachment_resolves_help(sync_channel, document_repo, alice, bob):
    created = await sync_channel.publish_create(
        DOC, _draft(help_request=HelpRequest.new("explain", alice)), alice
    )

    updated = await sync_channel.publish_attachment(DOC, created.id, _explanation(bob))

    assert len(updated.voice_explanations) == 1
    assert updated.needs_help is False
    assert updated.help_request.active is False
    assert updated.help_request.resolved_at is not None

    stats = await document_repo.get_stats(DOC)
    assert stats.total_voice_explanations == 1
    assert stats.help_requests_open == 0


@pytest.mark.asyncio
async def test_second_attachment_appends_without_reopening(sync_channel, fake_redis, document_repo, alice, bob):
    created = await sync_channel.publish_create(
        DOC, _draft(help_request=HelpRequest.new("example", alice)), alice
    )
    await sync_channel.publish_attachment(DOC, created.id, _explanation(bob))

    updated = await sync_channel.publish_attachment(DOC, created.id, _explanation(alice, "https://blobs.test/b.webm"))

    assert [item.audio_url for item in updated.voice_explanations] == [
        "https://blobs.test/a.webm",
        "https://blobs.test/b.webm",
    ]
    assert updated.needs_help is False
    assert fake_redis.hashes[document_repo.stats_key(DOC)]["help_requests_open"] == "0"
    assert (await document_repo.get_stats(DOC)).total_voice_explanations == 2


@pytest.mark.asyncio
async def test_concurrent_attachments_are_both_kept(sync_channel, fake_redis, highlight_repo, alice, bob):
    created = await sync_channel.publish_create(
        DOC, _draft(help_request=HelpRequest.new("explain", alice)), alice
    )
    other = _explanation(alice, "https://blobs.test/other.webm")
    key = highlight_repo.collection_key(DOC)

    def other_writer_lands_first():
        stored = Highlight.from_dict(json.loads(fake_redis.hashes[key][created.id]))
        fake_redis.hashes[key][created.id] = json.dumps(stored.with_explanation(other).to_dict())

    fake_redis.concurrent_writes.append(other_writer_lands_first)

    mine = _explanation(bob)
    updated = await sync_channel.publish_attachment(DOC, created.id, mine)

    assert len(updated.voice_explanations) == 2
    assert [item.id for item in updated.voice_explanations] == [other.id, mine.id]
    assert fake_redis.update_attempts == 2
    stored = await highlight_repo.get(DOC, created.id)
    assert len(stored.voice_explanations) == 2


@pytest.mark.asyncio
async def test_repeated_attachment_id_is_not_appended_twice(sync_channel, document_repo, alice, bob):
    created = await sync_channel.publish_create(
        DOC, _draft(help_request=HelpRequest.new("explain", alice)), alice
    )
    explanation = _explanation(bob)

    await sync_channel.publish_attachment(DOC, created.id, explanation)
    again = await sync_channel.publish_attachment(DOC, created.id, explanation)

    assert [item.id for item in again.voice_explanations] == [explanation.id]
    stats = await document_repo.get_stats(DOC)
    assert stats.total_voice_explanations == 1
    assert stats.help_requests_open == 0


@pytest.mark.asyncio
async def test_attachment_to_missing_highlight(sync_channel, bob):
    with pytest.raises(HighlightNotFoundError):
        await sync_channel.publish_attachment(DOC, "missing", _explanation(bob))


@pytest.mark.asyncio
async def test_stored_record_keeps_needs_help_consistent(sync_channel, highlight_repo, alice, bob):
    created = await sync_channel.publish_create(
        DOC, _draft(help_request=HelpRequest.new("buddy", alice)), alice
    )
    await sync_channel.publish_attachment(DOC, created.id, _explanation(bob))

    for highlight in await highlight_repo.list_highlights(DOC):
        record = highlight.to_dict()
        assert record["needs_help"] == (
            record["help_request"] is not None and not record["voice_explanations"]
        )


@pytest.mark.asyncio
async def test_like_marks_explanation_helpful(sync_channel, alice, bob):
    created = await sync_channel.publish_create(DOC, _draft(), alice)
    explanation = _explanation(bob)
    await sync_channel.publish_attachment(DOC, created.id, explanation)

    liked = await sync_channel.publish_like(DOC, created.id, explanation.id)

    assert liked.voice_explanations[0].likes == 1
    assert liked.voice_explanations[0].is_helpful is True


@pytest.mark.asyncio
async def test_like_unknown_explanation(sync_channel, alice):
    created = await sync_channel.publish_create(DOC, _draft(), alice)

    with pytest.raises(HighlightNotFoundError):
        await sync_channel.publish_like(DOC, created.id, "voice_missing")


@pytest.mark.asyncio
async def test_only_creator_can_delete(sync_channel, document_repo, alice, bob):
    created = await sync_channel.publish_create(
        DOC, _draft(help_request=HelpRequest.new("explain", alice)), alice
    )

    with pytest.raises(PermissionDeniedError):
        await sync_channel.publish_delete(DOC, created.id, bob)

    await sync_channel.publish_delete(DOC, created.id, alice)

    assert await sync_channel.highlights.list_highlights(DOC) == []
    stats = await document_repo.get_stats(DOC)
    assert stats.total_highlights == 0
    assert stats.help_requests_open == 0


@pytest.mark.asyncio
async def test_open_help_requests_newest_first(sync_channel, alice, bob):
    older = await sync_channel.publish_create(
        DOC, _draft("older", HelpRequest.new("explain", alice)), alice
    )
    await sync_channel.publish_create(DOC, _draft("plain"), alice)
    newer = await sync_channel.publish_create(
        DOC, _draft("newer", HelpRequest.new("example", alice)), alice
    )
    answered = await sync_channel.publish_create(
        DOC, _draft("answered", HelpRequest.new("explain", alice)), alice
    )
    await sync_channel.publish_attachment(DOC, answered.id, _explanation(bob))

    open_requests = await sync_channel.open_help_requests(DOC)

    assert [item.id for item in open_requests] == [newer.id, older.id]


@pytest.mark.asyncio
async def test_subscribe_delivers_full_snapshot_on_each_write(sync_channel, alice):
    snapshots = []
    feed = await sync_channel.subscribe(DOC, snapshots.append)

    await sync_channel.publish_create(DOC, _draft("one"), alice)
    await sync_channel.publish_create(DOC, _draft("two"), alice)
    await feed.close()

    assert [len(snapshot) for snapshot in snapshots] == [0, 1, 2]
    assert [item.text for item in snapshots[-1]] == ["one", "two"]
