"""
Annotation routes.

HTTP endpoints for highlights, help requests, voice explanations, presence
and notifications, plus a WebSocket that streams highlight snapshots for a
document. All writes require a signed-in user.
"""

from uuid import uuid4

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)

from app.auth.verify import auth_dependency, identity_from_token
from app.features.annotation.api.dependencies import (
    get_blob_storage,
    get_document_repository,
    get_notification_fanout,
    get_presence_tracker,
    get_sync_channel,
)
from app.features.annotation.domain import (
    AnnotationError,
    HelpRequest,
    Highlight,
    HighlightDraft,
    HighlightNotFoundError,
    IdentityRequiredError,
    PermissionDeniedError,
    Position,
    SyncError,
    UserIdentity,
    VoiceExplanation,
)
from app.features.annotation.repository.document_repository import DocumentRepository
from app.features.annotation.repository.notification_repository import (
    NotificationRepositoryError,
)
from app.features.annotation.services.notification_fanout import (
    NotificationFanout,
    format_notification,
)
from app.features.annotation.services.presence_tracker import PresenceTracker, recording_users
from app.features.annotation.services.sync_channel import SyncChannel
from app.infrastructure.observability.logging import get_logger
from app.models.api.annotation_request import (
    CreateHighlightRequest,
    HelpRequestBody,
    RecordingStatusRequest,
)
from app.services.blob_storage import BlobStorage, BlobStorageError

logger = get_logger(__name__)

router = APIRouter(prefix="/documents", tags=["annotations"])
notifications_router = APIRouter(prefix="/notifications", tags=["notifications"])

MAX_AUDIO_BYTES = 25 * 1024 * 1024


def _to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, IdentityRequiredError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(error))
    if isinstance(error, PermissionDeniedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    if isinstance(error, HighlightNotFoundError | NotificationRepositoryError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, SyncError | BlobStorageError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# =================================================================
# HIGHLIGHTS
# =================================================================


@router.get("/{doc_id}/highlights")
async def list_highlights(
    doc_id: str,
    page_number: int | None = Query(default=None, ge=1),
    user: UserIdentity = Depends(auth_dependency),
    sync: SyncChannel = Depends(get_sync_channel),
) -> dict:
    try:
        highlights = await sync.highlights.list_highlights(doc_id)
    except AnnotationError as e:
        raise _to_http_error(e) from e

    if page_number is not None:
        highlights = [item for item in highlights if item.page_number == page_number]
    return {"highlights": [item.to_dict() for item in highlights]}


@router.post("/{doc_id}/highlights", status_code=status.HTTP_201_CREATED)
async def create_highlight(
    doc_id: str,
    payload: CreateHighlightRequest,
    user: UserIdentity = Depends(auth_dependency),
    sync: SyncChannel = Depends(get_sync_channel),
) -> dict:
    text = payload.text.strip()
    if not text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Selection is blank")

    help_request = None
    if payload.help_request is not None:
        help_request = HelpRequest.new(
            payload.help_request.type, user, payload.help_request.details
        )

    draft = HighlightDraft(
        text=text,
        page_number=payload.page_number,
        position=Position.from_dict(payload.position.model_dump()),
        color=payload.color,
        help_request=help_request,
    )
    try:
        highlight = await sync.publish_create(doc_id, draft, user)
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return highlight.to_dict()


@router.post("/{doc_id}/highlights/{highlight_id}/help")
async def request_help(
    doc_id: str,
    highlight_id: str,
    payload: HelpRequestBody,
    user: UserIdentity = Depends(auth_dependency),
    sync: SyncChannel = Depends(get_sync_channel),
) -> dict:
    try:
        highlight = await sync.publish_help_request(
            doc_id, highlight_id, HelpRequest.new(payload.type, user, payload.details)
        )
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return highlight.to_dict()


@router.post("/{doc_id}/highlights/{highlight_id}/explanations", status_code=status.HTTP_201_CREATED)
async def attach_explanation(
    doc_id: str,
    highlight_id: str,
    request: Request,
    duration_seconds: int = Query(default=0, ge=0),
    transcript: str | None = Query(default=None, max_length=5000),
    user: UserIdentity = Depends(auth_dependency),
    sync: SyncChannel = Depends(get_sync_channel),
    storage: BlobStorage = Depends(get_blob_storage),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> dict:
    """Upload a recorded clip (raw request body) and attach it to the highlight."""
    audio = await request.body()
    if not audio:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty recording")
    if len(audio) > MAX_AUDIO_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Recording too large"
        )

    content_type = request.headers.get("content-type", "audio/webm")
    extension = content_type.split("/")[-1].split(";")[0] or "bin"
    explanation_id = f"voice_{uuid4().hex}"

    try:
        audio_url = await storage.upload(
            f"audio/{doc_id}/{explanation_id}.{extension}", audio, content_type
        )
        explanation = VoiceExplanation.new(
            audio_url,
            user,
            explanation_id=explanation_id,
            duration_seconds=duration_seconds,
            file_size=len(audio),
            transcript=transcript,
        )
        highlight = await sync.publish_attachment(doc_id, highlight_id, explanation)
    except (AnnotationError, BlobStorageError) as e:
        raise _to_http_error(e) from e

    await _notify_creator(fanout, doc_id, highlight, user)
    return {"explanation": explanation.to_dict(), "highlight": highlight.to_dict()}


@router.post("/{doc_id}/highlights/{highlight_id}/explanations/{explanation_id}/like")
async def like_explanation(
    doc_id: str,
    highlight_id: str,
    explanation_id: str,
    user: UserIdentity = Depends(auth_dependency),
    sync: SyncChannel = Depends(get_sync_channel),
) -> dict:
    try:
        highlight = await sync.publish_like(doc_id, highlight_id, explanation_id)
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return highlight.to_dict()


@router.delete("/{doc_id}/highlights/{highlight_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_highlight(
    doc_id: str,
    highlight_id: str,
    user: UserIdentity = Depends(auth_dependency),
    sync: SyncChannel = Depends(get_sync_channel),
) -> Response:
    try:
        await sync.publish_delete(doc_id, highlight_id, user)
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{doc_id}/help-requests")
async def list_help_requests(
    doc_id: str,
    user: UserIdentity = Depends(auth_dependency),
    sync: SyncChannel = Depends(get_sync_channel),
) -> dict:
    try:
        highlights = await sync.open_help_requests(doc_id)
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return {"help_requests": [item.to_dict() for item in highlights]}


@router.get("/{doc_id}/stats")
async def document_stats(
    doc_id: str,
    user: UserIdentity = Depends(auth_dependency),
    documents: DocumentRepository = Depends(get_document_repository),
) -> dict:
    stats = await documents.get_stats(doc_id)
    return stats.to_dict()


@router.websocket("/{doc_id}/highlights/feed")
async def highlight_feed(
    websocket: WebSocket,
    doc_id: str,
    token: str = Query(...),
    sync: SyncChannel = Depends(get_sync_channel),
):
    """Stream the full highlight list every time it changes."""
    try:
        user = identity_from_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()

    async def _send(highlights: list[Highlight]) -> None:
        await websocket.send_json({"highlights": [item.to_dict() for item in highlights]})

    async def _lost(error: Exception) -> None:
        logger.warning("Highlight feed lost, closing socket", doc_id=doc_id, user_id=user.uid, error=str(error))
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)

    try:
        feed = await sync.subscribe(doc_id, _send, on_lost=_lost)
    except SyncError as e:
        logger.error("Highlight feed unavailable", doc_id=doc_id, user_id=user.uid, error=str(e))
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    try:
        while True:
            # Client messages are ignored; receiving detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Highlight feed client disconnected", doc_id=doc_id, user_id=user.uid)
    finally:
        await feed.close()


# =================================================================
# PRESENCE
# =================================================================


@router.post("/{doc_id}/presence")
async def join_document(
    doc_id: str,
    user: UserIdentity = Depends(auth_dependency),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict:
    joined = await tracker.join(doc_id, user)
    return {"joined": joined}


@router.post("/{doc_id}/presence/heartbeat")
async def presence_heartbeat(
    doc_id: str,
    user: UserIdentity = Depends(auth_dependency),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict:
    return {"refreshed": await tracker.heartbeat(doc_id, user.uid)}


@router.put("/{doc_id}/presence/recording")
async def set_recording_status(
    doc_id: str,
    payload: RecordingStatusRequest,
    user: UserIdentity = Depends(auth_dependency),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict:
    updated = await tracker.set_recording(doc_id, user.uid, payload.is_recording)
    return {"updated": updated}


@router.delete("/{doc_id}/presence")
async def leave_document(
    doc_id: str,
    user: UserIdentity = Depends(auth_dependency),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict:
    return {"left": await tracker.leave(doc_id, user.uid)}


@router.get("/{doc_id}/presence")
async def get_roster(
    doc_id: str,
    user: UserIdentity = Depends(auth_dependency),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict:
    try:
        roster = await tracker.roster(doc_id)
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return {
        "active_users": [record.to_dict() for record in roster],
        "recording_user_ids": [record.user_id for record in recording_users(roster)],
    }


# =================================================================
# NOTIFICATIONS
# =================================================================


@notifications_router.get("")
async def list_unread_notifications(
    user: UserIdentity = Depends(auth_dependency),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> dict:
    try:
        notifications = await fanout.unread(user.uid)
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return {"notifications": [format_notification(item) for item in notifications]}


@notifications_router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    user: UserIdentity = Depends(auth_dependency),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> dict:
    try:
        changed = await fanout.mark_read(user.uid, notification_id)
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return {"changed": changed}


@notifications_router.post("/read-all")
async def mark_all_notifications_read(
    user: UserIdentity = Depends(auth_dependency),
    fanout: NotificationFanout = Depends(get_notification_fanout),
) -> dict:
    try:
        changed = await fanout.mark_all_read(user.uid)
    except AnnotationError as e:
        raise _to_http_error(e) from e
    return {"changed": changed}


async def _notify_creator(
    fanout: NotificationFanout, doc_id: str, highlight: Highlight, helper: UserIdentity
) -> None:
    try:
        await fanout.notify_explanation_attached(doc_id, highlight.id, helper, highlight.created_by)
    except Exception as e:
        logger.error(
            "Explanation notification failed",
            doc_id=doc_id,
            highlight_id=highlight.id,
            error=str(e),
        )


__all__ = ["router", "notifications_router"]
