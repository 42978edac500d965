"""
Domain models for the collaborative annotation feature.

Records are stored as JSON in the shared store, so every model knows how to
turn itself into a plain dict and back. Timestamps are timezone-aware UTC and
serialized as ISO-8601 strings.
"""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

PENDING_ID_PREFIX = "pending-"

DEFAULT_SELECTION_WIDTH = 0.2
DEFAULT_SELECTION_HEIGHT = 0.03


def utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class HelpType(StrEnum):
    EXPLAIN = "explain"
    EXAMPLE = "example"
    BUDDY = "buddy"


class NotificationType(StrEnum):
    VOICE_EXPLANATION = "voice_explanation"


@dataclass(slots=True, frozen=True)
class UserIdentity:
    """Signed-in user as supplied by the auth collaborator."""

    uid: str
    display_name: str | None = None
    email: str | None = None
    photo_url: str | None = None

    @property
    def name(self) -> str:
        return self.display_name or self.email or self.uid


@dataclass(slots=True, frozen=True)
class Position:
    """Rectangle normalized to [0, 1] of the rendered page box."""

    x: float
    y: float
    width: float = DEFAULT_SELECTION_WIDTH
    height: float = DEFAULT_SELECTION_HEIGHT

    def __post_init__(self):
        for name in ("x", "y", "width", "height"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"position.{name} must be within [0, 1], got {value}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        # Zero-size selections (a click) get the default selection box
        width = data.get("width") or DEFAULT_SELECTION_WIDTH
        height = data.get("height") or DEFAULT_SELECTION_HEIGHT
        return cls(
            x=float(data["x"]),
            y=float(data["y"]),
            width=float(width),
            height=float(height),
        )

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(slots=True)
class HelpRequest:
    """
    A request for an explanation attached to a highlight.

    The request is kept after it is answered for audit; `active` goes False
    and `resolved_at` is stamped in the same write that attaches the first
    explanation.
    """

    type: HelpType
    requested_by: str
    requested_by_name: str
    requested_at: datetime
    details: str = ""
    active: bool = True
    resolved_at: datetime | None = None

    @classmethod
    def new(cls, help_type: HelpType | str, requester: UserIdentity, details: str = "") -> "HelpRequest":
        return cls(
            type=HelpType(help_type),
            requested_by=requester.uid,
            requested_by_name=requester.name,
            requested_at=utc_now(),
            details=details.strip(),
        )

    def resolved(self, when: datetime) -> "HelpRequest":
        return replace(self, active=False, resolved_at=self.resolved_at or when)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HelpRequest":
        return cls(
            type=HelpType(data["type"]),
            requested_by=data.get("requested_by", ""),
            requested_by_name=data.get("requested_by_name", ""),
            requested_at=_parse_dt(data.get("requested_at")) or utc_now(),
            details=data.get("details", ""),
            active=data.get("active", True),
            resolved_at=_parse_dt(data.get("resolved_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "details": self.details,
            "requested_by": self.requested_by,
            "requested_by_name": self.requested_by_name,
            "requested_at": _iso(self.requested_at),
            "active": self.active,
            "resolved_at": _iso(self.resolved_at),
        }


@dataclass(slots=True)
class VoiceExplanation:
    """An audio clip attached to a highlight."""

    id: str
    audio_url: str
    recorded_by: str
    recorded_by_name: str
    recorded_at: datetime
    recorded_by_avatar: str | None = None
    transcript: str | None = None
    duration_seconds: int = 0
    file_size: int = 0
    likes: int = 0
    is_helpful: bool = False

    @classmethod
    def new(
        cls,
        audio_url: str,
        recorder: UserIdentity,
        *,
        explanation_id: str | None = None,
        duration_seconds: int = 0,
        file_size: int = 0,
        transcript: str | None = None,
    ) -> "VoiceExplanation":
        return cls(
            id=explanation_id or f"voice_{uuid4().hex}",
            audio_url=audio_url,
            recorded_by=recorder.uid,
            recorded_by_name=recorder.name,
            recorded_by_avatar=recorder.photo_url,
            recorded_at=utc_now(),
            transcript=transcript or None,
            duration_seconds=duration_seconds,
            file_size=file_size,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VoiceExplanation":
        return cls(
            id=data["id"],
            audio_url=data["audio_url"],
            recorded_by=data["recorded_by"],
            recorded_by_name=data.get("recorded_by_name", ""),
            recorded_at=_parse_dt(data.get("recorded_at")) or utc_now(),
            recorded_by_avatar=data.get("recorded_by_avatar"),
            transcript=data.get("transcript"),
            duration_seconds=int(data.get("duration_seconds", 0)),
            file_size=int(data.get("file_size", 0)),
            likes=int(data.get("likes", 0)),
            is_helpful=bool(data.get("is_helpful", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "audio_url": self.audio_url,
            "recorded_by": self.recorded_by,
            "recorded_by_name": self.recorded_by_name,
            "recorded_by_avatar": self.recorded_by_avatar,
            "recorded_at": _iso(self.recorded_at),
            "transcript": self.transcript,
            "duration_seconds": self.duration_seconds,
            "file_size": self.file_size,
            "likes": self.likes,
            "is_helpful": self.is_helpful,
        }


@dataclass(slots=True)
class HighlightDraft:
    """What a client submits to create a highlight."""

    text: str
    page_number: int
    position: Position
    color: str | None = None
    help_request: HelpRequest | None = None


@dataclass(slots=True)
class Highlight:
    """A marked passage on one page of a shared document."""

    id: str
    text: str
    page_number: int
    position: Position
    color: str
    created_by: str
    created_by_name: str
    created_at: datetime
    created_by_avatar: str | None = None
    help_request: HelpRequest | None = None
    voice_explanations: list[VoiceExplanation] = field(default_factory=list)
    sequence: int = 0

    @property
    def needs_help(self) -> bool:
        return self.help_request is not None and not self.voice_explanations

    @property
    def is_pending(self) -> bool:
        return self.id.startswith(PENDING_ID_PREFIX)

    def sort_key(self) -> tuple[datetime, int, str]:
        return (self.created_at, self.sequence, self.id)

    def with_explanation(self, explanation: VoiceExplanation) -> "Highlight":
        """
        Copy with explanation appended and any open help request retired.

        An explanation whose id is already attached is not added again, so a
        retried attach returns the highlight unchanged.
        """
        if self.has_explanation(explanation.id):
            return self
        help_request = self.help_request
        if help_request is not None and help_request.active:
            help_request = help_request.resolved(explanation.recorded_at)
        return replace(
            self,
            help_request=help_request,
            voice_explanations=[*self.voice_explanations, explanation],
        )

    def has_explanation(self, explanation_id: str) -> bool:
        return any(item.id == explanation_id for item in self.voice_explanations)

    def to_draft(self, help_request: HelpRequest | None = None) -> HighlightDraft:
        return HighlightDraft(
            text=self.text,
            page_number=self.page_number,
            position=self.position,
            color=self.color,
            help_request=help_request,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Highlight":
        help_request = data.get("help_request")
        return cls(
            id=data["id"],
            text=data["text"],
            page_number=int(data["page_number"]),
            position=Position.from_dict(data["position"]),
            color=data.get("color", ""),
            created_by=data["created_by"],
            created_by_name=data.get("created_by_name", ""),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            created_by_avatar=data.get("created_by_avatar"),
            help_request=HelpRequest.from_dict(help_request) if help_request else None,
            voice_explanations=[
                VoiceExplanation.from_dict(item) for item in data.get("voice_explanations", [])
            ],
            sequence=int(data.get("sequence", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "page_number": self.page_number,
            "position": self.position.to_dict(),
            "color": self.color,
            "created_by": self.created_by,
            "created_by_name": self.created_by_name,
            "created_by_avatar": self.created_by_avatar,
            "created_at": _iso(self.created_at),
            "needs_help": self.needs_help,
            "help_request": self.help_request.to_dict() if self.help_request else None,
            "voice_explanations": [item.to_dict() for item in self.voice_explanations],
            "sequence": self.sequence,
        }


@dataclass(slots=True)
class PresenceRecord:
    """One user's presence on one document; keyed by user id."""

    user_id: str
    display_name: str
    joined_at: datetime
    last_activity: datetime
    photo_url: str | None = None
    is_recording: bool = False

    def is_stale(self, now: datetime, stale_after) -> bool:
        return now - self.last_activity > stale_after

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PresenceRecord":
        return cls(
            user_id=data["user_id"],
            display_name=data.get("display_name", ""),
            joined_at=_parse_dt(data.get("joined_at")) or utc_now(),
            last_activity=_parse_dt(data.get("last_activity")) or utc_now(),
            photo_url=data.get("photo_url"),
            is_recording=bool(data.get("is_recording", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "photo_url": self.photo_url,
            "joined_at": _iso(self.joined_at),
            "last_activity": _iso(self.last_activity),
            "is_recording": self.is_recording,
        }


@dataclass(slots=True)
class Notification:
    """A message addressed to exactly one recipient."""

    id: str
    type: NotificationType
    from_user_id: str
    from_user_name: str
    to_user_id: str
    highlight_id: str
    doc_id: str
    message: str
    created_at: datetime
    read: bool = False
    read_at: datetime | None = None
    from_user_avatar: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        return cls(
            id=data["id"],
            type=NotificationType(data["type"]),
            from_user_id=data["from_user_id"],
            from_user_name=data.get("from_user_name", ""),
            to_user_id=data["to_user_id"],
            highlight_id=data["highlight_id"],
            doc_id=data["doc_id"],
            message=data.get("message", ""),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            read=bool(data.get("read", False)),
            read_at=_parse_dt(data.get("read_at")),
            from_user_avatar=data.get("from_user_avatar"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "from_user_id": self.from_user_id,
            "from_user_name": self.from_user_name,
            "from_user_avatar": self.from_user_avatar,
            "to_user_id": self.to_user_id,
            "highlight_id": self.highlight_id,
            "doc_id": self.doc_id,
            "message": self.message,
            "created_at": _iso(self.created_at),
            "read": self.read,
            "read_at": _iso(self.read_at),
        }


@dataclass(slots=True)
class DocumentStats:
    """Aggregate counters kept on the parent document."""

    total_highlights: int = 0
    total_voice_explanations: int = 0
    help_requests_open: int = 0
    active_collaborators: int = 0
    last_activity: datetime | None = None
    last_activity_by: str | None = None

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "DocumentStats":
        return cls(
            total_highlights=int(data.get("total_highlights", 0)),
            total_voice_explanations=int(data.get("total_voice_explanations", 0)),
            help_requests_open=max(0, int(data.get("help_requests_open", 0))),
            active_collaborators=int(data.get("active_collaborators", 0)),
            last_activity=_parse_dt(data.get("last_activity")),
            last_activity_by=data.get("last_activity_by") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_highlights": self.total_highlights,
            "total_voice_explanations": self.total_voice_explanations,
            "help_requests_open": self.help_requests_open,
            "active_collaborators": self.active_collaborators,
            "last_activity": _iso(self.last_activity),
            "last_activity_by": self.last_activity_by,
        }
