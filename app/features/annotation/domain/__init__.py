"""
Domain subpackage for the collaborative annotation feature.
"""

from .errors import (
    AnnotationError,
    HighlightNotFoundError,
    IdentityRequiredError,
    PermissionDeniedError,
    SyncError,
)
from .geometry import find_overlapping, rectangles_overlap
from .models import (
    PENDING_ID_PREFIX,
    DocumentStats,
    HelpRequest,
    HelpType,
    Highlight,
    HighlightDraft,
    Notification,
    NotificationType,
    Position,
    PresenceRecord,
    UserIdentity,
    VoiceExplanation,
    utc_now,
)

__all__ = [
    "AnnotationError",
    "DocumentStats",
    "HelpRequest",
    "HelpType",
    "Highlight",
    "HighlightDraft",
    "HighlightNotFoundError",
    "IdentityRequiredError",
    "Notification",
    "NotificationType",
    "PENDING_ID_PREFIX",
    "PermissionDeniedError",
    "Position",
    "PresenceRecord",
    "SyncError",
    "UserIdentity",
    "VoiceExplanation",
    "find_overlapping",
    "rectangles_overlap",
    "utc_now",
]
