"""
Service layer for the collaborative annotation feature.
"""

from .document_session import DocumentSession
from .highlight_store import CommitInProgressError, HighlightStore, SelectionRoute
from .live_feed import LiveFeed
from .notification_fanout import NotificationFanout, format_notification
from .presence_tracker import HeartbeatTimer, PresenceTracker, fresh_roster, recording_users
from .sync_channel import SyncChannel
from .voice_pipeline import (
    AttachmentTarget,
    AudioClip,
    CaptureDevice,
    CaptureError,
    CaptureErrorReason,
    InvalidPipelineStateError,
    PipelineState,
    UploadFailedError,
    VoicePipeline,
)

__all__ = [
    "AttachmentTarget",
    "AudioClip",
    "CaptureDevice",
    "CaptureError",
    "CaptureErrorReason",
    "CommitInProgressError",
    "DocumentSession",
    "HeartbeatTimer",
    "HighlightStore",
    "InvalidPipelineStateError",
    "LiveFeed",
    "NotificationFanout",
    "PipelineState",
    "PresenceTracker",
    "SelectionRoute",
    "SyncChannel",
    "UploadFailedError",
    "VoicePipeline",
    "format_notification",
    "fresh_roster",
    "recording_users",
]
