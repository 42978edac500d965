"""
Collaborative annotation feature package.

This vertical slice keeps every layer of shared document annotation
co-located (domain models, repositories, services, API routers) so
contributors can navigate highlights, help requests, voice explanations,
presence and notifications without hunting through global folders.
"""

# Re-export the primary building blocks for easy access.
from .domain.models import Highlight, HelpRequest, VoiceExplanation, PresenceRecord  # noqa: F401
from .services.sync_channel import SyncChannel  # noqa: F401
from .services.highlight_store import HighlightStore  # noqa: F401
from .services.presence_tracker import PresenceTracker  # noqa: F401
from .services.voice_pipeline import VoicePipeline  # noqa: F401
