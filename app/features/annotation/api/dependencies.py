"""
Service wiring for the annotation routes.

Routes receive their collaborators through FastAPI dependencies so tests can
swap them with `app.dependency_overrides`.
"""

from app.features.annotation.repository.document_repository import DocumentRepository
from app.features.annotation.services.notification_fanout import NotificationFanout
from app.features.annotation.services.presence_tracker import PresenceTracker
from app.features.annotation.services.sync_channel import SyncChannel
from app.services.blob_storage import BlobStorage, HttpBlobStorage

_sync_channel = SyncChannel()
_presence_tracker = PresenceTracker()
_notification_fanout = NotificationFanout()
_document_repository = DocumentRepository()
_blob_storage = HttpBlobStorage()


def get_sync_channel() -> SyncChannel:
    return _sync_channel


def get_presence_tracker() -> PresenceTracker:
    return _presence_tracker


def get_notification_fanout() -> NotificationFanout:
    return _notification_fanout


def get_document_repository() -> DocumentRepository:
    return _document_repository


def get_blob_storage() -> BlobStorage:
    return _blob_storage
