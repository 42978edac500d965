"""Exceptions shared across the annotation feature."""


class AnnotationError(Exception):
    """Base class for annotation engine failures."""


class IdentityRequiredError(AnnotationError):
    """A write was attempted without a signed-in user."""


class HighlightNotFoundError(AnnotationError):
    """The referenced highlight does not exist in the document."""


class PermissionDeniedError(AnnotationError):
    """The user may not perform this change (e.g. deleting someone else's highlight)."""


class SyncError(AnnotationError):
    """Publishing to or subscribing on the shared store failed."""
