# app/models/api/annotation_request.py
"""
Annotation API request models.
Used by routes for input validation.
"""

from pydantic import BaseModel, Field

from app.features.annotation.domain import HelpType


class PositionRequest(BaseModel):
    """Selection rectangle normalized to the rendered page box."""

    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(default=0.2, ge=0.0, le=1.0)
    height: float = Field(default=0.03, ge=0.0, le=1.0)


class HelpRequestBody(BaseModel):
    """Request for an explanation from other participants."""

    type: HelpType = Field(..., description="explain, example or buddy")
    details: str = Field(default="", max_length=1000, description="What exactly is unclear")


class CreateHighlightRequest(BaseModel):
    """Request for committing a highlight."""

    text: str = Field(..., min_length=1, max_length=5000, description="Selected passage")
    page_number: int = Field(..., ge=1, description="1-based page number")
    position: PositionRequest
    color: str | None = Field(default=None, max_length=32)
    help_request: HelpRequestBody | None = Field(
        default=None, description="Ask for help in the same write"
    )


class RecordingStatusRequest(BaseModel):
    """Request for toggling the recording indicator."""

    is_recording: bool
