"""
Upload, Asset and Tag Models for BeatMarket.

An Upload is the creator-facing record of one track and carries the lifecycle
status. Its Asset holds the storage paths of the original and the derived
preview, and Tags hold derived metadata such as the detected BPM.

Status lifecycle:
    uploading -> processing -> pending <-> published

``processing`` is only entered from ``uploading`` by finalize; the owner can
only toggle between ``published`` and ``pending``.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import Field

from beatmarket.models.base import CamelModel, DocumentModel


def new_id() -> str:
    """Return a fresh UUID4 hex identifier."""
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


class UploadStatus(str, Enum):
    """
    Lifecycle states of an upload.

    Attributes:
        UPLOADING: Slot reserved, client is writing the original to storage.
        PROCESSING: Finalize has claimed the upload and is deriving the preview.
        PENDING: Preview ready, not visible in the catalog.
        PUBLISHED: Visible in the catalog and purchasable.
    """

    UPLOADING = "uploading"
    PROCESSING = "processing"
    PENDING = "pending"
    PUBLISHED = "published"


# States the owner may set and move between
OWNER_SETTABLE_STATUSES = frozenset({UploadStatus.PUBLISHED.value, UploadStatus.PENDING.value})


# =============================================================================
# Document Models
# =============================================================================


class Upload(DocumentModel):
    """A creator's upload record in the ``uploads`` collection."""

    id: str = Field(default_factory=new_id, alias="_id")
    user_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    status: UploadStatus = Field(default=UploadStatus.UPLOADING)
    price_cents: int = Field(..., ge=0, description="Price in minor currency units")
    country: str = Field(default="GB", min_length=2, max_length=2)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Asset(DocumentModel):
    """Storage locations for an upload. ``original_path`` never changes after creation."""

    id: str = Field(default_factory=new_id, alias="_id")
    upload_id: str
    original_path: str
    preview_path: str | None = None
    duration_seconds: int | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Tag(DocumentModel):
    """Derived metadata attached to an upload. The latest tag per name wins."""

    id: str = Field(default_factory=new_id, alias="_id")
    upload_id: str
    name: str = Field(..., min_length=1, max_length=50)
    value: Any
    confidence: float = Field(..., ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)


class TagFeedback(DocumentModel):
    """A user's suggested correction to a tag value."""

    id: str = Field(default_factory=new_id, alias="_id")
    upload_id: str
    user_id: str
    name: str = Field(..., min_length=1, max_length=50)
    value: Any
    created_at: datetime = Field(default_factory=utc_now)


class UploadErrorEvent(DocumentModel):
    """Audit row appended when finalize fails fatally."""

    id: str = Field(default_factory=new_id, alias="_id")
    upload_id: str
    stage: str
    error: str
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Service Results
# =============================================================================


class InitiateResult(CamelModel):
    """Returned by upload initiation: where and how the client writes the original."""

    upload_id: str
    write_url: str
    original_path: str
    upload_headers: dict[str, str] = Field(default_factory=dict)
    expires_in: int


class FinalizeResult(CamelModel):
    """Outcome of finalize, also returned for repeated calls on a finished upload."""

    upload_id: str
    preview_path: str
    preview_url: str
    bpm: int | None = None
    duration_seconds: int | None = None
    status: UploadStatus


class UploadSummary(CamelModel):
    """One row of the creator dashboard."""

    id: str
    title: str
    status: UploadStatus
    bpm: int | None = None
    price_cents: int
    created_at: datetime


# =============================================================================
# Request Bodies
# =============================================================================


class InitiateUploadRequest(CamelModel):
    title: str = Field(..., max_length=200)
    filename: str = Field(..., max_length=255)
    price_cents: int | None = Field(default=None, ge=0)


class FinalizeUploadRequest(CamelModel):
    upload_id: str = Field(..., min_length=1)


class UpdateUploadStatusRequest(CamelModel):
    status: str


class TagFeedbackRequest(CamelModel):
    upload_id: str = Field(..., min_length=1)
    name: str
    value: str | int | float
