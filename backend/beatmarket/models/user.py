"""
User identity and profile models.

Identities come from bearer tokens. A lightweight profile is created in the
``users`` collection the first time an identity makes an authenticated request.
"""

from datetime import datetime

from pydantic import Field

from beatmarket.models.base import DocumentModel
from beatmarket.models.upload import utc_now


class CurrentUser(DocumentModel):
    """The authenticated caller of a request."""

    id: str = Field(..., min_length=1)
    email: str | None = None
    username: str | None = None


class UserProfile(DocumentModel):
    """Profile document keyed by the identity subject."""

    id: str = Field(..., alias="_id")
    email: str | None = None
    username: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
