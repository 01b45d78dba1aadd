"""
Catalog Listing Model.

A Listing is a read-only view: a published upload joined with its asset, its
latest bpm tag and its owner's profile. Nothing is stored under this shape.
"""

from datetime import datetime

from beatmarket.models.base import CamelModel


class Listing(CamelModel):
    id: str
    title: str
    bpm: int | None = None
    price_cents: int
    preview_url: str | None = None
    duration_seconds: int | None = None
    username: str | None = None
    created_at: datetime


class SearchResponse(CamelModel):
    results: list[Listing]
    count: int
