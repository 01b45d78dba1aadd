"""
Catalog Service for BeatMarket

Read-only views over published uploads:
- ``search``: listings filtered by BPM range, newest first, cached in Redis
- ``get_listing``: a single published listing
- ``get_purchasable``: the upload and asset behind a listing, for purchases

A listing joins the upload with its asset, its latest ``bpm`` tag (ties broken
by id) and its owner's profile. Search runs as one aggregation pipeline.
"""

import logging

from typing import Any

from pymongo import DESCENDING

from beatmarket.config import Settings, get_settings
from beatmarket.core.database import (
    ASSETS_COLLECTION,
    TAGS_COLLECTION,
    USERS_COLLECTION,
    DatabaseClient,
)
from beatmarket.core.errors import BeatMarketError, NotFoundError, UpstreamError, ValidationError
from beatmarket.core.redis_client import CacheKeys
from beatmarket.core.storage import StorageClient
from beatmarket.models.listing import Listing
from beatmarket.models.upload import Asset, Upload, UploadStatus
from beatmarket.utils.cache import (
    clear_cache_pattern,
    generate_cache_key,
    get_cached_value,
    set_cached_value,
)


logger = logging.getLogger(__name__)

BPM_TAG = "bpm"
MIN_SEARCH_BPM = 0
MAX_SEARCH_BPM = 300
DEFAULT_SEARCH_LIMIT = 50
MAX_SEARCH_LIMIT = 100


def validate_bpm_range(bpm_min: int | None, bpm_max: int | None) -> None:
    """
    Check a BPM filter.

    Raises:
        ValidationError: If a bound is outside 0-300 or the range is inverted.
    """
    if bpm_min is not None and bpm_min < MIN_SEARCH_BPM:
        raise ValidationError(f"bpmMin must be at least {MIN_SEARCH_BPM}", field="bpmMin")
    if bpm_max is not None and bpm_max > MAX_SEARCH_BPM:
        raise ValidationError(f"bpmMax must be at most {MAX_SEARCH_BPM}", field="bpmMax")
    if bpm_min is not None and bpm_max is not None and bpm_min > bpm_max:
        raise ValidationError("bpmMin must not exceed bpmMax", field="bpmMin")


def build_search_pipeline(
    bpm_min: int | None = None,
    bpm_max: int | None = None,
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> list[dict[str, Any]]:
    """Build the aggregation over ``uploads`` that produces listing documents."""
    pipeline: list[dict[str, Any]] = [
        {"$match": {"status": UploadStatus.PUBLISHED.value}},
        {
            "$lookup": {
                "from": TAGS_COLLECTION,
                "let": {"upload_id": "$_id"},
                "pipeline": [
                    {
                        "$match": {
                            "$expr": {
                                "$and": [
                                    {"$eq": ["$upload_id", "$$upload_id"]},
                                    {"$eq": ["$name", BPM_TAG]},
                                ]
                            }
                        }
                    },
                    {"$sort": {"created_at": DESCENDING, "_id": DESCENDING}},
                    {"$limit": 1},
                ],
                "as": "bpm_tag",
            }
        },
        {
            "$lookup": {
                "from": ASSETS_COLLECTION,
                "localField": "_id",
                "foreignField": "upload_id",
                "as": "asset",
            }
        },
        {
            "$lookup": {
                "from": USERS_COLLECTION,
                "localField": "user_id",
                "foreignField": "_id",
                "as": "owner",
            }
        },
        {
            "$addFields": {
                "bpm": {"$first": "$bpm_tag.value"},
                "preview_path": {"$first": "$asset.preview_path"},
                "duration_seconds": {"$first": "$asset.duration_seconds"},
                "username": {"$first": "$owner.username"},
            }
        },
    ]

    bpm_filter: dict[str, int] = {}
    if bpm_min is not None:
        bpm_filter["$gte"] = bpm_min
    if bpm_max is not None:
        bpm_filter["$lte"] = bpm_max
    if bpm_filter:
        pipeline.append({"$match": {"bpm": bpm_filter}})

    pipeline.extend(
        [
            {"$sort": {"created_at": DESCENDING, "_id": DESCENDING}},
            {"$limit": limit},
            {
                "$project": {
                    "title": 1,
                    "price_cents": 1,
                    "created_at": 1,
                    "bpm": 1,
                    "preview_path": 1,
                    "duration_seconds": 1,
                    "username": 1,
                }
            },
        ]
    )
    return pipeline


async def invalidate_search_cache() -> int:
    """Drop every cached search result. Called when catalog visibility changes."""
    return await clear_cache_pattern(f"{CacheKeys.SEARCH}:*")


class CatalogService:
    """
    Listing search and lookup.

    Attributes:
        db_client: Connected DatabaseClient
        storage: Storage gateway used to build public preview URLs
        settings: Application settings (search cache TTL)
    """

    def __init__(
        self,
        db_client: DatabaseClient,
        storage: StorageClient,
        settings: Settings | None = None,
    ) -> None:
        self.db_client = db_client
        self.storage = storage
        self.settings = settings or get_settings()
        self.logger = logging.getLogger(__name__)

    def _to_listing(self, document: dict[str, Any]) -> Listing:
        preview_path = document.get("preview_path")
        bpm = document.get("bpm")
        return Listing(
            id=document["_id"],
            title=document["title"],
            bpm=int(bpm) if bpm is not None else None,
            price_cents=document.get("price_cents", 0),
            preview_url=self.storage.public_url(preview_path) if preview_path else None,
            duration_seconds=document.get("duration_seconds"),
            username=document.get("username"),
            created_at=document["created_at"],
        )

    async def search(
        self,
        bpm_min: int | None = None,
        bpm_max: int | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
    ) -> list[Listing]:
        """
        Search published listings by BPM range, newest first.

        Args:
            bpm_min: Inclusive lower bound (0-300).
            bpm_max: Inclusive upper bound (0-300).
            limit: Maximum results, clamped to 1-100.

        Raises:
            ValidationError: On an invalid range.
            UpstreamError: If the aggregation fails.
        """
        validate_bpm_range(bpm_min, bpm_max)
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))

        cache_key = generate_cache_key(
            CacheKeys.SEARCH, bpm_min=bpm_min, bpm_max=bpm_max, limit=limit
        )
        cached = await get_cached_value(cache_key)
        if cached is not None:
            return [Listing(**item) for item in cached]

        pipeline = build_search_pipeline(bpm_min, bpm_max, limit)
        try:
            cursor = self.db_client.get_uploads_collection().aggregate(pipeline)
            documents = await cursor.to_list(length=limit)
        except Exception as error:
            self.logger.exception("Catalog search failed")
            raise UpstreamError("Search failed") from error

        listings = [self._to_listing(document) for document in documents]
        await set_cached_value(
            cache_key,
            [listing.model_dump(mode="json") for listing in listings],
            ttl_seconds=self.settings.search_cache_ttl_seconds,
        )
        self.logger.debug(
            "Search bpm=[%s, %s] returned %d listings", bpm_min, bpm_max, len(listings)
        )
        return listings

    async def get_purchasable(self, listing_id: str) -> tuple[Upload, Asset]:
        """
        Return the published upload and its asset.

        Raises:
            NotFoundError: If the listing is not published or has no asset.
        """
        uploads = self.db_client.get_uploads_collection()
        assets = self.db_client.get_assets_collection()
        try:
            upload_doc = await uploads.find_one(
                {"_id": listing_id, "status": UploadStatus.PUBLISHED.value}
            )
            asset_doc = await assets.find_one({"upload_id": listing_id}) if upload_doc else None
        except BeatMarketError:
            raise
        except Exception as error:
            self.logger.exception("Failed to load listing %s", listing_id)
            raise UpstreamError("Failed to load listing") from error

        if upload_doc is None or asset_doc is None:
            raise NotFoundError("Listing not found", listing_id=listing_id)
        return Upload(**upload_doc), Asset(**asset_doc)

    async def get_listing(self, listing_id: str) -> Listing:
        """
        Return one published listing.

        Raises:
            NotFoundError: If the listing does not exist or is not published.
        """
        upload, asset = await self.get_purchasable(listing_id)

        tag = await self.db_client.get_tags_collection().find_one(
            {"upload_id": listing_id, "name": BPM_TAG},
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
        )
        owner = await self.db_client.get_users_collection().find_one({"_id": upload.user_id})

        return self._to_listing(
            {
                "_id": upload.id,
                "title": upload.title,
                "price_cents": upload.price_cents,
                "created_at": upload.created_at,
                "bpm": tag["value"] if tag else None,
                "preview_path": asset.preview_path,
                "duration_seconds": asset.duration_seconds,
                "username": owner.get("username") if owner else None,
            }
        )
