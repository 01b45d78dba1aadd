"""
BeatMarket Catalog Router

    GET /search                  published listings filtered by BPM, newest first
    GET /listings/{listing_id}   one published listing

Both endpoints are public.
"""

from fastapi import APIRouter, Depends, Query

from beatmarket.api.v1.dependencies import get_catalog_service
from beatmarket.models.listing import Listing, SearchResponse
from beatmarket.services.catalog_service import (
    DEFAULT_SEARCH_LIMIT,
    MAX_SEARCH_BPM,
    MAX_SEARCH_LIMIT,
    MIN_SEARCH_BPM,
    CatalogService,
)


router = APIRouter(tags=["catalog"])


@router.get(
    "/search",
    response_model=SearchResponse,
    summary="Search listings",
    responses={400: {"description": "Invalid BPM range"}},
)
async def search_listings(
    bpm_min: int | None = Query(default=None, alias="bpmMin", ge=MIN_SEARCH_BPM),
    bpm_max: int | None = Query(default=None, alias="bpmMax", le=MAX_SEARCH_BPM),
    limit: int = Query(default=DEFAULT_SEARCH_LIMIT, ge=1, le=MAX_SEARCH_LIMIT),
    catalog: CatalogService = Depends(get_catalog_service),
) -> SearchResponse:
    results = await catalog.search(bpm_min=bpm_min, bpm_max=bpm_max, limit=limit)
    return SearchResponse(results=results, count=len(results))


@router.get(
    "/listings/{listing_id}",
    response_model=Listing,
    summary="Get a listing",
    responses={404: {"description": "Listing not found"}},
)
async def get_listing(
    listing_id: str,
    catalog: CatalogService = Depends(get_catalog_service),
) -> Listing:
    return await catalog.get_listing(listing_id)
