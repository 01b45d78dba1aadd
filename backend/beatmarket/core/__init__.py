"""
Core infrastructure for the BeatMarket backend.

- auth: bearer token validation (Auth0 RS256 or local HS256) and the current user
- database: Motor client, collection accessors and indexes
- errors: error taxonomy and FastAPI exception handlers
- redis_client: optional Redis cache client
- storage: S3-compatible gateway for the originals and previews buckets
"""
