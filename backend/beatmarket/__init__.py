"""
BeatMarket Backend Application Package

FastAPI backend of a marketplace for audio files: creators upload tracks, the
platform derives a preview clip and BPM metadata, and buyers spend credits to
download originals.

Package Structure:
- api/: REST API endpoints organized by version (v1)
- core/: Infrastructure (database, redis, storage, auth, errors)
- models/: Pydantic document and API models
- services/: Upload pipeline, credit ledger, purchases, catalog, payments
- utils/: Logging, caching, filename and signature helpers
"""

__version__ = "1.0.0"
__app_name__ = "BeatMarket"
