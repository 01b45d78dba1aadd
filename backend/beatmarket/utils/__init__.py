"""
Utility helpers for the BeatMarket backend.

- cache: JSON cache helpers that degrade to misses without Redis
- file_validator: audio filename sanitization and validation
- logger: logging setup, JSON formatter and context adapter
- security: payment webhook signature verification
"""
