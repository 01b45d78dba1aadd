"""
Business logic for the BeatMarket backend.

- audio_analysis_service: preview transcoding and BPM detection
- upload_service: upload lifecycle (initiate, finalize, publish state)
- ledger_service: credit wallets with atomic spend and idempotent earn
- purchase_service: credit-gated downloads of originals
- catalog_service: listing search and lookup
- payment_service: checkout sessions and payment webhooks

Services take their collaborators in the constructor and are wired per request
by the routers' dependency functions.
"""
