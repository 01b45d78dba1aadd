"""
BeatMarket API v1 Router Aggregator.

Combines the v1 endpoint routers into ``api_router``, which the application
mounts under ``/api/v1``.

Router Structure:
    - /upload: upload initiation and finalization
    - /uploads: creator dashboard and publish state
    - /search, /listings: public catalog
    - /download: credit-gated downloads of originals
    - /purchase: credit package checkout
    - /wallet: balance and ledger history
    - /webhooks: payment provider callbacks
    - /feedback: tag corrections

A router whose module fails to import is logged and skipped so the rest of the
API still starts.
"""

import importlib
import logging

from fastapi import APIRouter


logger = logging.getLogger(__name__)

api_router = APIRouter()

loaded_routers: list[str] = []

# (module name, mount prefix)
ROUTER_MODULES: list[tuple[str, str]] = [
    ("upload", "/upload"),
    ("uploads", "/uploads"),
    ("search", ""),
    ("download", "/download"),
    ("purchase", "/purchase"),
    ("wallet", "/wallet"),
    ("webhooks", "/webhooks"),
    ("feedback", "/feedback"),
]


for module_name, prefix in ROUTER_MODULES:
    try:
        module = importlib.import_module(f"{__name__}.{module_name}")
    except ImportError:
        logger.exception("%s router not available", module_name)
        continue

    api_router.include_router(module.router, prefix=prefix)
    loaded_routers.append(module_name)
    logger.debug("Loaded %s router", module_name)


__all__ = ["api_router", "loaded_routers"]

if loaded_routers:
    logger.info("API v1 routers loaded: %s", ", ".join(loaded_routers))
else:
    logger.warning("No API v1 routers were loaded")
