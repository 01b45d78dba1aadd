"""
BeatMarket MongoDB Database Client Module

Motor connection management for the marketplace collections:
- Pooled client, verified with ``ping`` and retried with exponential backoff
- Named accessors for every collection
- Index creation, including the unique keys the ledger relies on for idempotency
- Process-wide client used by the FastAPI lifespan and request dependencies
"""

import asyncio
import logging

from collections.abc import Awaitable, Callable
from typing import TypeVar

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorCollection,
    AsyncIOMotorDatabase,
)
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from beatmarket.config import Settings


logger = logging.getLogger(__name__)

T = TypeVar("T")

UPLOADS_COLLECTION = "uploads"
ASSETS_COLLECTION = "assets"
TAGS_COLLECTION = "tags"
TAG_FEEDBACK_COLLECTION = "tag_feedback"
UPLOAD_ERRORS_COLLECTION = "upload_errors"
USERS_COLLECTION = "users"
WALLETS_COLLECTION = "wallets"
TRANSACTIONS_COLLECTION = "transactions"
PURCHASES_COLLECTION = "purchases"

CONNECT_ATTEMPTS = 3

_RECENT_FIRST = ("created_at", DESCENDING)

# (collection, keys, unique)
INDEXES: list[tuple[str, str | list[tuple[str, int]], bool]] = [
    (UPLOADS_COLLECTION, [("user_id", ASCENDING), _RECENT_FIRST], False),
    (UPLOADS_COLLECTION, [("status", ASCENDING), _RECENT_FIRST], False),
    (ASSETS_COLLECTION, "upload_id", True),
    (TAGS_COLLECTION, [("upload_id", ASCENDING), ("name", ASCENDING), _RECENT_FIRST], False),
    (TAG_FEEDBACK_COLLECTION, "upload_id", False),
    (UPLOAD_ERRORS_COLLECTION, [("upload_id", ASCENDING), _RECENT_FIRST], False),
    (WALLETS_COLLECTION, "user_id", True),
    (TRANSACTIONS_COLLECTION, "external_ref", True),
    (TRANSACTIONS_COLLECTION, [("user_id", ASCENDING), _RECENT_FIRST], False),
    (PURCHASES_COLLECTION, [("user_id", ASCENDING), _RECENT_FIRST], False),
    (PURCHASES_COLLECTION, "listing_id", False),
]


class DatabaseClient:
    """
    Pooled Motor client for the marketplace database.

    Services reach collections only through the ``get_*_collection``
    accessors, which raise RuntimeError until ``connect()`` succeeds.

    Example usage:
        ```python
        db_client = DatabaseClient(settings)
        await db_client.connect()

        wallets = db_client.get_wallets_collection()
        await wallets.find_one({"user_id": "user_1"})

        await db_client.close()
        ```
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._client: AsyncIOMotorClient | None = None
        self._database: AsyncIOMotorDatabase | None = None

    @property
    def database_name(self) -> str:
        return self._settings.mongodb_db_name

    async def connect(self) -> bool:
        """
        Open the pool and confirm it with ``ping``.

        Waits 1s then 2s between the three attempts.

        Returns:
            bool: True once a ping succeeds, False when every attempt failed.
        """
        settings = self._settings

        for attempt in range(1, CONNECT_ATTEMPTS + 1):
            client = AsyncIOMotorClient(
                settings.mongodb_uri,
                minPoolSize=settings.mongodb_min_pool_size,
                maxPoolSize=settings.mongodb_max_pool_size,
                serverSelectionTimeoutMS=5000,
                tz_aware=True,
            )
            try:
                await client.admin.command("ping")
            except PyMongoError:
                logger.exception(
                    "MongoDB %s unreachable (attempt %d/%d)",
                    self.database_name,
                    attempt,
                    CONNECT_ATTEMPTS,
                )
                client.close()
                if attempt < CONNECT_ATTEMPTS:
                    await asyncio.sleep(2 ** (attempt - 1))
                continue

            self._client = client
            self._database = client[self.database_name]
            logger.info(
                "Connected to MongoDB database %s (pool %d-%d)",
                self.database_name,
                settings.mongodb_min_pool_size,
                settings.mongodb_max_pool_size,
            )
            return True

        return False

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            logger.info("MongoDB connection closed for database: %s", self.database_name)
        self._client = None
        self._database = None

    async def ping(self) -> bool:
        """True when the server answers the admin ping."""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
        except PyMongoError:
            logger.warning("MongoDB ping failed", exc_info=True)
            return False
        return True

    async def run_in_transaction(
        self, callback: Callable[[AsyncIOMotorClientSession], Awaitable[T]]
    ) -> T:
        """
        Run ``callback(session)`` inside one multi-document transaction.

        Every collection call in the callback must pass ``session=session``.
        The driver commits when the callback returns, aborts when it raises,
        and re-runs it on transient write conflicts. Requires a replica set.
        """
        if self._client is None:
            raise RuntimeError("MongoDB client not available. Call connect() first.")
        async with await self._client.start_session() as session:
            return await session.with_transaction(callback)

    def get_database(self) -> AsyncIOMotorDatabase:
        if self._database is None:
            raise RuntimeError("MongoDB database not available. Call connect() first.")
        return self._database

    def get_collection(self, name: str) -> AsyncIOMotorCollection:
        return self.get_database()[name]

    # =========================================================================
    # Collection Accessors
    # =========================================================================

    def get_uploads_collection(self) -> AsyncIOMotorCollection:
        """Uploads: one document per upload with its lifecycle status and price."""
        return self.get_collection(UPLOADS_COLLECTION)

    def get_assets_collection(self) -> AsyncIOMotorCollection:
        """Assets: original and preview object paths plus derived duration."""
        return self.get_collection(ASSETS_COLLECTION)

    def get_tags_collection(self) -> AsyncIOMotorCollection:
        """Tags: key/value annotations such as bpm, with confidence."""
        return self.get_collection(TAGS_COLLECTION)

    def get_tag_feedback_collection(self) -> AsyncIOMotorCollection:
        return self.get_collection(TAG_FEEDBACK_COLLECTION)

    def get_upload_errors_collection(self) -> AsyncIOMotorCollection:
        """Diagnostic events appended on fatal finalize failures."""
        return self.get_collection(UPLOAD_ERRORS_COLLECTION)

    def get_users_collection(self) -> AsyncIOMotorCollection:
        return self.get_collection(USERS_COLLECTION)

    def get_wallets_collection(self) -> AsyncIOMotorCollection:
        """Wallets: per-user balance and lifetime counters. Written only by the ledger."""
        return self.get_collection(WALLETS_COLLECTION)

    def get_transactions_collection(self) -> AsyncIOMotorCollection:
        """Transactions: immutable ledger rows. Written only by the ledger."""
        return self.get_collection(TRANSACTIONS_COLLECTION)

    def get_purchases_collection(self) -> AsyncIOMotorCollection:
        return self.get_collection(PURCHASES_COLLECTION)

    async def create_indexes(self) -> None:
        """
        Create every index in ``INDEXES``.

        The unique ones are load-bearing: ``wallets.user_id`` keeps one wallet
        per user under concurrent upserts, ``transactions.external_ref`` rejects
        replayed payment events, and ``assets.upload_id`` keeps the
        Upload/Asset relation one-to-one.
        """
        database = self.get_database()
        for collection_name, keys, unique in INDEXES:
            try:
                await database[collection_name].create_index(keys, unique=unique)
            except PyMongoError:
                logger.exception("Failed to create index %s on %s", keys, collection_name)
                raise
        logger.info("Ensured %d MongoDB indexes", len(INDEXES))


class _DatabaseClientContainer:
    client: DatabaseClient | None = None


_container = _DatabaseClientContainer()


async def init_db(settings: Settings | None = None) -> DatabaseClient:
    """
    Connect the process-wide client and ensure indexes.

    Raises:
        RuntimeError: If MongoDB stayed unreachable through every attempt.
    """
    if _container.client is not None:
        return _container.client

    client = DatabaseClient(settings or Settings())
    if not await client.connect():
        raise RuntimeError("Failed to establish MongoDB connection. Check mongodb_uri.")

    await client.create_indexes()
    _container.client = client
    return client


async def close_db() -> None:
    client, _container.client = _container.client, None
    if client is not None:
        await client.close()


def get_db_client() -> DatabaseClient:
    """
    Return the process-wide client.

    Raises:
        RuntimeError: If ``init_db`` has not run.
    """
    if _container.client is None:
        raise RuntimeError("Database client not initialized. Call init_db() during startup.")
    return _container.client
