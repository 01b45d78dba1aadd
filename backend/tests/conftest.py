"""
Pytest Configuration and Test Fixtures for the BeatMarket Backend

This module provides:
- Test settings with local JWT auth and payment secrets
- An in-memory stand-in for the Motor collections used by the services,
  including unique indexes, conditional updates, upserts and transactions
  that roll back their writes on abort
- Mocked S3 storage gateway and audio analysis service
- Service fixtures wired to the in-memory database
- JWT fixtures and a FastAPI TestClient with dependency overrides
"""

import asyncio
import copy
import os
import uuid

from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fastapi.testclient import TestClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from beatmarket.api.v1.dependencies import get_audio_analysis_service
from beatmarket.config import Settings, get_settings
from beatmarket.core.auth import create_local_jwt
from beatmarket.core.database import (
    ASSETS_COLLECTION,
    TRANSACTIONS_COLLECTION,
    WALLETS_COLLECTION,
    DatabaseClient,
    get_db_client,
)
from beatmarket.core.storage import SignedUpload, StorageClient, get_storage_client
from beatmarket.services.audio_analysis_service import AnalysisResult, AudioAnalysisService
from beatmarket.services.catalog_service import CatalogService
from beatmarket.services.ledger_service import LedgerService
from beatmarket.services.purchase_service import PurchaseService
from beatmarket.services.upload_service import UploadService


MONGODB_TEST_URI_ENV = "BEATMARKET_TEST_MONGODB_URI"


def pytest_configure(config: pytest.Config) -> None:
    """
    Register custom markers.

    - integration: needs a real MongoDB ($BEATMARKET_TEST_MONGODB_URI) or ffmpeg
    """
    config.addinivalue_line("markers", "integration: mark test as integration test")


# ==============================================================================
# In-Memory MongoDB Double
# ==============================================================================


def _sort_value(value: Any) -> tuple[bool, Any]:
    return (value is not None, value)


def _matches(document: dict[str, Any], query: dict[str, Any] | None) -> bool:
    for key, condition in (query or {}).items():
        value = document.get(key)
        if isinstance(condition, dict) and any(op.startswith("$") for op in condition):
            for op, argument in condition.items():
                if op == "$gte":
                    ok = value is not None and value >= argument
                elif op == "$gt":
                    ok = value is not None and value > argument
                elif op == "$lte":
                    ok = value is not None and value <= argument
                elif op == "$lt":
                    ok = value is not None and value < argument
                elif op == "$in":
                    ok = value in argument
                elif op == "$nin":
                    ok = value not in argument
                elif op == "$ne":
                    ok = value != argument
                else:
                    raise NotImplementedError(f"Query operator {op} is not supported")
                if not ok:
                    return False
        elif value != condition:
            return False
    return True


def _apply_update(document: dict[str, Any], update: dict[str, Any], inserting: bool) -> None:
    for op, fields in update.items():
        if op == "$set":
            document.update(copy.deepcopy(fields))
        elif op == "$inc":
            for key, amount in fields.items():
                document[key] = document.get(key, 0) + amount
        elif op == "$setOnInsert":
            if inserting:
                document.update(copy.deepcopy(fields))
        elif op == "$unset":
            for key in fields:
                document.pop(key, None)
        else:
            raise NotImplementedError(f"Update operator {op} is not supported")


class FakeSession:
    """
    Client session whose ``with_transaction`` commits by keeping the writes
    and aborts by replaying their undo steps in reverse.
    """

    def __init__(self) -> None:
        self.undo: list[Callable[[], None]] | None = None
        self.committed = 0
        self.aborted = 0

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        return None

    async def with_transaction(self, callback: Callable[["FakeSession"], Awaitable[Any]]) -> Any:
        self.undo = []
        try:
            result = await callback(self)
        except BaseException:
            for step in reversed(self.undo):
                step()
            self.aborted += 1
            raise
        finally:
            self.undo = None
        self.committed += 1
        return result


def _record_undo(session: FakeSession | None, step: Callable[[], None]) -> None:
    if session is not None and session.undo is not None:
        session.undo.append(step)


class FakeMongoClient:
    """Stands in for the Motor client; hands out transactional sessions."""

    def __init__(self) -> None:
        self.sessions: list[FakeSession] = []

    async def start_session(self) -> FakeSession:
        session = FakeSession()
        self.sessions.append(session)
        return session

    def close(self) -> None:
        return None


class FakeCursor:
    """Chainable cursor over a snapshot of matching documents."""

    def __init__(self, documents: list[dict[str, Any]]) -> None:
        self._documents = documents

    def sort(self, key_or_list: Any, direction: int | None = None) -> "FakeCursor":
        if isinstance(key_or_list, str):
            keys = [(key_or_list, direction or 1)]
        else:
            keys = list(key_or_list)
        for key, key_direction in reversed(keys):
            self._documents.sort(
                key=lambda doc, k=key: _sort_value(doc.get(k)), reverse=key_direction < 0
            )
        return self

    def limit(self, count: int) -> "FakeCursor":
        if count:
            self._documents = self._documents[:count]
        return self

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        documents = self._documents if length is None else self._documents[:length]
        return copy.deepcopy(documents)


class FakeCollection:
    """
    Async collection double with the semantics the services rely on.

    Every write yields to the event loop once before its read-modify-write
    step, and that step has no further awaits, so concurrent tasks interleave
    between operations but each single operation is atomic as in MongoDB.

    ``fail_next(method, error)`` makes the next call of ``method`` raise.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.documents: list[dict[str, Any]] = []
        self.unique_fields: set[str] = set()
        self._failures: dict[str, list[Exception]] = {}
        self.aggregate = MagicMock(name=f"{name}.aggregate")

    # Test controls -----------------------------------------------------------

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault(method, []).extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def _check_unique(
        self, candidate: dict[str, Any], ignore: dict[str, Any] | None = None
    ) -> None:
        for existing in self.documents:
            if existing is ignore:
                continue
            if existing.get("_id") == candidate.get("_id"):
                raise DuplicateKeyError(f"E11000 duplicate key on {self.name}._id", code=11000)
            for field in self.unique_fields:
                if field in candidate and existing.get(field) == candidate.get(field):
                    raise DuplicateKeyError(
                        f"E11000 duplicate key on {self.name}.{field}", code=11000
                    )

    def _first(self, query: dict[str, Any] | None, sort: Any = None) -> dict[str, Any] | None:
        matches = [doc for doc in self.documents if _matches(doc, query)]
        if sort:
            matches = FakeCursor(matches).sort(sort)._documents
        return matches[0] if matches else None

    def _upsert(
        self, query: dict[str, Any], update: dict[str, Any], session: "FakeSession | None"
    ) -> dict[str, Any]:
        document = {
            key: copy.deepcopy(value)
            for key, value in query.items()
            if not (isinstance(value, dict) and any(op.startswith("$") for op in value))
        }
        document.setdefault("_id", uuid.uuid4().hex)
        _apply_update(document, update, inserting=True)
        self._check_unique(document)
        self.documents.append(document)
        _record_undo(session, lambda: self.documents.remove(document))
        return document

    # Motor API ----------------------------------------------------------------

    async def create_index(self, keys: Any, unique: bool = False, **_kwargs: Any) -> str:
        if unique and isinstance(keys, str):
            self.unique_fields.add(keys)
        return str(keys)

    async def insert_one(
        self, document: dict[str, Any], session: "FakeSession | None" = None
    ) -> SimpleNamespace:
        await asyncio.sleep(0)
        self._maybe_fail("insert_one")
        stored = copy.deepcopy(document)
        stored.setdefault("_id", uuid.uuid4().hex)
        self._check_unique(stored)
        self.documents.append(stored)
        _record_undo(session, lambda: self.documents.remove(stored))
        return SimpleNamespace(inserted_id=stored["_id"], acknowledged=True)

    async def find_one(
        self, query: dict[str, Any] | None = None, *_args: Any, sort: Any = None, **_kwargs: Any
    ) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        self._maybe_fail("find_one")
        found = self._first(query, sort)
        return copy.deepcopy(found) if found is not None else None

    def find(self, query: dict[str, Any] | None = None, *_args: Any, **_kwargs: Any) -> FakeCursor:
        self._maybe_fail("find")
        return FakeCursor([doc for doc in self.documents if _matches(doc, query)])

    def _replace(
        self, target: dict[str, Any], update: dict[str, Any], session: "FakeSession | None"
    ) -> None:
        before = copy.deepcopy(target)
        updated = copy.deepcopy(target)
        _apply_update(updated, update, inserting=False)
        self._check_unique(updated, ignore=target)
        target.clear()
        target.update(updated)

        def _restore() -> None:
            target.clear()
            target.update(before)

        _record_undo(session, _restore)

    async def update_one(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
        session: "FakeSession | None" = None,
    ) -> SimpleNamespace:
        await asyncio.sleep(0)
        self._maybe_fail("update_one")
        target = self._first(query)
        if target is None:
            if not upsert:
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
            document = self._upsert(query, update, session)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=document["_id"])

        self._replace(target, update, session)
        return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)

    async def find_one_and_update(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
        sort: Any = None,
        session: "FakeSession | None" = None,
        **_kwargs: Any,
    ) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        self._maybe_fail("find_one_and_update")
        target = self._first(query, sort)
        if target is None:
            if not upsert:
                return None
            document = self._upsert(query, update, session)
            return copy.deepcopy(document) if return_document == ReturnDocument.AFTER else None

        before = copy.deepcopy(target)
        self._replace(target, update, session)
        return copy.deepcopy(target) if return_document == ReturnDocument.AFTER else before

    async def delete_one(self, query: dict[str, Any]) -> SimpleNamespace:
        await asyncio.sleep(0)
        self._maybe_fail("delete_one")
        target = self._first(query)
        if target is None:
            return SimpleNamespace(deleted_count=0)
        self.documents.remove(target)
        return SimpleNamespace(deleted_count=1)

    async def count_documents(self, query: dict[str, Any]) -> int:
        await asyncio.sleep(0)
        return sum(1 for doc in self.documents if _matches(doc, query))


class FakeDatabase(dict):
    """Maps collection names to FakeCollections, creating them on first access."""

    def __missing__(self, name: str) -> FakeCollection:
        collection = FakeCollection(name)
        self[name] = collection
        return collection


# Unique indexes created by DatabaseClient.create_indexes
UNIQUE_INDEXES: dict[str, str] = {
    ASSETS_COLLECTION: "upload_id",
    WALLETS_COLLECTION: "user_id",
    TRANSACTIONS_COLLECTION: "external_ref",
}


class MemoryDatabaseClient(DatabaseClient):
    """DatabaseClient whose database is a FakeDatabase."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._client = FakeMongoClient()
        self._database = FakeDatabase()
        for collection_name, field in UNIQUE_INDEXES.items():
            self._database[collection_name].unique_fields.add(field)

    async def ping(self) -> bool:
        return True


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def mock_settings() -> Settings:
    """Settings for tests: local JWTs, no Auth0, fixed payment secrets."""
    return Settings(
        app_env="testing",
        app_name="BeatMarket-Test",
        debug=True,
        secret_key="test-secret-key-for-jwt-signing-minimum-32-chars",
        mongodb_uri="mongodb://localhost:27017/test_beatmarket",
        mongodb_db_name="test_beatmarket",
        redis_url="redis://localhost:6379/1",
        s3_endpoint_url="http://localhost:9000",
        s3_access_key_id="test-access-key",
        s3_secret_access_key="test-secret-key",
        s3_public_base_url="https://cdn.test",
        auth0_domain=None,
        auth0_api_audience=None,
        stripe_secret_key="sk_test_beatmarket",
        stripe_webhook_secret="whsec_test_beatmarket",
        stripe_api_base="https://payments.test/v1",
        checkout_success_url="http://localhost:3000/wallet?status=success",
        checkout_cancel_url="http://localhost:3000/wallet?status=cancelled",
    )


# ==============================================================================
# Infrastructure Fixtures
# ==============================================================================


@pytest.fixture
def memory_db(mock_settings: Settings) -> MemoryDatabaseClient:
    """Fresh in-memory database per test."""
    return MemoryDatabaseClient(mock_settings)


@pytest.fixture
async def mongo_db_client(mock_settings: Settings) -> AsyncIterator[DatabaseClient]:
    """
    A real DatabaseClient on a throwaway database, dropped afterwards.

    Skips unless $BEATMARKET_TEST_MONGODB_URI points at a running server.
    """
    uri = os.environ.get(MONGODB_TEST_URI_ENV)
    if not uri:
        pytest.skip(f"{MONGODB_TEST_URI_ENV} is not set")

    settings = mock_settings.model_copy(
        update={"mongodb_uri": uri, "mongodb_db_name": f"test_beatmarket_{uuid.uuid4().hex[:12]}"}
    )
    client = DatabaseClient(settings)
    if not await client.connect():
        pytest.fail(f"MongoDB from {MONGODB_TEST_URI_ENV} is unreachable")
    try:
        await client.create_indexes()
        yield client
    finally:
        if client._client is not None:
            await client._client.drop_database(client.database_name)
        await client.close()


@pytest.fixture
def mock_storage() -> MagicMock:
    """
    Storage gateway mock.

    Signed URLs embed the object key so tests can assert which object a URL
    grants access to.
    """
    storage = MagicMock(spec=StorageClient)
    storage.create_upload_url = AsyncMock(
        side_effect=lambda key, content_type=None, expires_in=None: SignedUpload(
            url=f"https://storage.test/{key}?X-Amz-Signature=put",
            headers={"If-None-Match": "*"},
            expires_in=expires_in or 60,
        )
    )
    storage.create_download_url = AsyncMock(
        side_effect=lambda key, bucket=None, expires_in=None: (
            f"https://storage.test/{bucket or 'originals'}/{key}?X-Amz-Signature=get"
        )
    )
    storage.upload_preview = AsyncMock(return_value=None)
    storage.make_public = AsyncMock(return_value=None)
    storage.object_exists = AsyncMock(return_value=True)
    storage.public_url = MagicMock(side_effect=lambda key: f"https://cdn.test/{key}")
    return storage


@pytest.fixture
def analysis_result() -> AnalysisResult:
    return AnalysisResult(
        preview_bytes=b"ID3-preview-bytes",
        preview_duration_seconds=30.0,
        duration_seconds=184,
        bpm=128,
        confidence=0.8,
        content_type="audio/mpeg",
    )


@pytest.fixture
def mock_analysis(analysis_result: AnalysisResult) -> MagicMock:
    """Audio analysis mock returning a fixed result."""
    analysis = MagicMock(spec=AudioAnalysisService)
    analysis.analyze = AsyncMock(return_value=analysis_result)
    return analysis


# ==============================================================================
# Service Fixtures
# ==============================================================================


@pytest.fixture
def ledger(memory_db: MemoryDatabaseClient) -> LedgerService:
    return LedgerService(memory_db)


@pytest.fixture
def upload_service(
    memory_db: MemoryDatabaseClient,
    mock_storage: MagicMock,
    mock_analysis: MagicMock,
    mock_settings: Settings,
) -> UploadService:
    return UploadService(memory_db, mock_storage, analysis=mock_analysis, settings=mock_settings)


@pytest.fixture
def catalog_service(
    memory_db: MemoryDatabaseClient, mock_storage: MagicMock, mock_settings: Settings
) -> CatalogService:
    return CatalogService(memory_db, mock_storage, settings=mock_settings)


@pytest.fixture
def purchase_service(
    memory_db: MemoryDatabaseClient,
    ledger: LedgerService,
    catalog_service: CatalogService,
    mock_storage: MagicMock,
    mock_settings: Settings,
) -> PurchaseService:
    return PurchaseService(
        memory_db, ledger, catalog_service, mock_storage, settings=mock_settings
    )


# ==============================================================================
# Sample Data
# ==============================================================================


@pytest.fixture
def published_listing(memory_db: MemoryDatabaseClient) -> dict[str, Any]:
    """A published upload with asset, bpm tag and owner profile; price 250 cents."""
    created_at = datetime.now(UTC) - timedelta(hours=1)
    upload = {
        "_id": "listing-1",
        "user_id": "creator-1",
        "title": "Night Drive",
        "status": "published",
        "price_cents": 250,
        "country": "GB",
        "created_at": created_at,
        "updated_at": created_at,
    }
    database = memory_db.get_database()
    database["uploads"].documents.append(upload)
    database["assets"].documents.append(
        {
            "_id": "asset-1",
            "upload_id": "listing-1",
            "original_path": "originals/creator-1/listing-1/night_drive.wav",
            "preview_path": "previews/creator-1/listing-1/preview.mp3",
            "duration_seconds": 184,
            "created_at": created_at,
            "updated_at": created_at,
        }
    )
    database["tags"].documents.append(
        {
            "_id": "tag-1",
            "upload_id": "listing-1",
            "name": "bpm",
            "value": 128,
            "confidence": 0.8,
            "created_at": created_at,
        }
    )
    database["users"].documents.append(
        {"_id": "creator-1", "email": "creator@example.com", "username": "creator"}
    )
    return upload


# ==============================================================================
# Authentication Fixtures
# ==============================================================================


@pytest.fixture
def creator_token(mock_settings: Settings) -> str:
    return create_local_jwt("creator-1", "creator@example.com", mock_settings)


@pytest.fixture
def buyer_token(mock_settings: Settings) -> str:
    return create_local_jwt("buyer-1", "buyer@example.com", mock_settings)


@pytest.fixture
def creator_headers(creator_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {creator_token}"}


@pytest.fixture
def buyer_headers(buyer_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {buyer_token}"}


# ==============================================================================
# Application Fixtures
# ==============================================================================


@pytest.fixture
def test_client(
    mock_settings: Settings,
    memory_db: MemoryDatabaseClient,
    mock_storage: MagicMock,
    mock_analysis: MagicMock,
) -> Iterator[TestClient]:
    """
    TestClient over a fresh application.

    The lifespan is not entered, so no real MongoDB or Redis connection is
    made; every infrastructure dependency is overridden.
    """
    from main import create_app  # noqa: PLC0415

    application = create_app(mock_settings)
    application.dependency_overrides[get_settings] = lambda: mock_settings
    application.dependency_overrides[get_db_client] = lambda: memory_db
    application.dependency_overrides[get_storage_client] = lambda: mock_storage
    application.dependency_overrides[get_audio_analysis_service] = lambda: mock_analysis

    yield TestClient(application)

    application.dependency_overrides.clear()
