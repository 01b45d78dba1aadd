"""
BeatMarket Utilities and Core Test Suite

- Audio filename sanitization and validation
- Error taxonomy bodies and status codes
- Cache key generation and cache helpers without Redis
- JSON log formatting and context adapters
- Local JWT creation and validation
- Unique index creation
"""

import json
import logging

import pytest

from beatmarket.core.auth import _derive_username, create_local_jwt, validate_local_jwt
from beatmarket.core.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    PaymentProviderError,
    TranscodeError,
    ValidationError,
)
from beatmarket.utils.cache import clear_cache_pattern, generate_cache_key, get_cached_value
from beatmarket.utils.file_validator import sanitize_filename, validate_audio_filename
from beatmarket.utils.logger import JSONFormatter, add_log_context


AUDIO_EXTENSIONS = [".mp3", ".wav", ".flac"]


class TestFilenameValidation:
    """Filenames become one object key segment."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("../../my beat (final).WAV", "my_beat_final.wav"),
            ("C:\\Users\\me\\loop.mp3", "loop.mp3"),
            ("  spaced   out.flac", "spaced_out.flac"),
            (".wav", "wav"),
            ("", "unnamed_file"),
        ],
    )
    def test_sanitize(self, raw, expected) -> None:
        assert sanitize_filename(raw) == expected

    def test_long_names_keep_extension(self) -> None:
        sanitized = sanitize_filename("a" * 400 + ".mp3")

        assert len(sanitized) == 255
        assert sanitized.endswith(".mp3")

    def test_valid_audio(self) -> None:
        assert validate_audio_filename("Beat.MP3", AUDIO_EXTENSIONS) == "Beat.mp3"

    @pytest.mark.parametrize("filename", ["script.sh", "archive.zip", "beat", ".wav"])
    def test_rejects_non_audio(self, filename) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_audio_filename(filename, AUDIO_EXTENSIONS)

        assert exc_info.value.details["field"] == "filename"

    @pytest.mark.parametrize("filename", [None, "", "   "])
    def test_rejects_blank(self, filename) -> None:
        with pytest.raises(ValidationError, match="Title and filename are required"):
            validate_audio_filename(filename, AUDIO_EXTENSIONS)


class TestErrors:
    """Error kinds map to fixed status codes."""

    @pytest.mark.parametrize(
        ("error", "kind", "status_code"),
        [
            (ValidationError("bad"), "validation_error", 400),
            (AuthError("who"), "auth_error", 401),
            (NotFoundError("gone"), "not_found", 404),
            (ForbiddenError("theirs"), "forbidden", 404),
            (ConflictError("busy"), "conflict", 409),
            (TranscodeError("ffmpeg"), "upstream_error", 500),
            (PaymentProviderError("stripe"), "upstream_error", 502),
        ],
    )
    def test_kind_and_status(self, error, kind, status_code) -> None:
        body = error.to_dict()

        assert body["error"] == kind
        assert body["statusCode"] == status_code
        assert error.status_code == status_code

    def test_details_are_merged_into_body(self) -> None:
        body = NotFoundError("Upload not found", upload_id="abc").to_dict()

        assert body == {
            "error": "not_found",
            "message": "Upload not found",
            "statusCode": 404,
            "upload_id": "abc",
        }

    def test_insufficient_funds_body(self) -> None:
        error = InsufficientFundsError(credits_needed=3, credits_available=1)

        assert error.to_dict() == {
            "error": "insufficient_funds",
            "message": "Insufficient credits",
            "statusCode": 402,
            "creditsNeeded": 3,
            "creditsAvailable": 1,
        }


class TestCache:
    """Cache helpers degrade to misses without Redis."""

    def test_cache_key_is_order_independent(self) -> None:
        first = generate_cache_key("search", bpm_min=90, bpm_max=120, limit=50)
        second = generate_cache_key("search", limit=50, bpm_max=120, bpm_min=90)

        assert first == second
        assert first.startswith("search:")

    def test_cache_key_distinguishes_values(self) -> None:
        assert generate_cache_key("search", bpm_min=90) != generate_cache_key(
            "search", bpm_min=None
        )

    @pytest.mark.asyncio
    async def test_helpers_without_redis(self) -> None:
        assert await get_cached_value("search:any") is None
        assert await clear_cache_pattern("search:*") == 0


class TestLogging:
    """JSON formatting and context enrichment."""

    def test_json_formatter_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            name="beatmarket.test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="Finalize %s",
            args=("started",),
            exc_info=None,
        )
        record.upload_id = "abc123"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "beatmarket.test"
        assert entry["message"] == "Finalize started"
        assert entry["extra"] == {"upload_id": "abc123"}

    def test_context_adapter_adds_fields(self, caplog) -> None:
        logger = logging.getLogger("beatmarket.test.context")
        ctx_logger = add_log_context(logger, upload_id="abc123")

        with caplog.at_level(logging.INFO, logger="beatmarket.test.context"):
            ctx_logger.info("Finalize started", extra={"stage": "analyze"})

        record = caplog.records[-1]
        assert record.upload_id == "abc123"
        assert record.stage == "analyze"


class TestLocalJwt:
    """Local HS256 tokens."""

    def test_round_trip_claims(self, mock_settings) -> None:
        token = create_local_jwt("user-1", "user@example.com", mock_settings, username="dj")

        claims = validate_local_jwt(token, mock_settings)

        assert claims["sub"] == "user-1"
        assert claims["email"] == "user@example.com"
        assert claims["username"] == "dj"
        assert claims["type"] == "local"

    def test_wrong_secret_is_rejected(self, mock_settings) -> None:
        token = create_local_jwt("user-1", None, mock_settings)
        other = mock_settings.model_copy(
            update={"secret_key": "another-secret-key-that-is-32-chars-long"}
        )

        with pytest.raises(AuthError, match="Invalid token"):
            validate_local_jwt(token, other)

    @pytest.mark.parametrize(
        ("claims", "expected"),
        [
            ({"username": "dj"}, "dj"),
            ({"nickname": "nick"}, "nick"),
            ({"email": "beats@example.com"}, "beats"),
            ({}, None),
        ],
    )
    def test_username_derivation(self, claims, expected) -> None:
        assert _derive_username(claims) == expected


class TestIndexes:
    """Unique indexes backing the ledger and asset invariants."""

    @pytest.mark.asyncio
    async def test_create_indexes_declares_unique_fields(self, memory_db) -> None:
        database = memory_db.get_database()
        for name in ("assets", "wallets", "transactions"):
            database[name].unique_fields.clear()

        await memory_db.create_indexes()

        assert database["assets"].unique_fields == {"upload_id"}
        assert database["wallets"].unique_fields == {"user_id"}
        assert database["transactions"].unique_fields == {"external_ref"}
        assert database["purchases"].unique_fields == set()
