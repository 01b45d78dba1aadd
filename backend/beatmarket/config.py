"""
BeatMarket Configuration Management Module

This module provides configuration management for the BeatMarket audio marketplace
using Pydantic Settings. It loads and validates all environment variables required for:
- Application settings (name, environment, debug mode, logging)
- MongoDB database connection and pooling
- Redis caching for catalog search and user profiles
- S3/MinIO object storage with the originals and previews buckets
- Auth0 authentication with local JWT fallback
- Audio analysis parameters (preview cap, bitrate, BPM detection)
- Credit pricing and Stripe payment integration

All settings support environment variable overrides and .env file loading.
"""

from functools import lru_cache
from typing import Annotated

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


LOG_LEVELS = frozenset({"debug", "info", "warning", "error", "critical"})
APP_ENVIRONMENTS = frozenset({"development", "staging", "production", "testing"})


class Settings(BaseSettings):
    """
    Configuration settings for the BeatMarket backend.

    Settings are loaded from environment variables and .env files with full
    type validation. Every field has a development default so the service and
    the test suite can start without any environment.

    Configuration Categories:
    - Application: Core app settings like name, environment, debug mode
    - MongoDB: Database connection URI and connection pool settings
    - Redis: Cache connection URL and TTL settings
    - S3/MinIO: Object storage credentials and bucket names
    - Auth0: Authentication provider settings with JWT fallback support
    - Audio Analysis: Preview transcoding and BPM detection parameters
    - Credits: Credit package size and listing price defaults
    - Stripe: Checkout and webhook verification secrets

    Example usage:
        ```python
        from beatmarket.config import Settings

        settings = Settings()
        print(f"Previews are capped at {settings.preview_max_seconds}s")
        ```
    """

    # =========================================================================
    # Application Settings
    # =========================================================================

    app_name: str = Field(
        default="BeatMarket",
        description="Application name displayed in API documentation and logs",
    )

    app_env: str = Field(
        default="development",
        description="Application environment (development, staging, production, testing)",
    )

    debug: bool = Field(default=False, description="Enable debug mode and verbose logging")

    log_level: str = Field(
        default="info", description="Logging level (debug, info, warning, error, critical)"
    )

    log_json: bool = Field(
        default=False, description="Emit structured JSON log lines instead of plain text"
    )

    secret_key: str = Field(
        default="development-secret-key-change-in-production-32chars",
        description="Secret key for local JWT signing. Must be a secure random string.",
        min_length=32,
    )

    host: str = Field(default="0.0.0.0", description="Host address for the API server to bind to")

    port: int = Field(default=8000, description="Port number for the API server", ge=1, le=65535)

    cors_origins: Annotated[list[str], NoDecode] = Field(
        default=["http://localhost:3000"],
        description="List of allowed CORS origins for frontend access",
    )

    # =========================================================================
    # MongoDB Configuration
    # =========================================================================

    mongodb_uri: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URI (e.g., mongodb://localhost:27017)",
    )

    mongodb_db_name: str = Field(default="beatmarket", description="MongoDB database name")

    mongodb_min_pool_size: int = Field(
        default=10, description="Minimum number of connections in MongoDB connection pool", ge=1
    )

    mongodb_max_pool_size: int = Field(
        default=100, description="Maximum number of connections in MongoDB connection pool", ge=1
    )

    # =========================================================================
    # Redis Configuration
    # =========================================================================

    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL (e.g., redis://localhost:6379)",
    )

    redis_cache_ttl_seconds: int = Field(
        default=300, description="Default TTL for Redis cache entries in seconds", ge=1
    )

    search_cache_ttl_seconds: int = Field(
        default=30, description="TTL for cached catalog search results in seconds", ge=1
    )

    # =========================================================================
    # S3/MinIO Storage Configuration
    # =========================================================================

    s3_endpoint_url: str | None = Field(
        default=None, description="S3-compatible endpoint URL for MinIO (None for AWS S3)"
    )

    s3_access_key_id: str = Field(
        default="minioadmin", description="S3/MinIO access key ID for authentication"
    )

    s3_secret_access_key: str = Field(
        default="minioadmin", description="S3/MinIO secret access key for authentication"
    )

    s3_region: str = Field(default="us-east-1", description="AWS region for the S3 buckets")

    s3_originals_bucket: str = Field(
        default="originals", description="Private bucket holding uploaded original audio"
    )

    s3_previews_bucket: str = Field(
        default="previews", description="Public bucket holding transcoded preview clips"
    )

    s3_public_base_url: str | None = Field(
        default=None,
        description="Public base URL fronting the previews bucket, e.g. a CDN",
    )

    signed_url_expiration_seconds: int = Field(
        default=60,
        description="Validity of signed upload and download URLs in seconds",
        ge=1,
        le=60,
    )

    # =========================================================================
    # Auth0 Configuration
    # =========================================================================

    auth0_domain: str | None = Field(
        default=None, description="Auth0 tenant domain (e.g., your-tenant.auth0.com)"
    )

    auth0_api_audience: str | None = Field(
        default=None, description="Auth0 API audience identifier for token validation"
    )

    jwt_expiration_hours: int = Field(
        default=24, description="Local JWT expiration time in hours", ge=1, le=168
    )

    # =========================================================================
    # Audio Analysis Settings
    # =========================================================================

    allowed_audio_extensions: Annotated[list[str], NoDecode] = Field(
        default=[".mp3", ".wav", ".aac", ".flac", ".ogg", ".m4a", ".aiff"],
        description="Audio file extensions accepted at upload initiation",
    )

    preview_max_seconds: int = Field(
        default=30, description="Maximum preview clip length in seconds", ge=1, le=300
    )

    preview_bitrate_kbps: int = Field(
        default=128, description="Preview clip bitrate in kbps", ge=32, le=320
    )

    preview_codec: str = Field(default="libmp3lame", description="ffmpeg audio codec for previews")

    preview_content_type: str = Field(
        default="audio/mpeg", description="Content type stored with preview objects"
    )

    bpm_analysis_seconds: float = Field(
        default=60.0,
        description="Length of the audio prefix decoded for BPM detection",
        gt=0,
    )

    default_bpm: int = Field(default=120, description="BPM used when detection fails", ge=1)

    fallback_bpm_confidence: float = Field(
        default=0.7, description="Confidence attached to the fallback BPM", gt=0, le=1
    )

    detected_bpm_confidence: float = Field(
        default=0.8, description="Confidence attached to a detected BPM", gt=0, le=1
    )

    bpm_min_plausible: int = Field(
        default=30, description="Lowest detected BPM accepted as plausible", ge=1
    )

    bpm_max_plausible: int = Field(
        default=300, description="Highest detected BPM accepted as plausible", ge=1
    )

    source_fetch_timeout_seconds: float = Field(
        default=120.0, description="Timeout for streaming an original from storage", gt=0
    )

    source_chunk_size: int = Field(
        default=64 * 1024, description="Chunk size used when spooling originals to disk", ge=1024
    )

    scratch_dir: str | None = Field(
        default=None, description="Directory for scratch files (system temp dir when unset)"
    )

    # =========================================================================
    # Credits & Pricing
    # =========================================================================

    credit_package_size: int = Field(
        default=10, description="Only credit quantity sold through checkout", ge=1
    )

    credit_unit_price_cents: int = Field(
        default=100, description="Price of one credit in minor currency units", ge=1
    )

    default_price_cents: int = Field(
        default=500, description="Listing price in minor units when the creator sets none", ge=0
    )

    default_country: str = Field(default="GB", description="Country recorded on new uploads")

    currency: str = Field(default="usd", description="Checkout currency (single currency only)")

    # =========================================================================
    # Stripe Configuration
    # =========================================================================

    stripe_secret_key: str | None = Field(default=None, description="Stripe API secret key")

    stripe_webhook_secret: str | None = Field(
        default=None, description="Shared secret used to verify Stripe webhook signatures"
    )

    stripe_api_base: str = Field(
        default="https://api.stripe.com/v1", description="Stripe REST API base URL"
    )

    checkout_success_url: str = Field(
        default="http://localhost:3000/wallet?checkout=success",
        description="Redirect target after a completed checkout",
    )

    checkout_cancel_url: str = Field(
        default="http://localhost:3000/wallet?checkout=cancelled",
        description="Redirect target after a cancelled checkout",
    )

    webhook_tolerance_seconds: int = Field(
        default=300, description="Maximum age of a webhook signature timestamp", ge=1
    )

    # =========================================================================
    # Model Configuration
    # =========================================================================

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    @field_validator("log_level", "app_env")
    @classmethod
    def validate_choice(cls, v: str, info: ValidationInfo) -> str:
        allowed = LOG_LEVELS if info.field_name == "log_level" else APP_ENVIRONMENTS
        normalized = v.lower()
        if normalized not in allowed:
            raise ValueError(
                f"Invalid {info.field_name} '{v}'. Must be one of: {', '.join(sorted(allowed))}"
            )
        return normalized

    @field_validator("cors_origins", "allowed_audio_extensions", mode="before")
    @classmethod
    def split_comma_separated(cls, v: str | list[str]) -> list[str]:
        """Accept ``a,b,c`` from the environment as well as a list."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("allowed_audio_extensions")
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        return [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in v]

    @property
    def is_auth0_enabled(self) -> bool:
        """Auth0 RS256 validation needs a tenant and an audience; otherwise local HS256 is used."""
        return bool(self.auth0_domain and self.auth0_api_audience)

    @property
    def is_stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def preview_bitrate(self) -> str:
        """Bitrate string in the form ffmpeg expects (e.g. ``"128k"``)."""
        return f"{self.preview_bitrate_kbps}k"

    @property
    def credit_package_price_cents(self) -> int:
        return self.credit_package_size * self.credit_unit_price_cents


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read from the environment and ``.env`` on first call."""
    return Settings()
