"""
BeatMarket Authentication Module

Bearer token authentication with two strategies, selected from configuration:

- Auth0 RS256 JWT validation against the tenant's JWKS endpoint (keys cached 1 hour)
- Local HS256 JWTs signed with ``secret_key`` when Auth0 is not configured

``get_current_user`` is the FastAPI dependency for protected routes. It returns
a ``CurrentUser`` and lazily creates the caller's profile in the ``users``
collection on first sight, caching it in Redis for 5 minutes.

Usage:
    ```python
    from fastapi import Depends
    from beatmarket.core.auth import get_current_user
    from beatmarket.models.user import CurrentUser

    @router.get("/wallet")
    async def read_wallet(user: CurrentUser = Depends(get_current_user)):
        return {"user_id": user.id}
    ```
"""

import asyncio
import logging

from datetime import UTC, datetime, timedelta
from typing import Any

import requests

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from beatmarket.config import Settings, get_settings
from beatmarket.core.database import DatabaseClient, get_db_client
from beatmarket.core.errors import AuthError, BeatMarketError, UpstreamError
from beatmarket.core.redis_client import CacheKeys, get_redis_client
from beatmarket.models.user import CurrentUser


logger = logging.getLogger(__name__)


# =============================================================================
# Security Scheme
# =============================================================================

# auto_error is off so a missing header surfaces as our own 401 body
security = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token. Auth0 tokens in production, local tokens in development.",
    auto_error=False,
)

LOCAL_JWT_ALGORITHM = "HS256"
AUTH0_JWT_ALGORITHM = "RS256"
JWKS_TTL_SECONDS = 3600


def _decode(token: str, key: Any, algorithm: str, **options: Any) -> dict[str, Any]:
    """Decode and verify a JWT, mapping every jose failure onto ``AuthError``."""
    try:
        return jwt.decode(token, key, algorithms=[algorithm], **options)
    except jwt.ExpiredSignatureError as error:
        raise AuthError("Token has expired") from error
    except jwt.JWTClaimsError as error:
        logger.warning("Token claims rejected: %s", error)
        raise AuthError("Invalid token claims") from error
    except JWTError as error:
        logger.warning("Token rejected: %s", error)
        raise AuthError("Invalid token") from error


# =============================================================================
# Auth0 (RS256)
# =============================================================================


class Auth0TokenValidator:
    """
    Verifies Auth0 RS256 tokens against the tenant's JWKS.

    The key set is fetched with ``requests`` on a worker thread and reused
    for ``JWKS_TTL_SECONDS``.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at: datetime | None = None

    @property
    def issuer(self) -> str:
        return f"https://{self.settings.auth0_domain}/"

    def _load_jwks(self) -> dict[str, Any]:
        now = datetime.now(UTC)
        if self._jwks is not None and self._jwks_fetched_at is not None:
            if (now - self._jwks_fetched_at).total_seconds() < JWKS_TTL_SECONDS:
                return self._jwks

        try:
            response = requests.get(f"{self.issuer}.well-known/jwks.json", timeout=10)
            response.raise_for_status()
        except requests.RequestException as error:
            logger.exception("JWKS fetch from %s failed", self.settings.auth0_domain)
            raise UpstreamError("Unable to verify token: identity provider unavailable") from error

        self._jwks, self._jwks_fetched_at = response.json(), now
        return self._jwks

    async def signing_key(self, token: str) -> dict[str, Any]:
        """
        JWK whose ``kid`` matches the token header.

        Raises:
            AuthError: If the header is unreadable, has no kid, or the kid is unknown.
        """
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as error:
            raise AuthError("Invalid token format") from error
        if not kid:
            raise AuthError("Invalid token: missing key ID")

        jwks = await asyncio.to_thread(self._load_jwks)
        match = next((key for key in jwks.get("keys", []) if key.get("kid") == kid), None)
        if match is None:
            logger.warning("No JWKS key for kid %s", kid)
            raise AuthError("Invalid token: key not found")
        return match

    async def validate_token(self, token: str) -> dict[str, Any]:
        key = await self.signing_key(token)
        return _decode(
            token,
            key,
            AUTH0_JWT_ALGORITHM,
            audience=self.settings.auth0_api_audience,
            issuer=self.issuer,
        )


_validators: dict[str, Auth0TokenValidator] = {}


def get_auth0_validator(settings: Settings) -> Auth0TokenValidator:
    """One validator per tenant so the JWKS cache outlives the request."""
    domain = settings.auth0_domain or ""
    if domain not in _validators:
        _validators[domain] = Auth0TokenValidator(settings)
    return _validators[domain]


# =============================================================================
# Local (HS256)
# =============================================================================


def create_local_jwt(
    user_id: str,
    email: str | None,
    settings: Settings,
    username: str | None = None,
) -> str:
    """
    Issue a local token valid for ``jwt_expiration_hours``.

    Claims: ``sub``, ``email``, optional ``username``, ``iat``, ``exp`` and
    ``type="local"``.
    """
    issued = datetime.now(UTC)
    claims: dict[str, Any] = {
        "sub": user_id,
        "email": email,
        "iat": issued,
        "exp": issued + timedelta(hours=settings.jwt_expiration_hours),
        "type": "local",
    }
    if username:
        claims["username"] = username
    return jwt.encode(claims, settings.secret_key, algorithm=LOCAL_JWT_ALGORITHM)


def validate_local_jwt(token: str, settings: Settings) -> dict[str, Any]:
    return _decode(token, settings.secret_key, LOCAL_JWT_ALGORITHM)


# =============================================================================
# FastAPI Dependencies
# =============================================================================


async def authenticate_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """
    Validate the bearer token with the configured strategy and return its claims.

    Raises:
        AuthError: If the header is missing or the token is invalid.
    """
    if credentials is None or not credentials.credentials:
        raise AuthError("Authentication required")

    token = credentials.credentials
    if settings.is_auth0_enabled:
        return await get_auth0_validator(settings).validate_token(token)
    return validate_local_jwt(token, settings)


def _derive_username(claims: dict[str, Any]) -> str | None:
    username = claims.get("username") or claims.get("nickname")
    if username:
        return str(username)
    email = claims.get("email")
    if email and "@" in email:
        return email.split("@", 1)[0]
    return None


async def get_current_user(
    token_data: dict[str, Any] = Depends(authenticate_token),
    db_client: DatabaseClient = Depends(get_db_client),
) -> CurrentUser:
    """
    Resolve the caller's identity and make sure a profile exists.

    Lookup order:
    1. Redis cache (key ``user:{sub}``, 5 minute TTL)
    2. Upsert of the profile in MongoDB, keeping existing fields

    Raises:
        AuthError: If the token has no subject.
        UpstreamError: If the profile store is unavailable.
    """
    user_id = token_data.get("sub")
    if not user_id:
        logger.warning("Token missing 'sub' claim")
        raise AuthError("Invalid token: missing user identifier")

    redis_client = get_redis_client()
    cache_key = f"{CacheKeys.USER}:{user_id}"

    if redis_client:
        cached_user = await redis_client.get_json(cache_key)
        if cached_user:
            logger.debug("User found in cache: %s", user_id)
            return CurrentUser(**cached_user)

    now = datetime.now(UTC)
    try:
        users = db_client.get_users_collection()
        profile = await users.find_one_and_update(
            {"_id": user_id},
            {
                "$setOnInsert": {
                    "email": token_data.get("email"),
                    "username": _derive_username(token_data),
                    "created_at": now,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # A concurrent first request for the same user inserted it first
        logger.info("Profile for user %s created concurrently, re-reading", user_id)
        try:
            profile = await users.find_one({"_id": user_id})
        except Exception as error:
            logger.exception("Failed to load profile for user %s", user_id)
            raise UpstreamError("Profile store unavailable") from error
    except BeatMarketError:
        raise
    except Exception as error:
        logger.exception("Failed to load profile for user %s", user_id)
        raise UpstreamError("Profile store unavailable") from error

    profile = profile or {}
    user = CurrentUser(
        id=user_id,
        email=profile.get("email", token_data.get("email")),
        username=profile.get("username", _derive_username(token_data)),
    )

    if redis_client:
        await redis_client.set_json(cache_key, user.model_dump())

    return user
