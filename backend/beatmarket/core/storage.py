"""
BeatMarket S3-Compatible Blob Store Gateway

Storage access for the two logical buckets of the marketplace:
- originals (private): full-quality uploads, written once by the creator through
  a signed PUT URL and read by finalize and by paying buyers through signed GET URLs
- previews (public): transcoded preview clips, written by finalize

Works against MinIO in development and AWS S3 in production through a
configurable endpoint URL. boto3 is synchronous, so every call runs on a worker
thread via ``asyncio.to_thread``. boto errors surface as ``StorageError``.
"""

import asyncio
import logging

from typing import Any

import boto3

from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field

from beatmarket.config import Settings, get_settings
from beatmarket.core.errors import StorageError


# Signed URL validity bounds in seconds
MIN_SIGNED_URL_EXPIRATION_SECONDS = 1
MAX_SIGNED_URL_EXPIRATION_SECONDS = 60

logger = logging.getLogger(__name__)

# Singleton container for storage client instance
_singleton_container: dict[str, "StorageClient"] = {}


class SignedUpload(BaseModel):
    """A presigned PUT URL plus the headers the client must send with it."""

    url: str = Field(..., description="Presigned PUT URL")
    headers: dict[str, str] = Field(
        default_factory=dict, description="Headers that are part of the signature"
    )
    expires_in: int = Field(..., description="Seconds until the URL expires")


class StorageClient:
    """
    Bucket-aware storage gateway over boto3.

    Attributes:
        settings: Application settings containing S3 configuration
        s3_client: Initialized boto3 S3 client
        originals_bucket: Private bucket for original uploads
        previews_bucket: Public bucket for preview clips

    Example usage:
        ```python
        storage = get_storage_client()

        upload = await storage.create_upload_url("originals/u1/up1/beat.wav")
        # Client PUTs the file to upload.url with upload.headers

        url = await storage.create_download_url("originals/u1/up1/beat.wav")
        ```
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """
        Initialize the S3 client from settings.

        Path-style addressing keeps MinIO compatible; s3v4 signatures are
        required for presigned URLs with conditional headers.
        """
        self.settings = settings or get_settings()

        client_config = Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
            retries={"max_attempts": 3, "mode": "standard"},
        )

        self.s3_client = boto3.client(
            "s3",
            endpoint_url=self.settings.s3_endpoint_url,
            aws_access_key_id=self.settings.s3_access_key_id,
            aws_secret_access_key=self.settings.s3_secret_access_key,
            region_name=self.settings.s3_region,
            config=client_config,
        )
        self.originals_bucket = self.settings.s3_originals_bucket
        self.previews_bucket = self.settings.s3_previews_bucket

        logger.info(
            "S3 storage client initialized",
            extra={
                "originals_bucket": self.originals_bucket,
                "previews_bucket": self.previews_bucket,
                "endpoint": self.settings.s3_endpoint_url or "AWS S3 (default)",
            },
        )

    def _resolve_expiration(self, expires_in: int | None) -> int:
        expiration = expires_in or self.settings.signed_url_expiration_seconds
        if not MIN_SIGNED_URL_EXPIRATION_SECONDS <= expiration <= MAX_SIGNED_URL_EXPIRATION_SECONDS:
            raise ValueError(
                f"expires_in must be between {MIN_SIGNED_URL_EXPIRATION_SECONDS} and "
                f"{MAX_SIGNED_URL_EXPIRATION_SECONDS} seconds, got {expiration}"
            )
        return expiration

    async def create_upload_url(
        self,
        key: str,
        content_type: str | None = None,
        expires_in: int | None = None,
    ) -> SignedUpload:
        """
        Generate a one-time presigned PUT URL in the originals bucket.

        The signature covers ``If-None-Match: *``, so S3 rejects the PUT when
        an object already exists at ``key``: the URL can create the original
        once and can never overwrite it.

        Args:
            key: Object key of the original, e.g. ``originals/{user}/{upload}/{file}``.
            content_type: Optional MIME type the client must send.
            expires_in: Validity in seconds (1-60). Defaults to the configured value.

        Returns:
            SignedUpload: URL, required headers and expiry.

        Raises:
            ValueError: If expires_in is out of range.
            StorageError: If signing fails.
        """
        expiration = self._resolve_expiration(expires_in)

        params: dict[str, Any] = {
            "Bucket": self.originals_bucket,
            "Key": key,
            "IfNoneMatch": "*",
        }
        headers = {"If-None-Match": "*"}
        if content_type:
            params["ContentType"] = content_type
            headers["Content-Type"] = content_type

        def _generate() -> str:
            return self.s3_client.generate_presigned_url(
                ClientMethod="put_object",
                Params=params,
                ExpiresIn=expiration,
            )

        try:
            url = await asyncio.to_thread(_generate)
        except (ClientError, BotoCoreError) as error:
            logger.exception("Failed to generate presigned upload URL", extra={"key": key})
            raise StorageError(f"Failed to create upload URL for {key}") from error

        logger.info("Generated presigned upload URL", extra={"key": key, "expires_in": expiration})
        return SignedUpload(url=url, headers=headers, expires_in=expiration)

    async def create_download_url(
        self,
        key: str,
        bucket: str | None = None,
        expires_in: int | None = None,
    ) -> str:
        """
        Generate a presigned GET URL for a single object.

        Args:
            key: Object key to read.
            bucket: Bucket name. Defaults to the originals bucket.
            expires_in: Validity in seconds (1-60). Defaults to the configured value.

        Raises:
            ValueError: If expires_in is out of range.
            StorageError: If signing fails.
        """
        expiration = self._resolve_expiration(expires_in)
        bucket_name = bucket or self.originals_bucket

        def _generate() -> str:
            return self.s3_client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": bucket_name, "Key": key},
                ExpiresIn=expiration,
            )

        try:
            url = await asyncio.to_thread(_generate)
        except (ClientError, BotoCoreError) as error:
            logger.exception("Failed to generate presigned download URL", extra={"key": key})
            raise StorageError(f"Failed to create download URL for {key}") from error

        logger.info(
            "Generated presigned download URL",
            extra={"bucket": bucket_name, "key": key, "expires_in": expiration},
        )
        return url

    async def upload_preview(self, key: str, data: bytes, content_type: str) -> None:
        """
        Store a preview clip in the previews bucket.

        Raises:
            StorageError: If the put fails.
        """

        def _put() -> dict[str, Any]:
            return self.s3_client.put_object(
                Bucket=self.previews_bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )

        try:
            await asyncio.to_thread(_put)
        except (ClientError, BotoCoreError) as error:
            logger.exception("Failed to upload preview", extra={"key": key})
            raise StorageError(f"Failed to upload preview {key}") from error

        logger.info("Uploaded preview", extra={"key": key, "size": len(data)})

    async def make_public(self, key: str) -> None:
        """
        Grant public read on a preview object.

        Buckets configured with a public-read policy do not need this; callers
        treat a failure as non-critical.

        Raises:
            StorageError: If the ACL update fails.
        """

        def _put_acl() -> dict[str, Any]:
            return self.s3_client.put_object_acl(
                Bucket=self.previews_bucket,
                Key=key,
                ACL="public-read",
            )

        try:
            await asyncio.to_thread(_put_acl)
        except (ClientError, BotoCoreError) as error:
            raise StorageError(f"Failed to make preview {key} public") from error

    def public_url(self, key: str) -> str:
        """
        Return the public URL of a preview object.

        ``s3_public_base_url`` fronts the previews bucket directly; a bare
        endpoint is addressed path-style.
        """
        if self.settings.s3_public_base_url:
            return f"{self.settings.s3_public_base_url.rstrip('/')}/{key}"
        if self.settings.s3_endpoint_url:
            endpoint = self.settings.s3_endpoint_url.rstrip("/")
            return f"{endpoint}/{self.previews_bucket}/{key}"
        return f"https://{self.previews_bucket}.s3.{self.settings.s3_region}.amazonaws.com/{key}"

    async def object_exists(self, key: str, bucket: str | None = None) -> bool:
        """
        Check whether an object exists using a HEAD request.

        Raises:
            StorageError: On errors other than a missing key.
        """
        bucket_name = bucket or self.originals_bucket

        def _head() -> dict[str, Any]:
            return self.s3_client.head_object(Bucket=bucket_name, Key=key)

        try:
            await asyncio.to_thread(_head)
            return True
        except ClientError as error:
            error_code = error.response.get("Error", {}).get("Code", "")
            if error_code in {"404", "NoSuchKey", "NotFound"}:
                return False
            logger.exception("Failed to check object existence", extra={"key": key})
            raise StorageError(f"Failed to check object {key}") from error
        except BotoCoreError as error:
            raise StorageError(f"Failed to check object {key}") from error


def get_storage_client() -> StorageClient:
    """
    Get the singleton StorageClient instance.

    The boto3 client is thread-safe, so one instance is shared by every
    request and worker thread.
    """
    if "instance" not in _singleton_container:
        _singleton_container["instance"] = StorageClient()
        logger.info("Created new StorageClient singleton instance")

    return _singleton_container["instance"]
