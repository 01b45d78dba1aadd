"""
BeatMarket Blob Store Gateway Test Suite

- Presigned PUT URLs carry the no-overwrite condition
- Signed URL expiry bounds
- Public preview URLs for CDN, path-style and AWS hosts
- HEAD-based existence checks and boto error mapping
"""

from unittest.mock import MagicMock

import pytest

from botocore.exceptions import ClientError, EndpointConnectionError

from beatmarket.core.errors import StorageError, UpstreamError
from beatmarket.core.storage import StorageClient


ORIGINAL_KEY = "originals/creator-1/listing-1/night_drive.wav"


def _client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def storage(mock_settings) -> StorageClient:
    client = StorageClient(mock_settings)
    client.s3_client = MagicMock()
    client.s3_client.generate_presigned_url.return_value = "https://signed.test/object"
    return client


class TestSignedUrls:
    """Presigned PUT and GET generation."""

    @pytest.mark.asyncio
    async def test_upload_url_cannot_overwrite(self, storage) -> None:
        signed = await storage.create_upload_url(ORIGINAL_KEY)

        call = storage.s3_client.generate_presigned_url.call_args.kwargs
        assert call["ClientMethod"] == "put_object"
        assert call["Params"] == {
            "Bucket": "originals",
            "Key": ORIGINAL_KEY,
            "IfNoneMatch": "*",
        }
        assert call["ExpiresIn"] == 60
        assert signed.headers == {"If-None-Match": "*"}
        assert signed.expires_in == 60

    @pytest.mark.asyncio
    async def test_upload_url_signs_content_type(self, storage) -> None:
        signed = await storage.create_upload_url(ORIGINAL_KEY, content_type="audio/wav")

        params = storage.s3_client.generate_presigned_url.call_args.kwargs["Params"]
        assert params["ContentType"] == "audio/wav"
        assert signed.headers["Content-Type"] == "audio/wav"

    @pytest.mark.asyncio
    async def test_download_url_defaults_to_originals(self, storage) -> None:
        url = await storage.create_download_url(ORIGINAL_KEY, expires_in=30)

        call = storage.s3_client.generate_presigned_url.call_args.kwargs
        assert url == "https://signed.test/object"
        assert call["ClientMethod"] == "get_object"
        assert call["Params"] == {"Bucket": "originals", "Key": ORIGINAL_KEY}
        assert call["ExpiresIn"] == 30

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expires_in", [61, 3600, -1])
    async def test_expiry_outside_bounds(self, storage, expires_in) -> None:
        with pytest.raises(ValueError, match="between 1 and 60"):
            await storage.create_download_url(ORIGINAL_KEY, expires_in=expires_in)

        storage.s3_client.generate_presigned_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_signing_failure_is_storage_error(self, storage) -> None:
        storage.s3_client.generate_presigned_url.side_effect = _client_error(
            "AccessDenied", "PutObject"
        )

        with pytest.raises(StorageError) as exc_info:
            await storage.create_upload_url(ORIGINAL_KEY)

        assert isinstance(exc_info.value, UpstreamError)


class TestPreviews:
    """Preview writes and public URLs."""

    @pytest.mark.asyncio
    async def test_upload_preview_targets_previews_bucket(self, storage) -> None:
        await storage.upload_preview("previews/u/up/preview.mp3", b"ID3", "audio/mpeg")

        storage.s3_client.put_object.assert_called_once_with(
            Bucket="previews",
            Key="previews/u/up/preview.mp3",
            Body=b"ID3",
            ContentType="audio/mpeg",
        )

    @pytest.mark.asyncio
    async def test_make_public_failure_is_storage_error(self, storage) -> None:
        storage.s3_client.put_object_acl.side_effect = _client_error(
            "AccessControlListNotSupported", "PutObjectAcl"
        )

        with pytest.raises(StorageError):
            await storage.make_public("previews/u/up/preview.mp3")

    def test_public_url_uses_cdn_base(self, storage) -> None:
        assert (
            storage.public_url("previews/u/up/preview.mp3")
            == "https://cdn.test/previews/u/up/preview.mp3"
        )

    def test_public_url_path_style_endpoint(self, mock_settings) -> None:
        settings = mock_settings.model_copy(update={"s3_public_base_url": None})

        url = StorageClient(settings).public_url("previews/u/up/preview.mp3")

        assert url == "http://localhost:9000/previews/previews/u/up/preview.mp3"

    def test_public_url_aws_virtual_host(self, mock_settings) -> None:
        settings = mock_settings.model_copy(
            update={"s3_public_base_url": None, "s3_endpoint_url": None}
        )

        url = StorageClient(settings).public_url("previews/u/up/preview.mp3")

        assert url == "https://previews.s3.us-east-1.amazonaws.com/previews/u/up/preview.mp3"


class TestObjectExists:
    """HEAD-based existence checks."""

    @pytest.mark.asyncio
    async def test_existing_object(self, storage) -> None:
        storage.s3_client.head_object.return_value = {"ContentLength": 10}

        assert await storage.object_exists(ORIGINAL_KEY) is True
        storage.s3_client.head_object.assert_called_once_with(
            Bucket="originals", Key=ORIGINAL_KEY
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["404", "NoSuchKey", "NotFound"])
    async def test_missing_object(self, storage, code) -> None:
        storage.s3_client.head_object.side_effect = _client_error(code)

        assert await storage.object_exists(ORIGINAL_KEY) is False

    @pytest.mark.asyncio
    async def test_forbidden_is_storage_error(self, storage) -> None:
        storage.s3_client.head_object.side_effect = _client_error("403")

        with pytest.raises(StorageError):
            await storage.object_exists(ORIGINAL_KEY, bucket="previews")

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_is_storage_error(self, storage) -> None:
        storage.s3_client.head_object.side_effect = EndpointConnectionError(
            endpoint_url="http://localhost:9000"
        )

        with pytest.raises(StorageError):
            await storage.object_exists(ORIGINAL_KEY)
