"""
Upload Service for BeatMarket

Owns the lifecycle of an upload and is the only writer of ``uploads``,
``assets`` and ``tags``.

Flow:
1. ``initiate`` reserves an upload (status ``uploading``) and returns a
   one-time presigned PUT URL for the original
2. the client PUTs the file directly to object storage
3. ``finalize`` claims the upload (``uploading -> processing``) with a
   conditional update, streams the original through the analysis service,
   stores the preview and the derived metadata and moves the upload to
   ``pending``
4. the owner toggles ``pending <-> published`` with ``set_status``

A failed finalize releases its claim back to ``uploading`` so the client may
retry, and records an event in ``upload_errors``.
"""

import asyncio
import logging

from datetime import UTC, datetime
from pathlib import PurePosixPath
from typing import Any

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from beatmarket.config import Settings, get_settings
from beatmarket.core.database import DatabaseClient
from beatmarket.core.errors import (
    BeatMarketError,
    ConflictError,
    NotFoundError,
    TranscodeError,
    UpstreamError,
    ValidationError,
)
from beatmarket.core.storage import StorageClient
from beatmarket.models.upload import (
    OWNER_SETTABLE_STATUSES,
    Asset,
    FinalizeResult,
    InitiateResult,
    Tag,
    TagFeedback,
    Upload,
    UploadErrorEvent,
    UploadStatus,
    UploadSummary,
)
from beatmarket.services.audio_analysis_service import (
    AnalysisError,
    AnalysisResult,
    AudioAnalysisService,
    iter_remote_object,
)
from beatmarket.services.catalog_service import BPM_TAG, invalidate_search_cache
from beatmarket.utils.file_validator import validate_audio_filename
from beatmarket.utils.logger import add_log_context


PREVIEW_FILENAME = "preview.mp3"


def build_original_path(user_id: str, upload_id: str, filename: str) -> str:
    return f"originals/{user_id}/{upload_id}/{filename}"


def build_preview_path(user_id: str, upload_id: str) -> str:
    return f"previews/{user_id}/{upload_id}/{PREVIEW_FILENAME}"


class UploadService:
    """
    Upload state machine.

    Attributes:
        db_client: Connected DatabaseClient
        storage: Storage gateway for signed URLs and previews
        analysis: Audio analysis service deriving preview, duration and BPM
        settings: Application settings
        logger: Logger instance for upload operations

    Example:
        ```python
        service = UploadService(get_db_client(), get_storage_client())
        started = await service.initiate("user_1", "Night Drive", "night drive.wav")
        # client PUTs to started.write_url with started.upload_headers
        result = await service.finalize(started.upload_id, user_id="user_1")
        await service.set_status(started.upload_id, "user_1", "published")
        ```
    """

    def __init__(
        self,
        db_client: DatabaseClient,
        storage: StorageClient,
        analysis: AudioAnalysisService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db_client = db_client
        self.storage = storage
        self.settings = settings or get_settings()
        self.analysis = analysis or AudioAnalysisService(self.settings)
        self.logger = logging.getLogger(__name__)

    # =========================================================================
    # Initiate
    # =========================================================================

    async def initiate(
        self,
        user_id: str,
        title: str | None,
        filename: str | None,
        price_cents: int | None = None,
    ) -> InitiateResult:
        """
        Reserve an upload and return where the client writes the original.

        Args:
            user_id: Owner of the new upload.
            title: Display title.
            filename: Client filename; sanitized into the object key.
            price_cents: Listing price; defaults to the configured price.

        Returns:
            InitiateResult: Upload id, presigned PUT URL, object key, required
            headers and URL lifetime.

        Raises:
            ValidationError: On a blank title or filename, an unsupported
                extension or a negative price.
            UpstreamError: If the records cannot be written or the URL signed.
        """
        if title is None or not title.strip():
            raise ValidationError("Title and filename are required", field="title")
        safe_filename = validate_audio_filename(filename, self.settings.allowed_audio_extensions)
        if price_cents is not None and price_cents < 0:
            raise ValidationError("Price cannot be negative", field="priceCents")

        upload = Upload(
            user_id=user_id,
            title=title.strip(),
            price_cents=self.settings.default_price_cents if price_cents is None else price_cents,
            country=self.settings.default_country,
        )
        asset = Asset(
            upload_id=upload.id,
            original_path=build_original_path(user_id, upload.id, safe_filename),
        )

        try:
            await self.db_client.get_uploads_collection().insert_one(
                upload.model_dump(by_alias=True)
            )
            await self.db_client.get_assets_collection().insert_one(
                asset.model_dump(by_alias=True)
            )
        except Exception as error:
            self.logger.exception("Failed to create upload records for user %s", user_id)
            raise UpstreamError("Failed to create upload") from error

        try:
            signed = await self.storage.create_upload_url(asset.original_path)
        except BeatMarketError:
            await self._discard_reservation(upload.id)
            raise
        except Exception as error:
            self.logger.exception("Failed to sign upload URL for %s", upload.id)
            await self._discard_reservation(upload.id)
            raise UpstreamError("Failed to create upload URL") from error

        self.logger.info(
            "Upload initiated",
            extra={"upload_id": upload.id, "user_id": user_id, "path": asset.original_path},
        )
        return InitiateResult(
            upload_id=upload.id,
            write_url=signed.url,
            original_path=asset.original_path,
            upload_headers=signed.headers,
            expires_in=signed.expires_in,
        )

    async def _discard_reservation(self, upload_id: str) -> None:
        try:
            await self.db_client.get_assets_collection().delete_one({"upload_id": upload_id})
            await self.db_client.get_uploads_collection().delete_one({"_id": upload_id})
        except Exception:
            self.logger.warning("Failed to discard reservation %s", upload_id, exc_info=True)

    # =========================================================================
    # Finalize
    # =========================================================================

    async def finalize(self, upload_id: str, user_id: str | None = None) -> FinalizeResult:
        """
        Derive the preview and metadata of an uploaded original.

        Only one caller can hold the ``processing`` claim for an upload.
        Calling finalize again on a finished upload returns its stored result.

        Args:
            upload_id: Upload to finalize.
            user_id: When given, the upload must belong to this user.

        Returns:
            FinalizeResult: Preview location, BPM, duration and the new status.

        Raises:
            NotFoundError: If the upload or its asset does not exist (or is not owned).
            ConflictError: If another finalize is in progress or the original
                has not been uploaded yet.
            TranscodeError: If the original cannot be fetched or transcoded.
            UpstreamError: If storage or the database fails.
        """
        uploads = self.db_client.get_uploads_collection()
        claim_filter: dict[str, Any] = {"_id": upload_id, "status": UploadStatus.UPLOADING.value}
        if user_id is not None:
            claim_filter["user_id"] = user_id

        await self._require_original(claim_filter)

        try:
            claimed = await uploads.find_one_and_update(
                claim_filter,
                {
                    "$set": {
                        "status": UploadStatus.PROCESSING.value,
                        "updated_at": datetime.now(UTC),
                    }
                },
                return_document=ReturnDocument.AFTER,
            )
        except Exception as error:
            self.logger.exception("Failed to claim upload %s", upload_id)
            raise UpstreamError("Failed to finalize upload") from error

        if claimed is None:
            return await self._resolve_unclaimed(upload_id, user_id)

        upload = Upload(**claimed)
        ctx_logger = add_log_context(self.logger, upload_id=upload_id, user_id=upload.user_id)
        ctx_logger.info("Finalize started")

        stage = "load_asset"
        try:
            asset_doc = await self.db_client.get_assets_collection().find_one(
                {"upload_id": upload_id}
            )
            if asset_doc is None:
                raise NotFoundError("Asset not found for upload", upload_id=upload_id)
            asset = Asset(**asset_doc)

            stage = "sign_read_url"
            read_url = await self.storage.create_download_url(asset.original_path)

            stage = "analyze"
            result = await self.analysis.analyze(
                iter_remote_object(
                    read_url,
                    timeout=self.settings.source_fetch_timeout_seconds,
                    chunk_size=self.settings.source_chunk_size,
                ),
                filename=PurePosixPath(asset.original_path).name,
            )

            stage = "store_preview"
            preview_path = build_preview_path(upload.user_id, upload_id)
            await self.storage.upload_preview(
                preview_path, result.preview_bytes, result.content_type
            )
            await self._make_preview_public(preview_path)

            stage = "persist"
            await self._persist_result(asset, upload_id, preview_path, result)
        except AnalysisError as error:
            await self._abort_finalize(upload_id, error.stage, error)
            raise TranscodeError(f"Failed to process audio: {error}", stage=error.stage) from error
        except BeatMarketError as error:
            await self._abort_finalize(upload_id, stage, error)
            raise
        except asyncio.CancelledError:
            await asyncio.shield(self._release_claim(upload_id))
            raise
        except Exception as error:
            ctx_logger.exception("Finalize failed at stage %s", stage)
            await self._abort_finalize(upload_id, stage, error)
            raise UpstreamError("Failed to finalize upload", stage=stage) from error

        await invalidate_search_cache()
        ctx_logger.info(
            "Finalize complete: bpm=%s duration=%ss", result.bpm, result.duration_seconds
        )
        return FinalizeResult(
            upload_id=upload_id,
            preview_path=preview_path,
            preview_url=self.storage.public_url(preview_path),
            bpm=result.bpm,
            duration_seconds=result.duration_seconds,
            status=UploadStatus.PENDING,
        )

    async def _persist_result(
        self,
        asset: Asset,
        upload_id: str,
        preview_path: str,
        result: AnalysisResult,
    ) -> None:
        now = datetime.now(UTC)
        await self.db_client.get_assets_collection().update_one(
            {"_id": asset.id},
            {
                "$set": {
                    "preview_path": preview_path,
                    "duration_seconds": result.duration_seconds,
                    "updated_at": now,
                }
            },
        )

        tag = Tag(upload_id=upload_id, name=BPM_TAG, value=result.bpm, confidence=result.confidence)
        try:
            await self.db_client.get_tags_collection().insert_one(tag.model_dump(by_alias=True))
        except Exception:
            self.logger.warning("Failed to store bpm tag for %s", upload_id, exc_info=True)

        await self.db_client.get_uploads_collection().update_one(
            {"_id": upload_id, "status": UploadStatus.PROCESSING.value},
            {"$set": {"status": UploadStatus.PENDING.value, "updated_at": now}},
        )

    async def _require_original(self, claim_filter: dict[str, Any]) -> None:
        """Refuse to claim a claimable upload whose original is not in the bucket yet."""
        upload_id = claim_filter["_id"]
        try:
            claimable = await self.db_client.get_uploads_collection().find_one(claim_filter)
            asset_doc = None
            if claimable is not None:
                asset_doc = await self.db_client.get_assets_collection().find_one(
                    {"upload_id": upload_id}
                )
        except Exception as error:
            self.logger.exception("Failed to load upload %s", upload_id)
            raise UpstreamError("Failed to finalize upload") from error

        # Missing rows are reported by the claim and asset stages
        if asset_doc is None:
            return
        if not await self.storage.object_exists(asset_doc["original_path"]):
            self.logger.info("Finalize of %s before its original was uploaded", upload_id)
            raise ConflictError("Original not uploaded yet", upload_id=upload_id)

    async def _make_preview_public(self, preview_path: str) -> None:
        try:
            await self.storage.make_public(preview_path)
        except Exception:
            self.logger.warning("Could not make preview %s public", preview_path, exc_info=True)

    async def _resolve_unclaimed(self, upload_id: str, user_id: str | None) -> FinalizeResult:
        """Explain why a claim failed, or return the stored result of a finished upload."""
        upload_doc = await self.db_client.get_uploads_collection().find_one({"_id": upload_id})
        if upload_doc is None or (user_id is not None and upload_doc["user_id"] != user_id):
            raise NotFoundError("Upload not found or access denied", upload_id=upload_id)

        status = upload_doc["status"]
        if status in (UploadStatus.PROCESSING.value, UploadStatus.UPLOADING.value):
            raise ConflictError("Upload is already being processed", upload_id=upload_id)

        asset_doc = await self.db_client.get_assets_collection().find_one({"upload_id": upload_id})
        if asset_doc is None or not asset_doc.get("preview_path"):
            raise ConflictError("Upload has no preview", upload_id=upload_id)

        tag = await self.db_client.get_tags_collection().find_one(
            {"upload_id": upload_id, "name": BPM_TAG},
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
        )
        self.logger.info("Upload %s already finalized, returning stored result", upload_id)
        return FinalizeResult(
            upload_id=upload_id,
            preview_path=asset_doc["preview_path"],
            preview_url=self.storage.public_url(asset_doc["preview_path"]),
            bpm=tag["value"] if tag else None,
            duration_seconds=asset_doc.get("duration_seconds"),
            status=status,
        )

    async def _abort_finalize(self, upload_id: str, stage: str, error: BaseException) -> None:
        event = UploadErrorEvent(upload_id=upload_id, stage=stage, error=str(error) or repr(error))
        try:
            await self.db_client.get_upload_errors_collection().insert_one(
                event.model_dump(by_alias=True)
            )
        except Exception:
            self.logger.warning("Failed to record upload error for %s", upload_id, exc_info=True)

        await self._release_claim(upload_id)

    async def _release_claim(self, upload_id: str) -> None:
        try:
            await self.db_client.get_uploads_collection().update_one(
                {"_id": upload_id, "status": UploadStatus.PROCESSING.value},
                {
                    "$set": {
                        "status": UploadStatus.UPLOADING.value,
                        "updated_at": datetime.now(UTC),
                    }
                },
            )
        except Exception:
            self.logger.error("Failed to release finalize claim on %s", upload_id, exc_info=True)

    # =========================================================================
    # Owner Operations
    # =========================================================================

    async def set_status(self, upload_id: str, user_id: str, new_status: str) -> Upload:
        """
        Publish or unpublish an upload.

        Raises:
            ValidationError: If ``new_status`` is not ``published`` or ``pending``.
            NotFoundError: If the upload does not exist or belongs to someone else.
            ConflictError: If the upload is still uploading or processing.
        """
        if new_status not in OWNER_SETTABLE_STATUSES:
            raise ValidationError("Status must be 'published' or 'pending'", field="status")

        uploads = self.db_client.get_uploads_collection()
        try:
            updated = await uploads.find_one_and_update(
                {
                    "_id": upload_id,
                    "user_id": user_id,
                    "status": {"$in": sorted(OWNER_SETTABLE_STATUSES)},
                },
                {"$set": {"status": new_status, "updated_at": datetime.now(UTC)}},
                return_document=ReturnDocument.AFTER,
            )
            current = (
                None
                if updated is not None
                else await uploads.find_one({"_id": upload_id, "user_id": user_id})
            )
        except Exception as error:
            self.logger.exception("Failed to update status of upload %s", upload_id)
            raise UpstreamError("Failed to update upload") from error

        if updated is None:
            if current is None:
                raise NotFoundError("Upload not found or access denied", upload_id=upload_id)
            raise ConflictError(
                f"Upload is {current['status']} and cannot be changed yet",
                status=current["status"],
            )

        await invalidate_search_cache()
        self.logger.info("Upload %s set to %s by %s", upload_id, new_status, user_id)
        return Upload(**updated)

    async def list_user_uploads(self, user_id: str) -> list[UploadSummary]:
        """Dashboard rows for the user's uploads, newest first, with the latest BPM."""
        uploads = (
            await self.db_client.get_uploads_collection()
            .find({"user_id": user_id})
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .to_list(length=None)
        )
        if not uploads:
            return []

        tags = (
            await self.db_client.get_tags_collection()
            .find({"upload_id": {"$in": [upload["_id"] for upload in uploads]}, "name": BPM_TAG})
            .sort([("created_at", ASCENDING), ("_id", ASCENDING)])
            .to_list(length=None)
        )
        # Ascending order leaves the latest tag per upload in the dict
        latest_bpm = {tag["upload_id"]: tag["value"] for tag in tags}

        return [
            UploadSummary(
                id=upload["_id"],
                title=upload["title"],
                status=upload["status"],
                bpm=latest_bpm.get(upload["_id"]),
                price_cents=upload.get("price_cents", 0),
                created_at=upload["created_at"],
            )
            for upload in uploads
        ]

    async def submit_tag_feedback(
        self,
        user_id: str,
        upload_id: str,
        name: str,
        value: Any,
    ) -> TagFeedback:
        """
        Record a user's suggested correction to a tag.

        The upload must be published, or owned by the user.

        Raises:
            ValidationError: On a blank tag name or value.
            NotFoundError: If the upload is unknown or not visible to the user.
        """
        if not name or not str(name).strip():
            raise ValidationError("Tag name is required", field="name")
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError("Tag value is required", field="value")

        upload_doc = await self.db_client.get_uploads_collection().find_one({"_id": upload_id})
        visible = upload_doc is not None and (
            upload_doc["status"] == UploadStatus.PUBLISHED.value or upload_doc["user_id"] == user_id
        )
        if not visible:
            raise NotFoundError("Upload not found", upload_id=upload_id)

        feedback = TagFeedback(
            upload_id=upload_id,
            user_id=user_id,
            name=str(name).strip().lower(),
            value=value,
        )
        await self.db_client.get_tag_feedback_collection().insert_one(
            feedback.model_dump(by_alias=True)
        )
        self.logger.info(
            "Tag feedback on %s from %s: %s=%s", upload_id, user_id, feedback.name, value
        )
        return feedback
