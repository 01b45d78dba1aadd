"""
Audio Analysis Service for BeatMarket

Derives everything the catalog needs from an uploaded original:
- a preview clip: MP3 (libmp3lame) at 128 kbps, capped at 30 seconds
- the duration of the original, probed with ffprobe
- a BPM estimate from librosa beat tracking over a bounded prefix

The service persists nothing. It spools the original to a scratch file chunk by
chunk, works on local files and returns the derived values; the upload service
decides what to store. Exactly two scratch files exist per call (original and
preview) and both are removed on every path.

Failure policy:
- source fetch and transcoding failures are fatal (``AnalysisError`` subclasses)
- BPM and duration failures are not: they fall back to configured defaults

ffmpeg and librosa are blocking and CPU-bound, so they run on worker threads.
"""

import asyncio
import logging
import os
import tempfile

from collections.abc import AsyncIterator
from pathlib import Path

import aiofiles
import ffmpeg
import httpx
import librosa
import numpy as np

from pydantic import BaseModel, Field

from beatmarket.config import Settings, get_settings


class AnalysisError(Exception):
    """Base class for fatal analysis failures."""

    stage = "analysis"


class SourceFetchError(AnalysisError):
    """The original could not be read from storage."""

    stage = "fetch"


class AudioTranscodeError(AnalysisError):
    """ffmpeg could not derive the preview clip."""

    stage = "transcode"


class AnalysisResult(BaseModel):
    """Values derived from one original."""

    preview_bytes: bytes = Field(..., repr=False)
    preview_duration_seconds: float = Field(..., ge=0)
    duration_seconds: int = Field(..., ge=0)
    bpm: int = Field(..., gt=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    content_type: str = "audio/mpeg"


async def iter_remote_object(
    url: str,
    timeout: float = 120.0,
    chunk_size: int = 65536,
) -> AsyncIterator[bytes]:
    """
    Stream an object from a (presigned) URL in chunks.

    Raises:
        SourceFetchError: On transport errors or a non-success status.
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            async with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise SourceFetchError(
                        f"Storage returned HTTP {response.status_code} for the original"
                    )
                async for chunk in response.aiter_bytes(chunk_size):
                    yield chunk
    except httpx.HTTPError as error:
        raise SourceFetchError(f"Failed to fetch original: {error}") from error


class AudioAnalysisService:
    """
    Preview transcoding and BPM detection for uploaded audio.

    Attributes:
        settings: Application settings with the preview and BPM parameters
        logger: Logger instance for analysis operations

    Example:
        ```python
        service = AudioAnalysisService()
        result = await service.analyze(iter_remote_object(read_url), "beat.wav")
        print(result.bpm, result.duration_seconds)
        ```
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.logger = logging.getLogger(__name__)

    async def analyze(self, source: AsyncIterator[bytes], filename: str) -> AnalysisResult:
        """
        Spool the source, derive the preview and metadata, and clean up.

        Args:
            source: Async iterator of the original's bytes.
            filename: Original filename; its extension helps ffmpeg pick a demuxer.

        Returns:
            AnalysisResult: Preview bytes plus duration, BPM and confidence.

        Raises:
            SourceFetchError: If the source fails or is empty.
            AudioTranscodeError: If ffmpeg fails or produces nothing.
        """
        suffix = Path(filename).suffix.lower() or ".audio"
        original_path = self._create_scratch_file(suffix)
        preview_path = self._create_scratch_file(".mp3")

        try:
            size = await self._spool_source(source, original_path)
            self.logger.info("Spooled original (%d bytes) for analysis", size)

            await asyncio.to_thread(self._transcode_preview, original_path, preview_path)

            duration_seconds = await asyncio.to_thread(self._probe_duration, original_path)
            bpm, confidence = await asyncio.to_thread(self._detect_bpm, original_path)

            async with aiofiles.open(preview_path, "rb") as preview_file:
                preview_bytes = await preview_file.read()
            if not preview_bytes:
                raise AudioTranscodeError("ffmpeg produced an empty preview")

            preview_duration = float(min(duration_seconds, self.settings.preview_max_seconds))

            self.logger.info(
                "Analysis complete: duration=%ss, bpm=%s (confidence %.2f)",
                duration_seconds,
                bpm,
                confidence,
            )
            return AnalysisResult(
                preview_bytes=preview_bytes,
                preview_duration_seconds=preview_duration,
                duration_seconds=duration_seconds,
                bpm=bpm,
                confidence=confidence,
                content_type=self.settings.preview_content_type,
            )
        finally:
            self._remove_scratch_files(original_path, preview_path)

    # =========================================================================
    # Scratch Files
    # =========================================================================

    def _create_scratch_file(self, suffix: str) -> str:
        fd, path = tempfile.mkstemp(
            prefix="beatmarket-", suffix=suffix, dir=self.settings.scratch_dir
        )
        os.close(fd)
        return path

    def _remove_scratch_files(self, *paths: str) -> None:
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError:
                self.logger.warning("Failed to remove scratch file %s", path, exc_info=True)

    async def _spool_source(self, source: AsyncIterator[bytes], path: str) -> int:
        """Write the source to ``path`` chunk by chunk and return the byte count."""
        total = 0
        try:
            async with aiofiles.open(path, "wb") as scratch:
                async for chunk in source:
                    if chunk:
                        await scratch.write(chunk)
                        total += len(chunk)
        except AnalysisError:
            raise
        except Exception as error:
            self.logger.exception("Failed to read the original")
            raise SourceFetchError(f"Failed to read the original: {error}") from error

        if total == 0:
            raise SourceFetchError("The original is empty")
        return total

    # =========================================================================
    # ffmpeg
    # =========================================================================

    def _transcode_preview(self, source_path: str, preview_path: str) -> None:
        """
        Encode the first ``preview_max_seconds`` of the source as MP3.

        Inputs shorter than the cap produce a preview of their own length.
        """
        try:
            stream = ffmpeg.input(source_path)
            stream = ffmpeg.output(
                stream,
                preview_path,
                t=self.settings.preview_max_seconds,
                audio_bitrate=self.settings.preview_bitrate,
                acodec=self.settings.preview_codec,
                vn=None,
            )
            ffmpeg.run(stream, overwrite_output=True, quiet=True)
        except ffmpeg.Error as error:
            stderr = error.stderr.decode("utf-8", errors="replace") if error.stderr else ""
            self.logger.error("ffmpeg transcode failed: %s", stderr.strip()[-500:])
            raise AudioTranscodeError("Failed to transcode preview") from error
        except OSError as error:
            self.logger.exception("ffmpeg could not be started")
            raise AudioTranscodeError("ffmpeg is not available") from error

    def _probe_duration(self, path: str) -> int:
        """Return the rounded duration of ``path`` or the preview cap when unknown."""
        fallback = self.settings.preview_max_seconds
        try:
            probe = ffmpeg.probe(path)
            duration = float(probe["format"]["duration"])
        except ffmpeg.Error:
            self.logger.warning("ffprobe failed, using %ss duration", fallback)
            return fallback
        except (KeyError, TypeError, ValueError, OSError):
            self.logger.warning("Duration unavailable, using %ss", fallback)
            return fallback

        if not np.isfinite(duration) or duration <= 0:
            return fallback
        return int(round(duration))

    # =========================================================================
    # BPM
    # =========================================================================

    def _detect_bpm(self, path: str) -> tuple[int, float]:
        """
        Estimate the tempo over a bounded prefix of the track.

        Returns:
            tuple: ``(bpm, confidence)``; the configured default and fallback
            confidence when detection fails or is implausible.
        """
        fallback = (self.settings.default_bpm, self.settings.fallback_bpm_confidence)

        try:
            audio_data, sample_rate = librosa.load(
                path,
                sr=None,
                mono=True,
                duration=self.settings.bpm_analysis_seconds,
            )
            tempo, _beat_frames = librosa.beat.beat_track(y=audio_data, sr=sample_rate)
            detected = float(np.atleast_1d(tempo)[0])
        except Exception:
            self.logger.warning("BPM detection failed, using default", exc_info=True)
            return fallback

        if not np.isfinite(detected) or detected <= 0:
            self.logger.info("BPM detection returned %s, using default", detected)
            return fallback

        bpm = int(round(detected))
        if not self.settings.bpm_min_plausible <= bpm <= self.settings.bpm_max_plausible:
            self.logger.info("Implausible BPM %s, using default", bpm)
            return fallback

        return bpm, self.settings.detected_bpm_confidence
