"""Upload validation and the PDF ingestion pipeline."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any, Dict, List, Optional, Protocol

from ..config import MEBIBYTE
from ..errors import (
    CompressionError,
    NotFoundError,
    SecurityError,
    ValidationError,
)
from .blob_store import PDF_MIME_TYPE, BlobStore, FileArtifact
from .compression import CompressionOptions, CompressionOutcome, QualityTier
from .events import emit_task_event


LOGGER = logging.getLogger(__name__)

SKIP_DISABLED = "disabled"
SKIP_BELOW_THRESHOLD = "below_threshold"
SKIP_TOOL_UNAVAILABLE = "tool_unavailable"


class Compressor(Protocol):
    """Protocol describing the compression backend used during ingestion."""

    compatibility_level: str

    async def is_available(self) -> bool:
        """Return ``True`` when the external tool can be invoked."""

    def select_quality(self, size_bytes: int) -> QualityTier:
        """Choose a quality tier for an input of *size_bytes*."""

    async def compress(
        self,
        input_path: Path,
        output_path: Path,
        options: Optional[CompressionOptions] = None,
    ) -> CompressionOutcome:
        """Compress *input_path* into *output_path*."""

    async def cleanup_temp_file(self, path: Path) -> None:
        """Best-effort removal of *path*."""


@dataclass(frozen=True)
class UploadValidation:
    """Outcome of checking an upload before the pipeline runs."""

    ok: bool
    error: Optional[str] = None

    @classmethod
    def accepted(cls) -> "UploadValidation":
        return cls(ok=True)

    @classmethod
    def rejected(cls, error: str) -> "UploadValidation":
        return cls(ok=False, error=error)

    def raise_for_error(self) -> None:
        if not self.ok:
            raise ValidationError(self.error or "Upload rejected")


def validate_upload(
    filename: Optional[str],
    content_type: Optional[str],
    data: bytes,
    *,
    max_bytes: int,
) -> UploadValidation:
    """Check that an upload is a non-empty PDF within *max_bytes*."""

    if not filename:
        return UploadValidation.rejected("No file uploaded")
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type != PDF_MIME_TYPE:
        return UploadValidation.rejected("Only PDF files are allowed")
    if not data:
        return UploadValidation.rejected("Uploaded file is empty")
    if max_bytes > 0 and len(data) > max_bytes:
        limit_mb = max_bytes / MEBIBYTE
        return UploadValidation.rejected(f"File exceeds the {limit_mb:g}MB upload limit")
    return UploadValidation.accepted()


@dataclass(frozen=True)
class CompressionReport:
    """What happened to the compression step of one upload."""

    attempted: bool
    success: bool = False
    original_size_bytes: Optional[int] = None
    compressed_size_bytes: Optional[int] = None
    ratio_percent: Optional[int] = None
    error: Optional[str] = None
    skipped_reason: Optional[str] = None

    @classmethod
    def skipped(cls, reason: str) -> "CompressionReport":
        return cls(attempted=False, skipped_reason=reason)

    @classmethod
    def from_outcome(cls, outcome: CompressionOutcome) -> "CompressionReport":
        return cls(
            attempted=True,
            success=outcome.success,
            original_size_bytes=outcome.original_size_bytes,
            compressed_size_bytes=outcome.compressed_size_bytes,
            ratio_percent=outcome.ratio_percent,
            error=outcome.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"attempted": self.attempted, "success": self.success}
        for key in (
            "original_size_bytes",
            "compressed_size_bytes",
            "ratio_percent",
            "error",
            "skipped_reason",
        ):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True)
class IngestionResult:
    artifact: FileArtifact
    compression: CompressionReport
    original_name: str
    original_size_bytes: int

    @property
    def message(self) -> str:
        report = self.compression
        if report.success:
            return f"PDF uploaded and compressed successfully ({report.ratio_percent}% reduction)"
        if report.attempted:
            return "PDF uploaded successfully (compression failed, original kept)"
        return "PDF uploaded successfully"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.artifact.id,
            "name": self.artifact.name,
            "url": self.artifact.url,
            "mime_type": self.artifact.mime_type,
            "size_bytes": self.artifact.size_bytes,
            "original_name": self.original_name,
            "original_size_bytes": self.original_size_bytes,
            "compression": self.compression.to_dict(),
        }


class PDFIngestor:
    """Stage, optionally compress, and persist an uploaded PDF."""

    def __init__(
        self,
        store: BlobStore,
        compressor: Compressor,
        *,
        threshold_bytes: int = 2 * MEBIBYTE,
        base_name: str = "pdf",
    ) -> None:
        self._store = store
        self._compressor = compressor
        self._threshold_bytes = threshold_bytes
        self._base_name = base_name

    async def ingest(
        self,
        data: bytes,
        original_name: Optional[str],
        *,
        compress: Optional[bool] = None,
    ) -> IngestionResult:
        """Persist *data* and return the descriptor of the stored artifact.

        ``compress=False`` disables compression; ``None`` and ``True`` let the
        size threshold and tool availability decide.
        """

        if not data:
            raise ValidationError("No file uploaded")

        display_name = PurePath(original_name or "").name or "upload.pdf"
        size_bytes = len(data)
        start = time.perf_counter()
        emit_task_event(
            "ingest_started",
            f"Ingesting '{display_name}'",
            payload={"original_name": display_name, "size_bytes": size_bytes},
            level=logging.DEBUG,
        )

        skip_reason = await self._compression_skip_reason(size_bytes, compress)
        if skip_reason is not None:
            LOGGER.debug("Skipping compression for '%s': %s", display_name, skip_reason)
            artifact = await self._store.store(data, self._base_name, display_name)
            report = CompressionReport.skipped(skip_reason)
        else:
            artifact, report = await self._ingest_with_compression(data, display_name)

        result = IngestionResult(
            artifact=artifact,
            compression=report,
            original_name=display_name,
            original_size_bytes=size_bytes,
        )
        emit_task_event(
            "ingest_completed",
            result.message,
            payload={
                "name": artifact.name,
                "size_bytes": artifact.size_bytes,
                "compressed": report.success,
                "skipped_reason": report.skipped_reason,
            },
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        return result

    async def _compression_skip_reason(
        self, size_bytes: int, compress: Optional[bool]
    ) -> Optional[str]:
        if compress is False:
            return SKIP_DISABLED
        if size_bytes <= self._threshold_bytes:
            return SKIP_BELOW_THRESHOLD
        if not await self._compressor.is_available():
            return SKIP_TOOL_UNAVAILABLE
        return None

    async def _ingest_with_compression(
        self, data: bytes, display_name: str
    ) -> tuple[FileArtifact, CompressionReport]:
        intermediates: List[Path] = []
        final: Optional[FileArtifact] = None
        try:
            staged = await self._store.store(data, f"temp-{self._base_name}", display_name)
            intermediates.append(staged.path)
            output_path = self._store.staging_path("compressed")
            intermediates.append(output_path)

            outcome, compressed = await self._run_compression(staged, output_path)
            if compressed is None:
                LOGGER.warning(
                    "Compression of '%s' failed, keeping the original: %s",
                    display_name,
                    outcome.error,
                )
                final = staged
            else:
                final = await self._store.store(compressed, self._base_name, display_name)
            return final, CompressionReport.from_outcome(outcome)
        finally:
            await self._cleanup(intermediates, keep=final.path if final else None)

    async def _run_compression(
        self, staged: FileArtifact, output_path: Path
    ) -> tuple[CompressionOutcome, Optional[bytes]]:
        options = CompressionOptions(
            quality=self._compressor.select_quality(staged.size_bytes),
            compatibility_level=self._compressor.compatibility_level,
        )
        try:
            outcome = await self._compressor.compress(staged.path, output_path, options)
        except (CompressionError, NotFoundError, SecurityError, ValidationError) as error:
            return CompressionOutcome.failed(str(error)), None

        if not outcome.success:
            return outcome, None

        try:
            compressed = await asyncio.to_thread(output_path.read_bytes)
        except OSError as error:
            return CompressionOutcome.failed(f"Unable to read compressed output: {error}"), None
        return outcome, compressed

    async def _cleanup(self, paths: List[Path], *, keep: Optional[Path]) -> None:
        for path in paths:
            if keep is not None and path == keep:
                continue
            try:
                if path.parent == self._store.root:
                    await self._store.delete(path)
                else:
                    await self._compressor.cleanup_temp_file(path)
            except Exception:  # noqa: BLE001 - cleanup never masks the upload result
                LOGGER.exception("Failed to remove intermediate file '%s'", path)


__all__ = [
    "CompressionReport",
    "Compressor",
    "IngestionResult",
    "PDFIngestor",
    "SKIP_BELOW_THRESHOLD",
    "SKIP_DISABLED",
    "SKIP_TOOL_UNAVAILABLE",
    "UploadValidation",
    "validate_upload",
]
