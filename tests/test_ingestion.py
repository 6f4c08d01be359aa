import asyncio
from pathlib import Path
from typing import List, Optional

import pytest

from shala.errors import StorageError, ValidationError
from shala.services.blob_store import BlobStore
from shala.services.compression import (
    CompressionOptions,
    CompressionOutcome,
    PDFCompressor,
    QualityTier,
)
from shala.services.ingestion import (
    PDFIngestor,
    UploadValidation,
    validate_upload,
)


MB = 1_000_000
MIB = 1024 * 1024


class FakeCompressor:
    """Stand-in for Ghostscript that shrinks files to a fixed size."""

    compatibility_level = "1.4"

    def __init__(
        self,
        *,
        available: bool = True,
        output_size: Optional[int] = None,
        fail_with: Optional[str] = None,
    ) -> None:
        self.available = available
        self.output_size = output_size
        self.fail_with = fail_with
        self.calls: List[tuple] = []
        self.cleaned: List[Path] = []
        self._selector = PDFCompressor()

    async def is_available(self) -> bool:
        return self.available

    def select_quality(self, size_bytes: int) -> QualityTier:
        return self._selector.select_quality(size_bytes)

    async def compress(
        self,
        input_path: Path,
        output_path: Path,
        options: Optional[CompressionOptions] = None,
    ) -> CompressionOutcome:
        self.calls.append((input_path, output_path, options))
        original_size = input_path.stat().st_size
        if self.fail_with is not None:
            output_path.write_bytes(b"partial")
            return CompressionOutcome.failed(self.fail_with)
        output_path.write_bytes(b"%PDF-small" + b"0" * (self.output_size - 10))
        return CompressionOutcome.succeeded(original_size, self.output_size)

    async def cleanup_temp_file(self, path: Path) -> None:
        self.cleaned.append(path)
        Path(path).unlink(missing_ok=True)


def _all_files(store: BlobStore) -> List[Path]:
    return sorted(path for path in store.root.rglob("*") if path.is_file() and path.suffix == ".pdf")


def test_validate_upload_rules() -> None:
    limit = 30 * MIB

    assert validate_upload("a.pdf", "application/pdf", b"%PDF", max_bytes=limit).ok
    assert not validate_upload(None, "application/pdf", b"%PDF", max_bytes=limit).ok
    assert not validate_upload("a.png", "image/png", b"\x89PNG", max_bytes=limit).ok
    assert not validate_upload("a.pdf", "application/pdf", b"", max_bytes=limit).ok

    too_large = validate_upload("a.pdf", "application/pdf", b"0" * 11, max_bytes=10)
    assert too_large.ok is False
    with pytest.raises(ValidationError):
        too_large.raise_for_error()
    UploadValidation.accepted().raise_for_error()


def test_small_upload_skips_compression(blob_store: BlobStore, make_pdf) -> None:
    compressor = FakeCompressor(output_size=10)
    ingestor = PDFIngestor(blob_store, compressor, threshold_bytes=2 * MIB)
    data = make_pdf(1000)

    result = asyncio.run(ingestor.ingest(data, "notes.pdf"))

    assert compressor.calls == []
    assert result.compression.attempted is False
    assert result.compression.skipped_reason == "below_threshold"
    assert result.artifact.path.read_bytes() == data
    assert result.artifact.name.startswith("pdf-")
    assert _all_files(blob_store) == [result.artifact.path]


def test_compression_disabled_by_caller(blob_store: BlobStore, make_pdf) -> None:
    compressor = FakeCompressor(output_size=10)
    ingestor = PDFIngestor(blob_store, compressor, threshold_bytes=100)

    result = asyncio.run(ingestor.ingest(make_pdf(1000), "notes.pdf", compress=False))

    assert compressor.calls == []
    assert result.compression.skipped_reason == "disabled"


def test_unavailable_tool_stores_original_bytes(blob_store: BlobStore, make_pdf) -> None:
    compressor = FakeCompressor(available=False)
    ingestor = PDFIngestor(blob_store, compressor, threshold_bytes=2 * MIB)
    data = make_pdf(3 * MIB)

    result = asyncio.run(ingestor.ingest(data, "big.pdf"))

    assert result.compression.attempted is False
    assert result.compression.skipped_reason == "tool_unavailable"
    assert result.artifact.path.read_bytes() == data
    assert result.artifact.size_bytes == 3 * MIB
    assert _all_files(blob_store) == [result.artifact.path]


def test_five_megabyte_upload_is_compressed(blob_store: BlobStore, make_pdf) -> None:
    compressor = FakeCompressor(output_size=2 * MB)
    ingestor = PDFIngestor(blob_store, compressor, threshold_bytes=2 * MIB)

    result = asyncio.run(ingestor.ingest(make_pdf(5 * MB), "chapter.pdf"))

    assert result.compression.attempted is True
    assert result.compression.success is True
    assert result.compression.ratio_percent == 60
    assert result.artifact.size_bytes == 2 * MB
    assert result.original_size_bytes == 5 * MB
    assert result.original_name == "chapter.pdf"
    assert result.artifact.name.startswith("pdf-")
    assert _all_files(blob_store) == [result.artifact.path]

    staged_input, output, options = compressor.calls[0]
    assert staged_input.name.startswith("temp-pdf-")
    assert output.parent == blob_store.staging_root
    assert options.quality is QualityTier.PRINTER

    payload = result.to_dict()
    assert payload["compression"]["ratio_percent"] == 60
    assert "skipped_reason" not in payload["compression"]
    assert payload["url"].endswith(result.artifact.name)


def test_failed_compression_keeps_original(blob_store: BlobStore, make_pdf) -> None:
    compressor = FakeCompressor(fail_with="Ghostscript exited with status 1")
    ingestor = PDFIngestor(blob_store, compressor, threshold_bytes=100)
    data = make_pdf(5000)

    result = asyncio.run(ingestor.ingest(data, "broken.pdf"))

    assert result.compression.attempted is True
    assert result.compression.success is False
    assert result.compression.error == "Ghostscript exited with status 1"
    assert result.artifact.path.read_bytes() == data
    assert _all_files(blob_store) == [result.artifact.path]
    assert "compression failed" in result.message


def test_storage_failure_cleans_every_intermediate(
    blob_store: BlobStore, make_pdf, monkeypatch
) -> None:
    compressor = FakeCompressor(output_size=100)
    ingestor = PDFIngestor(blob_store, compressor, threshold_bytes=100)
    original_store = blob_store.store

    async def failing_final_store(data, base_name, original_name=None):
        if base_name == "pdf":
            raise StorageError("disk full")
        return await original_store(data, base_name, original_name)

    monkeypatch.setattr(blob_store, "store", failing_final_store)

    with pytest.raises(StorageError):
        asyncio.run(ingestor.ingest(make_pdf(5000), "doomed.pdf"))

    assert _all_files(blob_store) == []


def test_cleanup_failure_does_not_mask_result(
    blob_store: BlobStore, make_pdf, monkeypatch, caplog
) -> None:
    compressor = FakeCompressor(output_size=100)
    ingestor = PDFIngestor(blob_store, compressor, threshold_bytes=100)

    async def broken_delete(name_or_path):
        raise StorageError("permission denied")

    monkeypatch.setattr(blob_store, "delete", broken_delete)

    result = asyncio.run(ingestor.ingest(make_pdf(5000), "a.pdf"))

    assert result.compression.success is True
    assert any("intermediate" in record.getMessage() for record in caplog.records)


def test_empty_buffer_is_rejected(blob_store: BlobStore) -> None:
    ingestor = PDFIngestor(blob_store, FakeCompressor())

    with pytest.raises(ValidationError):
        asyncio.run(ingestor.ingest(b"", "empty.pdf"))
