"""Ghostscript-backed PDF compression with bounded, shell-free invocation."""

from __future__ import annotations

import asyncio
import logging
import math
import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePath
from typing import List, Optional, Sequence, Tuple, Union

from ..config import CompressionConfig, MEBIBYTE
from ..errors import NotFoundError, SecurityError, ValidationError
from .events import emit_file_event


LOGGER = logging.getLogger(__name__)

PathLike = Union[str, Path]

COMPATIBILITY_LEVELS = ("1.3", "1.4", "1.5", "1.6", "1.7")

_READ_CHUNK_BYTES = 64 * 1024


class QualityTier(str, Enum):
    """Ghostscript ``-dPDFSETTINGS`` presets, most aggressive first."""

    SCREEN = "screen"
    EBOOK = "ebook"
    PRINTER = "printer"
    PREPRESS = "prepress"


@dataclass(frozen=True)
class CompressionOptions:
    quality: QualityTier = QualityTier.EBOOK
    compatibility_level: str = "1.4"

    def __post_init__(self) -> None:
        if self.compatibility_level not in COMPATIBILITY_LEVELS:
            raise ValidationError(
                f"Unsupported PDF compatibility level: {self.compatibility_level!r}"
            )
        if not isinstance(self.quality, QualityTier):
            try:
                object.__setattr__(self, "quality", QualityTier(str(self.quality)))
            except ValueError as error:
                raise ValidationError(f"Unsupported quality tier: {self.quality!r}") from error


def compression_ratio(original_size: int, compressed_size: int) -> int:
    """Return the size reduction in whole percent (negative when the file grew)."""

    if original_size <= 0:
        return 0
    # Half-up rounding so 12.5 reports as 13.
    return int(math.floor((original_size - compressed_size) / original_size * 100 + 0.5))


@dataclass(frozen=True)
class CompressionOutcome:
    """Result of a single compression attempt."""

    success: bool
    original_size_bytes: Optional[int] = None
    compressed_size_bytes: Optional[int] = None
    ratio_percent: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, original_size: int, compressed_size: int) -> "CompressionOutcome":
        return cls(
            success=True,
            original_size_bytes=original_size,
            compressed_size_bytes=compressed_size,
            ratio_percent=compression_ratio(original_size, compressed_size),
        )

    @classmethod
    def failed(cls, error: str) -> "CompressionOutcome":
        return cls(success=False, error=error)


class PDFCompressor:
    """Run Ghostscript ``pdfwrite`` against files inside trusted directories."""

    def __init__(
        self,
        *,
        binary: str = "gs",
        probe_timeout: float = 5.0,
        timeout: float = 60.0,
        max_output_bytes: int = 10 * MEBIBYTE,
        compatibility_level: str = "1.4",
        quality_thresholds: Sequence[Tuple[int, str]] = (
            (10 * MEBIBYTE, "screen"),
            (5 * MEBIBYTE, "ebook"),
        ),
    ) -> None:
        if compatibility_level not in COMPATIBILITY_LEVELS:
            raise ValidationError(f"Unsupported PDF compatibility level: {compatibility_level!r}")
        self._binary = binary
        self._probe_timeout = probe_timeout
        self._timeout = timeout
        self._max_output_bytes = max_output_bytes
        self._compatibility_level = compatibility_level
        self._quality_thresholds = tuple(
            (int(limit), QualityTier(quality))
            for limit, quality in sorted(quality_thresholds, reverse=True)
        )

    @classmethod
    def from_config(cls, config: CompressionConfig) -> "PDFCompressor":
        return cls(
            binary=config.binary,
            probe_timeout=config.probe_timeout_seconds,
            timeout=config.timeout_seconds,
            max_output_bytes=config.max_output_bytes,
            compatibility_level=config.compatibility_level,
            quality_thresholds=config.quality_thresholds,
        )

    @property
    def compatibility_level(self) -> str:
        return self._compatibility_level

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    async def is_available(self) -> bool:
        """Return ``True`` when ``gs --version`` answers within the probe timeout."""

        binary = shutil.which(self._binary)
        if binary is None:
            LOGGER.debug("Ghostscript binary '%s' not found on PATH", self._binary)
            return False

        try:
            result = await asyncio.to_thread(
                subprocess.run,
                [binary, "--version"],
                capture_output=True,
                text=True,
                timeout=self._probe_timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            LOGGER.debug("Ghostscript probe failed: %s", error)
            return False

        if result.returncode != 0:
            LOGGER.debug("Ghostscript probe exited with status %s", result.returncode)
            return False

        LOGGER.debug("Ghostscript %s available", (result.stdout or "").strip())
        return True

    def select_quality(self, size_bytes: int) -> QualityTier:
        for limit, quality in self._quality_thresholds:
            if size_bytes > limit:
                return quality
        return QualityTier.PRINTER

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------
    def build_command(
        self,
        binary: str,
        input_path: Path,
        output_path: Path,
        options: CompressionOptions,
    ) -> List[str]:
        # -dNODISPLAY is left out on purpose: pdfwrite needs a device.
        return [
            binary,
            "-sDEVICE=pdfwrite",
            f"-dCompatibilityLevel={options.compatibility_level}",
            f"-dPDFSETTINGS=/{options.quality.value}",
            "-dNOPAUSE",
            "-dQUIET",
            "-dBATCH",
            "-dSAFER",
            f"-sOutputFile={output_path}",
            str(input_path),
        ]

    async def compress(
        self,
        input_path: PathLike,
        output_path: PathLike,
        options: Optional[CompressionOptions] = None,
    ) -> CompressionOutcome:
        """Compress *input_path* into *output_path*.

        Path problems raise :class:`SecurityError` and a missing input raises
        :class:`NotFoundError`. Everything that goes wrong once Ghostscript is
        involved is reported through a failed :class:`CompressionOutcome`.
        """

        source = _validate_path(input_path, "input")
        target = _validate_path(output_path, "output")
        if options is None:
            options = CompressionOptions(compatibility_level=self._compatibility_level)

        if not source.is_file():
            raise NotFoundError(f"Input file not found: {source}")

        original_size = (await asyncio.to_thread(source.stat)).st_size
        try:
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
        except OSError as error:
            return await self._fail(target, f"Unable to create output directory: {error}")

        binary = shutil.which(self._binary)
        if binary is None:
            return await self._fail(target, f"Ghostscript binary '{self._binary}' not found")

        command = self.build_command(binary, source, target, options)
        LOGGER.debug("Running compression command: %s", command)
        start = time.perf_counter()
        try:
            completed = await asyncio.to_thread(
                _run_bounded,
                command,
                timeout=self._timeout,
                max_output_bytes=self._max_output_bytes,
            )
        except OSError as error:
            return await self._fail(target, f"Unable to start Ghostscript: {error}")
        duration_ms = (time.perf_counter() - start) * 1000

        if completed.timed_out:
            return await self._fail(target, f"Compression timed out after {self._timeout:g}s")
        if completed.overflowed:
            return await self._fail(
                target,
                f"Ghostscript output exceeded the {self._max_output_bytes} byte limit",
            )

        if completed.returncode != 0:
            details = _first_line(completed.output)
            message = f"Ghostscript exited with status {completed.returncode}"
            if details:
                message = f"{message}: {details}"
            return await self._fail(target, message)

        try:
            compressed_size = (await asyncio.to_thread(target.stat)).st_size
        except OSError:
            return await self._fail(target, "Compressed output file was not created")

        outcome = CompressionOutcome.succeeded(original_size, compressed_size)
        emit_file_event(
            "compress_pdf",
            payload={
                "input": source.name,
                "output": target.name,
                "quality": options.quality.value,
                "original_size_bytes": original_size,
                "compressed_size_bytes": compressed_size,
                "ratio_percent": outcome.ratio_percent,
            },
            duration_ms=duration_ms,
        )
        return outcome

    async def _fail(self, target: Path, error: str) -> CompressionOutcome:
        LOGGER.warning("PDF compression failed: %s", error)
        emit_file_event(
            "compress_pdf_failed",
            payload={"output": target.name, "error": error},
            level=logging.WARNING,
        )
        await self.cleanup_temp_file(target)
        return CompressionOutcome.failed(error)

    async def cleanup_temp_file(self, path: PathLike) -> None:
        """Delete *path* if it exists; failures are logged and swallowed."""

        try:
            await asyncio.to_thread(Path(path).unlink, missing_ok=True)
        except Exception as error:  # noqa: BLE001 - cleanup is best effort
            LOGGER.warning("Failed to clean up temporary file '%s': %s", path, error)
            return
        emit_file_event("cleanup_temp_file", payload={"path": path}, level=logging.DEBUG)


def _validate_path(path: PathLike, label: str) -> Path:
    raw = os.fspath(path)
    if "\x00" in raw:
        raise SecurityError(f"Invalid {label} path")
    candidate = PurePath(raw)
    if not candidate.is_absolute():
        raise SecurityError(f"The {label} path must be absolute: {raw}")
    if ".." in candidate.parts:
        raise SecurityError(f"Path traversal detected in {label} path: {raw}")
    return Path(raw)


@dataclass(frozen=True)
class _ToolRun:
    returncode: Optional[int]
    output: bytes
    timed_out: bool = False
    overflowed: bool = False


def _run_bounded(command: Sequence[str], *, timeout: float, max_output_bytes: int) -> _ToolRun:
    """Run *command* with stderr folded into stdout.

    The process is killed as soon as it outlives *timeout* or its combined
    output grows past *max_output_bytes*, so memory use never exceeds the cap.
    """

    process = subprocess.Popen(
        list(command),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    )
    expired = threading.Event()

    def _expire() -> None:
        expired.set()
        process.kill()

    timer = threading.Timer(timeout, _expire)
    timer.daemon = True
    timer.start()
    captured = bytearray()
    overflowed = False
    try:
        with process.stdout:
            while True:
                chunk = process.stdout.read1(_READ_CHUNK_BYTES)
                if not chunk:
                    break
                if len(captured) + len(chunk) > max_output_bytes:
                    overflowed = True
                    process.kill()
                    break
                captured.extend(chunk)
        returncode = process.wait()
    finally:
        timer.cancel()
        if process.poll() is None:
            process.kill()
            process.wait()

    return _ToolRun(
        returncode=returncode,
        output=bytes(captured),
        timed_out=expired.is_set() and returncode != 0,
        overflowed=overflowed,
    )


def _first_line(output: Optional[bytes]) -> str:
    if not output:
        return ""
    text = output.decode("utf-8", errors="replace").strip()
    return text.splitlines()[0][:200] if text else ""


__all__ = [
    "COMPATIBILITY_LEVELS",
    "CompressionOptions",
    "CompressionOutcome",
    "PDFCompressor",
    "QualityTier",
    "compression_ratio",
]
