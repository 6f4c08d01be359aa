"""Configuration loading utilities for the Shala Shikshak services."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".shala_write_check"

BASE_URL_ENV = "SHALA_BASE_URL"

MEBIBYTE = 1024 * 1024


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The helper attempts to create ``preferred`` and returns it when writable. If
    the preferred location is unavailable, each candidate in ``fallbacks`` is
    tried in order. The first writable fallback is returned along with a flag
    indicating that a fallback was used. When no candidate can be prepared the
    original ``preferred`` path is returned.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


# Sizes strictly above a threshold select that tier; anything smaller gets the
# least aggressive "printer" preset.
_DEFAULT_QUALITY_THRESHOLDS: Tuple[Tuple[int, str], ...] = (
    (10 * MEBIBYTE, "screen"),
    (5 * MEBIBYTE, "ebook"),
)


@dataclass(frozen=True)
class CompressionConfig:
    """Settings controlling when and how uploaded PDFs are compressed."""

    binary: str = "gs"
    threshold_bytes: int = 2 * MEBIBYTE
    probe_timeout_seconds: float = 5.0
    timeout_seconds: float = 60.0
    max_output_bytes: int = 10 * MEBIBYTE
    compatibility_level: str = "1.4"
    quality_thresholds: Tuple[Tuple[int, str], ...] = _DEFAULT_QUALITY_THRESHOLDS

    @classmethod
    def from_mapping(cls, mapping: Optional[Mapping[str, Any]]) -> "CompressionConfig":
        if not mapping:
            return cls()
        defaults = cls()
        thresholds = defaults.quality_thresholds
        raw_thresholds = mapping.get("quality_thresholds")
        if raw_thresholds:
            parsed = []
            for quality, min_megabytes in dict(raw_thresholds).items():
                parsed.append((int(float(min_megabytes) * MEBIBYTE), str(quality)))
            thresholds = tuple(sorted(parsed, reverse=True))
        return cls(
            binary=str(mapping.get("binary", defaults.binary)),
            threshold_bytes=int(mapping.get("threshold_bytes", defaults.threshold_bytes)),
            probe_timeout_seconds=float(
                mapping.get("probe_timeout_seconds", defaults.probe_timeout_seconds)
            ),
            timeout_seconds=float(mapping.get("timeout_seconds", defaults.timeout_seconds)),
            max_output_bytes=int(mapping.get("max_output_bytes", defaults.max_output_bytes)),
            compatibility_level=str(
                mapping.get("compatibility_level", defaults.compatibility_level)
            ),
            quality_thresholds=thresholds,
        )


@dataclass(frozen=True)
class AppConfig:
    """Simple container describing runtime paths and limits for the application."""

    storage_root: Path
    database_file: Path
    base_url: str = "http://localhost:5000"
    public_prefix: str = "uploads"
    max_upload_bytes: int = 30 * MEBIBYTE
    compression: CompressionConfig = field(default_factory=CompressionConfig)

    @property
    def staging_root(self) -> Path:
        """Location used for intermediate tool output."""

        return (self.storage_root / ".staging").resolve()

    @property
    def data_root(self) -> Path:
        """Directory holding the database and log file, outside the upload root."""

        return self.database_file.parent

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".shala" / "uploads"
        storage_root, _ = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        # The upload root is served over HTTP, so the database falls back elsewhere.
        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (Path.home() / ".shala" / "data" / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        defaults = cls(storage_root=storage_root, database_file=database_file)
        base_url = os.environ.get(BASE_URL_ENV) or mapping.get("base_url") or defaults.base_url
        return cls(
            storage_root=storage_root,
            database_file=database_file,
            base_url=str(base_url).rstrip("/"),
            public_prefix=str(mapping.get("public_prefix", defaults.public_prefix)).strip("/"),
            max_upload_bytes=int(mapping.get("max_upload_bytes", defaults.max_upload_bytes)),
            compression=CompressionConfig.from_mapping(mapping.get("compression")),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "CompressionConfig", "load_config"]
