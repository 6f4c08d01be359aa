"""Utility helpers for consistent, collision-free artifact naming."""

from __future__ import annotations

import re
import secrets
import time
import uuid
from pathlib import PurePath
from typing import Optional, Tuple

__all__ = [
    "slugify",
    "normalize_extension",
    "build_unique_name",
    "extract_artifact_id",
]


_EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,10}$")
_UUID_SUFFIX_PATTERN = re.compile(
    r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$"
)


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def normalize_extension(original_name: Optional[str], default: str = ".pdf") -> str:
    """Return the lower-cased extension of *original_name* or *default*."""

    suffix = PurePath(original_name or "").suffix.lower()
    if not _EXTENSION_PATTERN.match(suffix):
        return default
    return suffix


def build_unique_name(
    base_name: str,
    original_name: Optional[str],
    *,
    default_extension: str = ".pdf",
) -> Tuple[str, str]:
    """Return ``(artifact_id, filename)`` for a new artifact.

    The filename follows ``<base>-<unixMillis>-<random9digits>-<uuid><ext>`` so
    concurrent writers never need a registry or lock to avoid collisions.
    """

    stem = slugify(PurePath(base_name or "").stem or "file")
    artifact_id = str(uuid.uuid4())
    millis = time.time_ns() // 1_000_000
    random_digits = f"{secrets.randbelow(10**9):09d}"
    extension = normalize_extension(original_name, default_extension)
    return artifact_id, f"{stem}-{millis}-{random_digits}-{artifact_id}{extension}"


def extract_artifact_id(filename: str) -> str:
    """Recover the identifier embedded in *filename*, falling back to its stem."""

    stem = PurePath(filename).stem
    match = _UUID_SUFFIX_PATTERN.search(stem)
    return match.group(1) if match else stem
