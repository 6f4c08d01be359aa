"""Flat-directory storage for uploaded artifacts."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import stat
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

from ..config import AppConfig
from ..errors import SecurityError, StorageError, ValidationError
from .events import emit_file_event
from .naming import build_unique_name, extract_artifact_id


LOGGER = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
STAGING_DIRNAME = ".staging"

PathLike = Union[str, Path]


@dataclass(frozen=True)
class FileArtifact:
    """Descriptor of a file persisted inside the store root."""

    id: str
    name: str
    path: Path
    url: str
    mime_type: str
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": str(self.path),
            "url": self.url,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
        }


class BlobStore:
    """Persist byte buffers under collision-free names in a single directory."""

    def __init__(
        self,
        root: PathLike,
        *,
        base_url: str,
        public_prefix: str = "uploads",
        mime_type: str = PDF_MIME_TYPE,
        extension: str = ".pdf",
    ) -> None:
        self._root = Path(root).resolve()
        self._staging_root = self._root / STAGING_DIRNAME
        self._base_url = base_url.rstrip("/")
        self._public_prefix = public_prefix.strip("/")
        self._mime_type = mime_type
        self._extension = extension.lower()

    @classmethod
    def from_config(cls, config: AppConfig) -> "BlobStore":
        return cls(
            config.storage_root,
            base_url=config.base_url,
            public_prefix=config.public_prefix,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def staging_root(self) -> Path:
        return self._staging_root

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Create the root and staging directories."""

        try:
            self._root.mkdir(parents=True, exist_ok=True)
            self._staging_root.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StorageError(f"Unable to prepare storage root '{self._root}': {error}") from error
        emit_file_event(
            "initialize_store",
            payload={"root": self._root, "staging": self._staging_root},
            level=logging.DEBUG,
        )

    # ------------------------------------------------------------------
    # Path helpers
    # ------------------------------------------------------------------
    def build_url(self, name: str) -> str:
        prefix = f"/{self._public_prefix}" if self._public_prefix else ""
        return f"{self._base_url}{prefix}/{quote(name)}"

    def resolve(self, name_or_path: PathLike) -> Path:
        """Map *name_or_path* onto a location inside the store root.

        Relative inputs only contribute their final component. Absolute inputs
        must already point inside the root.
        """

        raw = str(name_or_path).strip()
        if not raw or "\x00" in raw:
            raise ValidationError("A file name is required")

        candidate = Path(raw)
        if candidate.is_absolute():
            resolved = candidate.resolve()
            if resolved == self._root or not resolved.is_relative_to(self._root):
                raise SecurityError(f"Path '{raw}' is outside the storage root")
            return resolved

        name = PurePosixPath(raw.replace("\\", "/")).name
        if name in {"", ".", ".."}:
            raise ValidationError(f"Invalid file name: {raw!r}")
        return self._root / name

    def staging_path(self, prefix: str) -> Path:
        """Return an unused path under the staging directory for tool output."""

        _, name = build_unique_name(prefix, None, default_extension=self._extension)
        return self._staging_root / name

    def is_managed(self, path: Path) -> bool:
        """Return ``True`` when *path* carries the extension this store writes."""

        return path.suffix.lower() == self._extension

    def _build_artifact(self, path: Path, size_bytes: int, artifact_id: Optional[str] = None) -> FileArtifact:
        return FileArtifact(
            id=artifact_id or extract_artifact_id(path.name),
            name=path.name,
            path=path,
            url=self.build_url(path.name),
            mime_type=self._mime_type,
            size_bytes=size_bytes,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def store(
        self,
        data: bytes,
        base_name: str,
        original_name: Optional[str] = None,
    ) -> FileArtifact:
        """Write *data* under a fresh name and return its descriptor."""

        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise ValidationError("Artifact payload must be bytes")

        # Names always carry the store extension, whatever the upload was called.
        artifact_id, name = build_unique_name(base_name, None, default_extension=self._extension)
        target = self._root / name
        start = time.perf_counter()
        try:
            size_bytes = await asyncio.to_thread(_write_new_file, target, bytes(data))
        except OSError as error:
            emit_file_event(
                "store_failed",
                payload={"name": name, "error": error},
                duration_ms=(time.perf_counter() - start) * 1000,
                level=logging.ERROR,
            )
            raise StorageError(f"Unable to store '{name}': {error}") from error

        emit_file_event(
            "store",
            payload={"name": name, "size_bytes": size_bytes, "original_name": original_name},
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        return self._build_artifact(target, size_bytes, artifact_id)

    async def retrieve_info(self, name_or_path: PathLike) -> Optional[FileArtifact]:
        """Return the descriptor for *name_or_path* or ``None`` when absent."""

        target = self.resolve(name_or_path)
        if not self.is_managed(target):
            return None
        try:
            stats = await asyncio.to_thread(target.stat)
        except FileNotFoundError:
            return None
        except OSError as error:
            raise StorageError(f"Unable to inspect '{target.name}': {error}") from error

        if not stat.S_ISREG(stats.st_mode):
            return None

        emit_file_event(
            "retrieve_info",
            payload={"name": target.name, "size_bytes": stats.st_size},
            level=logging.DEBUG,
        )
        return self._build_artifact(target, stats.st_size)

    async def delete(self, name_or_path: PathLike) -> None:
        """Remove *name_or_path*; deleting a missing file only logs a warning."""

        target = self.resolve(name_or_path)
        if not self.is_managed(target):
            LOGGER.warning("Refusing to delete '%s'; it is not a stored artifact", target)
            return
        start = time.perf_counter()
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            LOGGER.warning("File '%s' was already removed", target)
            emit_file_event(
                "delete_missing",
                payload={"name": target.name},
                level=logging.WARNING,
            )
            return
        except OSError as error:
            raise StorageError(f"Unable to delete '{target.name}': {error}") from error

        emit_file_event(
            "delete",
            payload={"name": target.name},
            duration_ms=(time.perf_counter() - start) * 1000,
        )

    async def find(self, identifier: str) -> Optional[FileArtifact]:
        """Return the artifact named *identifier* or carrying it as its embedded id."""

        if PurePosixPath(identifier).suffix:
            return await self.retrieve_info(identifier)
        try:
            names = await asyncio.to_thread(self._scan_names)
        except OSError as error:
            raise StorageError(f"Unable to list '{self._root}': {error}") from error
        for name in names:
            if extract_artifact_id(name) == identifier:
                return await self.retrieve_info(name)
        return None

    async def list(self) -> List[FileArtifact]:
        """Return every stored artifact with the configured extension, sorted by name."""

        try:
            names = await asyncio.to_thread(self._scan_names)
        except OSError as error:
            raise StorageError(f"Unable to list '{self._root}': {error}") from error

        artifacts: List[FileArtifact] = []
        for name in names:
            artifact = await self.retrieve_info(name)
            if artifact is not None:
                artifacts.append(artifact)

        emit_file_event("list", payload={"count": len(artifacts)}, level=logging.DEBUG)
        return artifacts

    def _scan_names(self) -> List[str]:
        if not self._root.exists():
            return []
        names = []
        for entry in self._root.iterdir():
            if not self.is_managed(entry):
                continue
            if entry.is_file():
                names.append(entry.name)
        return sorted(names)


def _write_new_file(target: Path, payload: bytes) -> int:
    # "xb" refuses to overwrite, so a clash can never clobber another artifact.
    handle = target.open("xb")
    try:
        with handle:
            handle.write(payload)
        return target.stat().st_size
    except OSError:
        with contextlib.suppress(OSError):
            target.unlink()
        raise


__all__ = ["BlobStore", "FileArtifact", "PDF_MIME_TYPE", "STAGING_DIRNAME"]
