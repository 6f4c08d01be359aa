"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config
from .errors import StorageError
from .services.blob_store import BlobStore

LOGGER = logging.getLogger(__name__)


_SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS standards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT DEFAULT '',
    position INTEGER NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS subjects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    standard_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    position INTEGER NOT NULL,
    UNIQUE(standard_id, name),
    UNIQUE(standard_id, position),
    FOREIGN KEY(standard_id) REFERENCES standards(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS chapters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id INTEGER NOT NULL,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    position INTEGER NOT NULL,
    UNIQUE(subject_id, name),
    UNIQUE(subject_id, position),
    FOREIGN KEY(subject_id) REFERENCES subjects(id) ON DELETE CASCADE
);
"""


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self, *, clear_staging: bool = False) -> None:
        """Run all bootstrap tasks.

        Stale tool output under the staging directory is removed only when
        *clear_staging* is set; the server passes it once at startup.
        """

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        if clear_staging:
            self._clear_staging()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        try:
            BlobStore.from_config(self._config).initialize()
        except StorageError as error:
            raise BootstrapError(str(error)) from error

        for path in (self._config.storage_root, self._config.staging_root):
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(f"Directory '{path}' is not writable")
            LOGGER.debug("Ensured directory exists: %s", path)

    def _clear_staging(self) -> None:
        staging_root = self._config.staging_root
        for child in staging_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove stale staging file %s: %s", child, error)
        LOGGER.debug("Cleared staging directory: %s", staging_root)

    def _ensure_database(self) -> None:
        database_file = self._config.database_file
        LOGGER.debug("Ensuring database schema at %s", database_file)
        if not config_module._ensure_writable_directory(database_file.parent):
            raise BootstrapError(f"Database directory '{database_file.parent}' is not writable")
        try:
            connection = sqlite3.connect(database_file)
        except sqlite3.Error as error:
            raise BootstrapError(f"Unable to open database '{database_file}': {error}") from error
        try:
            connection.executescript(_SCHEMA)
            connection.commit()
        except sqlite3.Error as error:
            raise BootstrapError(f"Unable to create database schema: {error}") from error
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None, *, clear_staging: bool = False) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize(clear_staging=clear_staging)
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
