import sqlite3
from pathlib import Path

import pytest

import shala.config as config_module
from shala.bootstrap import BootstrapError, Bootstrapper
from shala.config import AppConfig


def test_bootstrapper_raises_when_storage_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    storage_root = tmp_path / "uploads"
    config = AppConfig(storage_root=storage_root, database_file=tmp_path / "data" / "shala.db")

    original_ensure = config_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == storage_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", fake_ensure)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(config).initialize()

    assert "uploads" in str(excinfo.value)


def test_bootstrapper_clears_stale_staging_files(tmp_path: Path) -> None:
    storage_root = tmp_path / "uploads"
    config = AppConfig(storage_root=storage_root, database_file=tmp_path / "data" / "shala.db")
    staging = config.staging_root
    staging.mkdir(parents=True)
    (staging / "compressed-leftover.pdf").write_bytes(b"%PDF")
    (storage_root / "kept.pdf").write_bytes(b"%PDF")

    Bootstrapper(config).initialize(clear_staging=True)

    assert staging.is_dir()
    assert list(staging.iterdir()) == []
    assert (storage_root / "kept.pdf").exists()


def test_bootstrapper_keeps_staging_files_by_default(temp_config: AppConfig) -> None:
    in_flight = temp_config.staging_root / "compressed-in-flight.pdf"
    in_flight.write_bytes(b"%PDF")

    Bootstrapper(temp_config).initialize()

    assert in_flight.exists()


def test_database_lives_outside_storage_root(temp_config: AppConfig) -> None:
    assert temp_config.database_file.exists()
    assert not temp_config.database_file.is_relative_to(temp_config.storage_root)


def test_bootstrapper_creates_schema_with_unique_positions(temp_config: AppConfig) -> None:
    connection = sqlite3.connect(temp_config.database_file)
    try:
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {"standards", "subjects", "chapters"} <= tables

        connection.execute("INSERT INTO standards(name, position) VALUES ('Class 1', 1)")
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute("INSERT INTO standards(name, position) VALUES ('Class 2', 1)")
    finally:
        connection.close()


def test_bootstrap_is_idempotent(temp_config: AppConfig) -> None:
    Bootstrapper(temp_config).initialize()
    Bootstrapper(temp_config).initialize()

    assert temp_config.database_file.exists()


def test_store_initialization_failure_becomes_bootstrap_error(
    temp_config: AppConfig, monkeypatch
) -> None:
    from shala.errors import StorageError
    from shala.services.blob_store import BlobStore

    def broken_initialize(self) -> None:
        raise StorageError("Unable to prepare storage root 'uploads'")

    monkeypatch.setattr(BlobStore, "initialize", broken_initialize)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(temp_config).initialize()

    assert "storage root" in str(excinfo.value)
