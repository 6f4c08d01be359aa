from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shala.bootstrap import Bootstrapper
from shala.config import AppConfig
from shala.services.blob_store import BlobStore


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.delenv("SHALA_BASE_URL", raising=False)
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "uploads",
            "database_file": "data/shala.db",
            "base_url": "http://testserver",
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def blob_store(temp_config: AppConfig) -> BlobStore:
    store = BlobStore.from_config(temp_config)
    store.initialize()
    return store


@pytest.fixture()
def make_pdf() -> Callable[[int], bytes]:
    """Return a factory producing *size* bytes that start with a PDF header."""

    def _make(size: int) -> bytes:
        header = b"%PDF-1.4\n"
        if size <= len(header):
            return header[:size]
        return header + b"0" * (size - len(header))

    return _make
