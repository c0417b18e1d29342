"""
Pytest configuration and fixtures for Ledger Ingest tests.

Unit tests never need a live database or bucket: storage is replaced by an
in-memory blob store and persistence by a SQLite file per test.
"""

import os

# Tests build their own engines; keep the app from bootstrapping Postgres.
os.environ.setdefault("SKIP_DB_INIT", "1")

import pytest
from sqlalchemy import create_engine

from ledger_ingest.db.template_data import ensure_template_tables
from ledger_ingest.domain.ingestion.types import BlobReference
from tests.utils.fakes import FakeClock, InMemoryBlobStore

BUCKET = "ledger-uploads"


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scratch_dir(tmp_path):
    """Dedicated scratch directory so tests can assert nothing is left behind."""
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def store_file(blob_store):
    """Put bytes into the fake store and return the matching BlobReference."""

    def _store(key: str, data: bytes) -> BlobReference:
        blob_store.put(BUCKET, key, data)
        return BlobReference(storage_location=BUCKET, key=key)

    return _store


@pytest.fixture
def sqlite_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    ensure_template_tables(engine)
    yield engine
    engine.dispose()
