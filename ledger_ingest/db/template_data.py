"""
Storage of processed template rows and per-file processing status.

``template_files`` holds one row per uploaded file with its processing
status (``processing``, ``success`` or ``error``); ``template_rows`` holds
the typed records as JSON, keyed by file and row number. The SQL sticks to
types and functions PostgreSQL and SQLite share.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import text
from sqlalchemy.engine import Engine

from ledger_ingest.domain.ingestion.types import Batch, BlobReference
from ledger_ingest.integrations.storage import BlobStore, StorageNotFoundError
from ledger_ingest.utils.serialization import dumps_record

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "processing"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

_initialized_databases: Set[str] = set()
_table_init_lock = threading.Lock()

_CREATE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS template_files (
        id VARCHAR(36) PRIMARY KEY,
        template_id VARCHAR(255) NOT NULL,
        storage_location VARCHAR(255) NOT NULL,
        file_key TEXT NOT NULL,
        file_name VARCHAR(500) NOT NULL,
        status VARCHAR(50) NOT NULL DEFAULT 'processing',
        row_count INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS template_rows (
        file_id VARCHAR(36) NOT NULL,
        row_number INTEGER NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (file_id, row_number)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_template_files_template ON template_files(template_id)",
)


def ensure_template_tables(engine: Engine) -> None:
    """Create the template tables on-demand (once per database URL)."""
    marker = str(engine.url)
    if marker in _initialized_databases:
        return

    with _table_init_lock:
        if marker in _initialized_databases:
            return
        with engine.begin() as conn:
            for statement in _CREATE_STATEMENTS:
                conn.execute(text(statement))
        _initialized_databases.add(marker)


def _row_to_file(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "template_id": row["template_id"],
        "storage_location": row["storage_location"],
        "file_key": row["file_key"],
        "file_name": row["file_name"],
        "status": row["status"],
        "row_count": row["row_count"],
        "error_message": row["error_message"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def register_template_file(
    engine: Engine,
    *,
    template_id: str,
    blob: BlobReference,
    file_id: Optional[str] = None,
) -> str:
    """Insert a ``processing`` status row for a file and return its id."""
    ensure_template_tables(engine)
    file_id = file_id or str(uuid.uuid4())
    insert_sql = """
    INSERT INTO template_files (id, template_id, storage_location, file_key, file_name, status, row_count)
    VALUES (:id, :template_id, :storage_location, :file_key, :file_name, :status, 0)
    """
    with engine.begin() as conn:
        conn.execute(text(insert_sql), {
            "id": file_id,
            "template_id": template_id,
            "storage_location": blob.storage_location,
            "file_key": blob.key,
            "file_name": blob.file_name,
            "status": STATUS_PROCESSING,
        })
    return file_id


def get_template_file(engine: Engine, file_id: str) -> Optional[Dict[str, Any]]:
    ensure_template_tables(engine)
    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT * FROM template_files WHERE id = :id"),
            {"id": file_id},
        ).mappings().first()
    return _row_to_file(row) if row else None


def update_file_status(
    engine: Engine,
    file_id: str,
    status: str,
    *,
    row_count: Optional[int] = None,
    error_message: Optional[str] = None,
) -> None:
    update_sql = """
    UPDATE template_files
    SET status = :status,
        row_count = COALESCE(:row_count, row_count),
        error_message = :error_message,
        updated_at = CURRENT_TIMESTAMP
    WHERE id = :id
    """
    with engine.begin() as conn:
        conn.execute(text(update_sql), {
            "id": file_id,
            "status": status,
            "row_count": row_count,
            "error_message": error_message,
        })


def insert_template_rows(engine: Engine, file_id: str, first_row_number: int, records: Batch) -> int:
    if not records:
        return 0
    params = [
        {"file_id": file_id, "row_number": first_row_number + offset, "data": dumps_record(record)}
        for offset, record in enumerate(records)
    ]
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO template_rows (file_id, row_number, data) VALUES (:file_id, :row_number, :data)"),
            params,
        )
    return len(params)


def count_template_rows(engine: Engine, file_id: str) -> int:
    ensure_template_tables(engine)
    with engine.connect() as conn:
        return conn.execute(
            text("SELECT COUNT(*) FROM template_rows WHERE file_id = :file_id"),
            {"file_id": file_id},
        ).scalar_one()


def fetch_template_rows(engine: Engine, file_id: str, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
    ensure_template_tables(engine)
    select_sql = """
    SELECT data FROM template_rows
    WHERE file_id = :file_id
    ORDER BY row_number
    LIMIT :limit OFFSET :offset
    """
    with engine.connect() as conn:
        rows = conn.execute(text(select_sql), {"file_id": file_id, "limit": limit, "offset": offset}).all()
    return [json.loads(row[0]) for row in rows]


def delete_template_file(engine: Engine, store: BlobStore, file_id: str) -> bool:
    """
    Delete a file's rows, its status row and the stored blob.

    Returns:
        False if the file is unknown, True otherwise
    """
    record = get_template_file(engine, file_id)
    if record is None:
        return False

    with engine.begin() as conn:
        conn.execute(text("DELETE FROM template_rows WHERE file_id = :id"), {"id": file_id})
        conn.execute(text("DELETE FROM template_files WHERE id = :id"), {"id": file_id})

    try:
        store.delete(record["storage_location"], record["file_key"])
    except StorageNotFoundError:
        logger.warning(f"Blob {record['storage_location']}/{record['file_key']} was already gone")
    logger.info(f"Deleted template file {file_id} and its stored rows")
    return True


class TemplateDataSink:
    """Persistence sink writing batches into ``template_rows`` for one file."""

    def __init__(self, engine: Engine, file_id: str):
        self.engine = engine
        self.file_id = file_id
        self._next_row_number = 1

    async def accept(self, batch: Batch) -> None:
        first_row_number = self._next_row_number
        self._next_row_number += len(batch)
        await asyncio.to_thread(insert_template_rows, self.engine, self.file_id, first_row_number, batch)

    async def finalize(self, total_rows: int) -> None:
        await asyncio.to_thread(update_file_status, self.engine, self.file_id, STATUS_SUCCESS, row_count=total_rows)
        logger.info(f"Template file {self.file_id} processed: {total_rows} rows")

    async def mark_failed(self, error_message: str) -> None:
        await asyncio.to_thread(update_file_status, self.engine, self.file_id, STATUS_ERROR, error_message=error_message)
