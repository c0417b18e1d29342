import os

os.environ["SKIP_DB_INIT"] = "1"

import pytest
from fastapi.testclient import TestClient

from ledger_ingest.api.dependencies import (
    get_blob_store,
    get_db_engine,
    get_header_service,
    get_row_transformer,
)
from ledger_ingest.domain.ingestion.header_cache import HeaderCache
from ledger_ingest.domain.ingestion.header_service import HeaderService
from ledger_ingest.domain.ingestion.transformer import RowTransformer
from ledger_ingest.main import app

from tests.utils.workbooks import LEGACY_XLS_BYTES, build_workbook_bytes, ledger_rows

BUCKET = "ledger-uploads"


@pytest.fixture
def client(blob_store, sqlite_engine, scratch_dir):
    service = HeaderService(blob_store, HeaderCache(), scratch_dir=str(scratch_dir))
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_db_engine] = lambda: sqlite_engine
    app.dependency_overrides[get_header_service] = lambda: service
    app.dependency_overrides[get_row_transformer] = lambda: RowTransformer(blob_store, scratch_dir=str(scratch_dir))
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Ledger Ingest API", "version": "1.0.0"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_headers_are_cached_between_calls(client, blob_store):
    blob_store.put(BUCKET, "uploads/gl.csv", b"Account, Amount ,Posted\nACC-1,10,2024-01-01\n")
    payload = {"storage_location": BUCKET, "key": "uploads/gl.csv"}

    first = client.post("/api/ingest/headers", json=payload)
    second = client.post("/api/ingest/headers", json=payload)

    assert first.status_code == 200
    assert first.json() == {"headers": ["Account", "Amount", "Posted"], "cached": False}
    assert second.json() == {"headers": ["Account", "Amount", "Posted"], "cached": True}
    assert blob_store.count("download_range") == 1


def test_carriage_return_only_csv_headers(client, blob_store):
    blob_store.put(BUCKET, "uploads/mac.csv", b"Name,Amount\rA,100\rB,200\r")

    response = client.post("/api/ingest/headers", json={"storage_location": BUCKET, "key": "uploads/mac.csv"})

    assert response.status_code == 200
    assert response.json()["headers"] == ["Name", "Amount"]


def test_workbook_headers(client, blob_store):
    blob_store.put(BUCKET, "uploads/gl.xlsx", build_workbook_bytes({"Ledger": ledger_rows(3)}))

    response = client.post("/api/ingest/headers", json={"storage_location": BUCKET, "key": "uploads/gl.xlsx"})

    assert response.status_code == 200
    assert response.json()["headers"] == ["Account", "Amount", "Posted"]


def test_legacy_workbook_is_rejected(client, blob_store):
    blob_store.put(BUCKET, "uploads/old.xls", LEGACY_XLS_BYTES)

    response = client.post("/api/ingest/headers", json={"storage_location": BUCKET, "key": "uploads/old.xls"})

    assert response.status_code == 422


def test_unsupported_extension_is_rejected(client):
    response = client.post("/api/ingest/headers", json={"storage_location": BUCKET, "key": "notes.txt"})

    assert response.status_code == 422


def test_missing_blob_is_not_found(client):
    response = client.post("/api/ingest/headers", json={"storage_location": BUCKET, "key": "missing.csv"})

    assert response.status_code == 404


def test_diagnose_reports_workbook_details(client, blob_store):
    blob_store.put(BUCKET, "uploads/gl.xlsx", build_workbook_bytes({"Ledger": ledger_rows(3), "Notes": [["x"]]}))

    response = client.post(
        "/api/ingest/diagnose",
        json={"storage_location": BUCKET, "key": "uploads/gl.xlsx", "include_details": True},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["is_valid"] is True
    assert body["can_process"] is True
    assert body["details"]["worksheet_count"] == 2
    assert body["details"]["file_signature"] == "504b0304"


def test_diagnose_legacy_workbook(client, blob_store):
    blob_store.put(BUCKET, "uploads/old.xls", LEGACY_XLS_BYTES)

    response = client.post("/api/ingest/diagnose", json={"storage_location": BUCKET, "key": "uploads/old.xls"})

    body = response.json()
    assert body["is_valid"] is False
    assert body["can_process"] is False
    assert body["details"] is None


def test_process_file_then_read_status_and_rows(client, blob_store):
    blob_store.put(BUCKET, "uploads/gl.csv", b"Account,Amount,Posted\nACC-1,\"1,000\",2024-01-31\nACC-2,-,\n")

    response = client.post(
        "/api/ingest/process",
        json={
            "storage_location": BUCKET,
            "key": "uploads/gl.csv",
            "template_id": "general-ledger",
            "mapping": {"Account": "account", "Amount": "amount", "Posted": "posted"},
            "fields": [
                {"name": "account"},
                {"name": "amount", "type": "number"},
                {"name": "posted", "type": "date"},
            ],
        },
    )

    assert response.status_code == 202
    file_id = response.json()["file_id"]
    assert response.json()["status"] == "processing"

    # TestClient runs background tasks before returning the response
    status = client.get(f"/api/ingest/files/{file_id}")
    assert status.status_code == 200
    assert status.json()["status"] == "success"
    assert status.json()["row_count"] == 2

    rows = client.get(f"/api/ingest/files/{file_id}/rows", params={"limit": 10})
    assert rows.status_code == 200
    assert rows.json()["rows"] == [
        {"account": "ACC-1", "amount": 1000, "posted": "2024-01-31"},
        {"account": "ACC-2", "amount": 0, "posted": ""},
    ]


def test_process_failure_is_recorded(client, blob_store):
    blob_store.put(BUCKET, "uploads/broken.xlsx", b"PK\x03\x04 truncated")

    response = client.post(
        "/api/ingest/process",
        json={
            "storage_location": BUCKET,
            "key": "uploads/broken.xlsx",
            "template_id": "general-ledger",
            "mapping": {"Account": "account"},
        },
    )

    status = client.get(f"/api/ingest/files/{response.json()['file_id']}").json()
    assert status["status"] == "error"
    assert status["error_message"]


def test_process_requires_mapping(client):
    response = client.post(
        "/api/ingest/process",
        json={"storage_location": BUCKET, "key": "uploads/gl.csv", "template_id": "t", "mapping": {}},
    )

    assert response.status_code == 422


def test_process_rejects_unsupported_extension(client):
    response = client.post(
        "/api/ingest/process",
        json={"storage_location": BUCKET, "key": "gl.pdf", "template_id": "t", "mapping": {"A": "a"}},
    )

    assert response.status_code == 422


def test_unknown_file_status_is_not_found(client):
    assert client.get("/api/ingest/files/does-not-exist").status_code == 404
    assert client.get("/api/ingest/files/does-not-exist/rows").status_code == 404
    assert client.delete("/api/ingest/files/does-not-exist").status_code == 404


def test_rows_limit_is_bounded(client):
    response = client.get("/api/ingest/files/any/rows", params={"limit": 5000})

    assert response.status_code == 422


def test_delete_file_removes_blob(client, blob_store):
    blob_store.put(BUCKET, "uploads/gl.csv", b"Account\nACC-1\n")
    file_id = client.post(
        "/api/ingest/process",
        json={"storage_location": BUCKET, "key": "uploads/gl.csv", "template_id": "t", "mapping": {"Account": "account"}},
    ).json()["file_id"]

    response = client.delete(f"/api/ingest/files/{file_id}")

    assert response.status_code == 200
    assert response.json() == {"success": True, "file_id": file_id}
    assert (BUCKET, "uploads/gl.csv") not in blob_store.objects
    assert client.get(f"/api/ingest/files/{file_id}").status_code == 404


def test_export_results_publishes_archive(client, blob_store):
    response = client.post(
        "/api/export/results",
        json={
            "storage_location": "exports-bucket",
            "label_prefix": "audit-2024",
            "results": [
                {"id": "aaaaaaaa-1", "status": "completed", "testId": "JE-01", "summary": {"flagged": 2}},
                {"id": "bbbbbbbb-2", "status": "completed", "testId": "JE-02", "results": [{"entry": 1}]},
            ],
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["workbook_count"] == 2
    assert body["key"].startswith("exports/audit-2024-")
    assert body["key"].endswith(".zip")
    assert ("exports-bucket", body["key"]) in blob_store.objects
    assert body["size_bytes"] == len(blob_store.objects[("exports-bucket", body["key"])])


def test_export_rejects_empty_results(client):
    response = client.post("/api/export/results", json={"storage_location": "exports-bucket", "results": []})

    assert response.status_code == 400


def test_export_rejects_unsafe_label_prefix(client):
    response = client.post(
        "/api/export/results",
        json={"storage_location": "exports-bucket", "label_prefix": "../etc", "results": [{"id": "x"}]},
    )

    assert response.status_code == 422


def test_export_health(client):
    response = client.get("/api/export/health")

    assert response.status_code == 200
    assert response.json()["endpoint"] == "/api/export/results"
    assert response.json()["compression_level"] == 6
