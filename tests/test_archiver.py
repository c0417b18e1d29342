import io
import os
import zipfile

import pytest
from openpyxl import load_workbook

from ledger_ingest.domain.exports.archiver import (
    ComplianceResultRecord,
    ExportError,
    build_archive,
    publish_archive,
    workbook_file_name,
)
from ledger_ingest.domain.exports.shapes import PayloadShape, classify_payload, render_payload
from ledger_ingest.domain.ingestion.errors import ResourceError


def _sheet_rows(archive: zipfile.ZipFile, name: str, sheet: str):
    workbook = load_workbook(io.BytesIO(archive.read(name)))
    try:
        return [list(row) for row in workbook[sheet].iter_rows(values_only=True)]
    finally:
        workbook.close()


@pytest.fixture
def work_root(tmp_path):
    path = tmp_path / "exports"
    path.mkdir()
    return path


def test_archive_preserves_summary_shapes(work_root):
    results = [
        ComplianceResultRecord(
            id="aaaaaaaa-1111",
            status="completed",
            test_id="JE-01",
            analysis_name="Journal Entry Review",
            summary=[{"account": "1000", "count": 3}, {"account": "2000", "count": 5}, {"account": "3000", "count": 1}],
            results=[{"entry": 1, "flags": ["weekend"]}],
        ),
        ComplianceResultRecord(
            id="bbbbbbbb-2222",
            status="completed",
            test_id="JE-02",
            summary={"total_entries": 120, "flagged": 4, "threshold": 0.05},
            results="No exceptions",
        ),
    ]

    archive_path = build_archive(results, "project-x", work_root=work_root)

    assert archive_path.name.startswith("project-x-")
    assert archive_path.suffix == ".zip"
    with zipfile.ZipFile(archive_path) as archive:
        names = sorted(archive.namelist())
        assert names == ["JE-01-aaaaaaaa.xlsx", "JE-02-bbbbbbbb.xlsx"]
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in archive.infolist())

        first_summary = _sheet_rows(archive, "JE-01-aaaaaaaa.xlsx", "Summary")
        assert len(first_summary) == 4
        assert first_summary[0] == ["account", "count"]
        assert first_summary[1:] == [["1000", 3], ["2000", 5], ["3000", 1]]

        first_results = _sheet_rows(archive, "JE-01-aaaaaaaa.xlsx", "Results")
        assert first_results == [["entry", "flags"], [1, '["weekend"]']]

        second_summary = _sheet_rows(archive, "JE-02-bbbbbbbb.xlsx", "Summary")
        assert second_summary[0] == ["Property", "Value"]
        assert second_summary[1:] == [["total_entries", 120], ["flagged", 4], ["threshold", 0.05]]
        assert len(second_summary[1:]) == 3

        second_results = _sheet_rows(archive, "JE-02-bbbbbbbb.xlsx", "Results")
        assert second_results == [["Results"], ["No exceptions"]]

        test_sheet = _sheet_rows(archive, "JE-01-aaaaaaaa.xlsx", "Test")
        assert test_sheet[0][0] == "Test Information"
        assert test_sheet[1][:2] == ["Test ID", "JE-01"]
        assert test_sheet[2][:2] == ["Analysis Name", "Journal Entry Review"]
        assert test_sheet[4][:2] == ["Result ID", "aaaaaaaa-1111"]

    assert [entry.name for entry in work_root.iterdir()] == [archive_path.name]


def test_empty_payloads_render_placeholders(work_root):
    archive_path = build_archive([{"id": "cccccccc", "status": "pending"}], work_root=work_root)

    with zipfile.ZipFile(archive_path) as archive:
        name = archive.namelist()[0]
        assert name == "unknown-test-cccccccc.xlsx"
        assert _sheet_rows(archive, name, "Summary") == [["No summary data available"]]
        assert _sheet_rows(archive, name, "Results") == [["No results data available"]]


def test_results_without_id_are_skipped(work_root):
    archive_path = build_archive(
        [{"status": "orphan"}, {"id": "dddddddd", "status": "done", "testId": "T1", "summary": [1, 2]}],
        work_root=work_root,
    )

    with zipfile.ZipFile(archive_path) as archive:
        assert archive.namelist() == ["T1-dddddddd.xlsx"]
        assert _sheet_rows(archive, "T1-dddddddd.xlsx", "Summary") == [["Index", "Value"], [0, "1"], [1, "2"]]


def test_workbook_file_name_is_sanitized_and_truncated():
    record = ComplianceResultRecord(id="0123456789abcdef", status="done", test_id="GL/2024 Q1: " + "x" * 80)

    name = workbook_file_name(record)

    assert name.startswith("GL_2024_Q1__")
    assert name.endswith("-01234567.xlsx")
    assert len(name) == 50 + len("-01234567.xlsx")


def test_results_sharing_an_id_prefix_get_distinct_workbooks(work_root):
    results = [
        {"id": "abcdef12-0001", "status": "completed", "testId": "JE-01", "summary": {"flagged": 1}},
        {"id": "abcdef12-0002", "status": "completed", "testId": "JE-01", "summary": {"flagged": 2}},
        {"id": "abcdef12-0002", "status": "completed", "testId": "JE-01", "summary": {"flagged": 3}},
    ]

    archive_path = build_archive(results, work_root=work_root)

    with zipfile.ZipFile(archive_path) as archive:
        names = archive.namelist()
        assert names == ["JE-01-abcdef12.xlsx", "JE-01-abcdef12-0002.xlsx", "JE-01-abcdef12-0002-2.xlsx"]
        assert [_sheet_rows(archive, name, "Summary")[1] for name in names] == [
            ["flagged", 1],
            ["flagged", 2],
            ["flagged", 3],
        ]


def test_workbook_file_name_falls_back_to_full_id_when_taken():
    record = ComplianceResultRecord(id="abcdef12-0002", status="done", test_id="JE-01")

    assert workbook_file_name(record, {"JE-01-abcdef12.xlsx"}) == "JE-01-abcdef12-0002.xlsx"


def test_failed_build_removes_partial_archive(work_root, monkeypatch):
    def explode(record, directory, file_name=None):
        raise ValueError("renderer crashed")

    monkeypatch.setattr("ledger_ingest.domain.exports.archiver.write_result_workbook", explode)

    with pytest.raises(ExportError):
        build_archive([{"id": "eeeeeeee", "status": "done"}], work_root=work_root)

    assert list(work_root.iterdir()) == []


def test_unwritable_output_raises_resource_error(tmp_path):
    with pytest.raises(ResourceError):
        build_archive([{"id": "ffffffff", "status": "done"}], work_root=tmp_path / "missing")


@pytest.mark.parametrize(
    "payload, shape",
    [
        (None, PayloadShape.EMPTY),
        ("", PayloadShape.EMPTY),
        ([{"a": 1}], PayloadShape.ARRAY_OF_RECORDS),
        ([], PayloadShape.ARRAY_OF_SCALARS),
        ([1, "two"], PayloadShape.ARRAY_OF_SCALARS),
        ({"a": 1}, PayloadShape.RECORD),
        (42, PayloadShape.SCALAR),
    ],
)
def test_classify_payload(payload, shape):
    assert classify_payload(payload) == shape


def test_record_rows_use_first_record_columns():
    sheet = render_payload([{"a": 1, "b": {"x": 1}}, {"a": 2, "c": 3}], "Results")

    assert sheet.rows == [["a", "b"], [1, '{"x": 1}'], [2, None]]
    assert sheet.bold_header is True


def test_publish_archive_uploads_and_removes_local_copy(blob_store, work_root):
    archive_path = build_archive([{"id": "abcdef123456", "status": "done"}], work_root=work_root)
    size = archive_path.stat().st_size

    published = publish_archive(blob_store, archive_path, "exports-bucket", "exports/project-x")

    assert published.key == f"exports/project-x/{archive_path.name}"
    assert published.size_bytes == size
    assert "expires=900" in published.url
    assert blob_store.uploads[("exports-bucket", published.key)]["content_type"] == "application/zip"
    assert not os.path.exists(archive_path)
