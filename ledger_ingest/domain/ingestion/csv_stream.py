"""
Row-at-a-time CSV reading over a storage download stream.
"""
import codecs
import csv
import logging
from typing import BinaryIO, Iterator, List, Optional, Sequence, Tuple

from .cells import align_headers, build_record, headers_match
from .errors import TransformError
from .types import HeaderSet, RawRecord

logger = logging.getLogger(__name__)


def open_text_stream(body: BinaryIO):
    """Wrap a binary download body as UTF-8 text, dropping a leading BOM."""
    return codecs.getreader("utf-8-sig")(body)


def _is_blank(row: Sequence[str]) -> bool:
    return all(not cell.strip() for cell in row)


def _check_width(row: List[str], headers: HeaderSet, row_number: int) -> None:
    extra = [cell for cell in row[len(headers):] if cell.strip()]
    if extra:
        raise TransformError(
            f"Row {row_number} has {len(row)} columns but the header row has {len(headers)}",
            row_number=row_number,
        )


def read_csv_records(
    body: BinaryIO,
    expected_headers: Optional[Sequence[str]] = None,
) -> Iterator[Tuple[int, RawRecord]]:
    """
    Yield ``(row_number, record)`` for each data row of a CSV download.

    The first non-blank row is the header row. Row numbers are 1-based and
    count data rows only. When ``expected_headers`` is given and the file's
    header row does not match it, nothing is yielded.
    """
    reader = csv.reader(open_text_stream(body))

    headers: Optional[HeaderSet] = None
    for row in reader:
        if not _is_blank(row):
            headers = [cell.strip() for cell in row]
            break
    if headers is None:
        logger.info("CSV stream has no header row")
        return

    if expected_headers is not None:
        if not headers_match(expected_headers, headers):
            logger.warning(
                f"CSV headers {headers} do not match the expected headers {list(expected_headers)}; skipping file"
            )
            return
        headers = align_headers(expected_headers, headers)

    row_number = 0
    for row in reader:
        if _is_blank(row):
            continue
        row_number += 1
        _check_width(row, headers, row_number)
        yield row_number, build_record(headers, row)
