"""
Per-cell value normalization shared by the CSV and workbook readers.
"""
from collections import Counter
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

PLACEHOLDER_VALUES = ("-", "0")


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    # datetime is a date subclass; both become a plain calendar date
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    # Rich text objects render as their plain text
    return str(value)


def normalize_cell_value(value: Any) -> str:
    """
    Normalize a raw cell value to the string the mapper consumes.

    Workbooks are opened with cached formula results, so a formula cell
    arrives here already resolved to its value.
    """
    text = _stringify(value).strip()
    if text in PLACEHOLDER_VALUES:
        return "0"
    return text


def header_text(value: Any) -> str:
    return _stringify(value).strip()


def trim_trailing_blanks(values: Sequence[str]) -> List[str]:
    """Drop empty cells after the last populated one (formatted-but-empty columns)."""
    end = len(values)
    while end and not values[end - 1]:
        end -= 1
    return list(values[:end])


def normalize_header(header: str) -> str:
    return " ".join(header.split()).lower()


def headers_match(reference: Iterable[str], candidate: Iterable[str]) -> bool:
    """Case/whitespace-insensitive, order-insensitive comparison of two header sets."""
    return Counter(normalize_header(h) for h in reference) == Counter(normalize_header(h) for h in candidate)


def align_headers(reference: Sequence[str], candidate: Sequence[str]) -> List[str]:
    """
    Rename each candidate column to the reference header it matches.

    The candidate must already satisfy ``headers_match``. Duplicate headers
    are paired up positionally.
    """
    pending: Dict[str, List[str]] = {}
    for header in reference:
        pending.setdefault(normalize_header(header), []).append(header)
    return [pending[normalize_header(header)].pop(0) for header in candidate]


def build_record(headers: Sequence[str], values: Sequence[Any], normalize=normalize_cell_value) -> Dict[str, str]:
    """
    Zip one row of cell values onto headers, padding short rows with blanks.

    When a header repeats, the first column carrying it wins.
    """
    record: Dict[str, str] = {}
    for index, header in enumerate(headers):
        if header in record:
            continue
        raw: Optional[Any] = values[index] if index < len(values) else None
        record[header] = normalize(raw)
    return record
