"""
Apply a column mapping and template field types to raw records.

Coercion favours throughput over strict validation: blank or garbage numbers
become 0 instead of failing the import. Only values that cannot be defaulted
(an unparseable date) raise ``TransformError``.
"""
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ledger_ingest.utils.date import parse_flexible_date

from .errors import TransformError
from .types import FieldMapping, FieldType, RawRecord, TemplateField, TypedRecord, TypedValue

logger = logging.getLogger(__name__)

# Leading numeric prefix, the way spreadsheet exports are read by hand: "12.5 USD" -> 12.5
_NUMERIC_PREFIX = re.compile(r'^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')
_NUMERIC_PLACEHOLDERS = ("", "-")


def build_field_types(fields: Optional[Iterable[TemplateField]]) -> Dict[str, FieldType]:
    return {field.name: FieldType(field.type) for field in fields or ()}


def coerce_number(value: Any) -> Union[int, float]:
    """
    Coerce a cell to a number, defaulting to 0.

    Thousands separators are stripped; integral results come back as ``int``.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        number = value
    else:
        text = str(value).strip()
        if text in _NUMERIC_PLACEHOLDERS:
            return 0
        match = _NUMERIC_PREFIX.match(text.replace(",", ""))
        if not match:
            return 0
        number = float(match.group(0))

    if number != number or number in (float("inf"), float("-inf")):
        return 0
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def coerce_date(value: Any, *, field: str, row_number: Optional[int] = None) -> TypedValue:
    """Blank dates stay blank; anything else must parse."""
    if value is None or (isinstance(value, str) and value.strip() in ("", "-")):
        return ""
    parsed = parse_flexible_date(value, log_context=field)
    if parsed is None:
        location = f" in row {row_number}" if row_number is not None else ""
        raise TransformError(
            f"Invalid date '{value}' for field '{field}'{location}",
            row_number=row_number,
            field=field,
        )
    return parsed


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    text = str(value)
    return "" if text == "-" else text


def coerce_value(value: Any, field_type: FieldType, *, field: str, row_number: Optional[int] = None) -> TypedValue:
    if field_type == FieldType.NUMBER:
        return coerce_number(value)
    if field_type == FieldType.DATE:
        return coerce_date(value, field=field, row_number=row_number)
    return coerce_text(value)


def map_record(
    raw: RawRecord,
    mapping: FieldMapping,
    field_types: Mapping[str, FieldType],
    row_number: Optional[int] = None,
) -> TypedRecord:
    """
    Produce a typed record with exactly one key per mapped template field.

    Headers absent from the row are treated as blank cells.
    """
    if not isinstance(raw, Mapping):
        raise TransformError(
            f"Row {row_number} is not a header/value record: {type(raw).__name__}",
            row_number=row_number,
        )

    typed: TypedRecord = {}
    for file_header, field in mapping.items():
        field_type = field_types.get(field, FieldType.TEXT)
        value = raw.get(file_header)
        if value is None:
            value = raw.get(file_header.strip())
        typed[field] = coerce_value(value, field_type, field=field, row_number=row_number)
    return typed


def map_batch(
    batch: List[RawRecord],
    mapping: FieldMapping,
    field_types: Mapping[str, FieldType],
    first_row_number: int = 1,
) -> List[TypedRecord]:
    return [
        map_record(raw, mapping, field_types, row_number=first_row_number + offset)
        for offset, raw in enumerate(batch)
    ]
