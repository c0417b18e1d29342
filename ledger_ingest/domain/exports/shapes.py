"""
Classification and tabular rendering of result payloads.

Summary and results payloads arrive as arbitrary JSON. Each payload is
classified once into a ``PayloadShape`` and rendered by the matching branch
of ``render_payload``.
"""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence


class PayloadShape(str, Enum):
    EMPTY = "empty"
    ARRAY_OF_RECORDS = "array_of_records"
    ARRAY_OF_SCALARS = "array_of_scalars"
    RECORD = "record"
    SCALAR = "scalar"


@dataclass
class RenderedSheet:
    rows: List[List[Any]]
    column_widths: Dict[int, float] = field(default_factory=dict)
    bold_header: bool = False


def classify_payload(payload: Any) -> PayloadShape:
    if payload is None or payload == "":
        return PayloadShape.EMPTY
    if isinstance(payload, (list, tuple)):
        if payload and isinstance(payload[0], Mapping):
            return PayloadShape.ARRAY_OF_RECORDS
        return PayloadShape.ARRAY_OF_SCALARS
    if isinstance(payload, Mapping):
        return PayloadShape.RECORD
    return PayloadShape.SCALAR


def cell_value(value: Any) -> Any:
    """Nested structures are written as JSON text; scalars are written as-is."""
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str)
    return value


def _display_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def _render_records(items: Sequence[Any]) -> RenderedSheet:
    # Columns come from the first record; later records are read by those keys
    headers = list(items[0].keys())
    rows: List[List[Any]] = [headers]
    for item in items:
        source = item if isinstance(item, Mapping) else {}
        rows.append([cell_value(source.get(header)) for header in headers])
    widths = {index: 20 for index in range(1, len(headers) + 1)}
    return RenderedSheet(rows=rows, column_widths=widths, bold_header=True)


def _render_scalars(items: Sequence[Any]) -> RenderedSheet:
    rows: List[List[Any]] = [["Index", "Value"]]
    rows.extend([index, _display_text(value)] for index, value in enumerate(items))
    return RenderedSheet(rows=rows, column_widths={1: 15, 2: 70})


def _render_record(record: Mapping) -> RenderedSheet:
    rows: List[List[Any]] = [["Property", "Value"]]
    rows.extend([str(key), cell_value(value)] for key, value in record.items())
    return RenderedSheet(rows=rows, column_widths={1: 30, 2: 70}, bold_header=True)


def render_payload(payload: Any, label: str) -> RenderedSheet:
    """
    Render a payload as sheet rows.

    ``label`` names the payload ("Summary", "Results") in the empty and
    scalar placeholders.
    """
    shape = classify_payload(payload)
    if shape == PayloadShape.EMPTY:
        return RenderedSheet(rows=[[f"No {label.lower()} data available"]])
    if shape == PayloadShape.ARRAY_OF_RECORDS:
        return _render_records(payload)
    if shape == PayloadShape.ARRAY_OF_SCALARS:
        return _render_scalars(payload)
    if shape == PayloadShape.RECORD:
        return _render_record(payload)
    if shape == PayloadShape.SCALAR:
        return RenderedSheet(rows=[[label], [_display_text(payload)]])
    raise ValueError(f"Unhandled payload shape: {shape}")
