import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any


def make_json_safe(value: Any) -> Any:
    """
    Convert typed record values into JSON-serialisable structures.

    Dates become ISO strings; integral Decimals become ints and the rest
    strings so no precision is lost.
    """
    if isinstance(value, dict):
        return {str(key): make_json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [make_json_safe(item) for item in value]
    if isinstance(value, Decimal):
        if value == value.to_integral():
            return int(value)
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    return str(value)


def dumps_record(record: dict) -> str:
    return json.dumps(make_json_safe(record))
