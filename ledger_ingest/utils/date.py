"""
Date parsing utilities for flexible date format handling.

Ledger exports arrive with ISO dates, US-style and day-first dates mixed
across files; this module resolves them to plain calendar dates.
"""

import pandas as pd
from typing import Any, Optional
import re
from datetime import date, datetime
import logging

from ledger_ingest.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    # Emit a single summary when suppression starts, then periodically.
    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None, log_failures: bool = True) -> Optional[date]:
    """
    Parse a date value from various formats and return a calendar date.

    Supports formats:
    - ISO 8601: "2024-09-04T23:09:18Z"
    - YYYY-MM-DD: "2025-10-20"
    - MM/DD/YYYY and DD/MM/YYYY, disambiguated by the field values and
      ``settings.date_default_dayfirst``
    - And many others via pandas inference

    Returns:
        The parsed date, or None if parsing fails
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    value = str(value).strip()
    if value == "":
        return None

    parse_attempts = []

    numeric_match = re.match(r'^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}', value)
    if numeric_match:
        parts = re.split(r'[/-]', numeric_match.group(0))
        first = int(parts[0])
        second = int(parts[1])

        # Decide whether day-first is more plausible
        if first > 12 and second <= 31:
            dayfirst_preferred = True
        elif second > 12 and first <= 12:
            dayfirst_preferred = False
        else:
            dayfirst_preferred = settings.date_default_dayfirst

        parse_attempts.append(
            lambda v, df=dayfirst_preferred: pd.to_datetime(v, dayfirst=df, errors='raise')
        )
        # Always try the alternate interpretation as a fallback
        parse_attempts.append(
            lambda v, df=not dayfirst_preferred: pd.to_datetime(v, dayfirst=df, errors='raise')
        )

    # Fallback: let pandas infer the format (default behavior)
    parse_attempts.append(lambda v: pd.to_datetime(v, errors='raise'))

    last_error = None
    for attempt in parse_attempts:
        try:
            parsed = attempt(value)
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if pd.isna(parsed):
            continue
        return parsed.date()

    if log_failures:
        _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
    return None
