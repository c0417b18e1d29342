"""
Pick the workbook reading strategy from the downloaded file size.
"""
import logging

from .types import Strategy

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024
DEFAULT_THRESHOLD_BYTES = 30 * BYTES_PER_MB


def threshold_from_mb(threshold_mb: float) -> int:
    return int(threshold_mb * BYTES_PER_MB)


def choose_strategy(size_bytes: int, threshold_bytes: int = DEFAULT_THRESHOLD_BYTES) -> Strategy:
    """NORMAL below the threshold, CONSTRAINED at or above it."""
    if size_bytes >= threshold_bytes:
        logger.info(
            f"File size {size_bytes / BYTES_PER_MB:.2f} MB reaches the "
            f"{threshold_bytes / BYTES_PER_MB:.2f} MB threshold, using row-by-row processing"
        )
        return Strategy.CONSTRAINED
    return Strategy.NORMAL
