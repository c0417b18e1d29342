import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from ledger_ingest.core.config import settings

logger = logging.getLogger(__name__)

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Log where the application tried to connect when the database is unreachable."""
    logger.warning(f"Could not connect to database: {exc}")
    logger.warning("The application will start but database operations will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning(f"Unable to parse DATABASE_URL ({parse_error}); skipping detailed diagnostics.")
        return

    logger.warning(
        f"Database connection settings: dialect={url.get_backend_name()} "
        f"host={url.host or 'localhost'} port={url.port or '(default)'} "
        f"database={url.database} username={url.username}"
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        try:
            _engine = create_engine(settings.database_url)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            # Create the engine anyway so callers can proceed (may still fail later).
            _engine = create_engine(settings.database_url)
    return _engine
