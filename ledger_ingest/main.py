"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers the API routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import export, ingest
from .core.config import settings
from .core.logging_config import configure_logging

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the template tables on startup unless SKIP_DB_INIT=1."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    from .db.session import get_engine
    from .db.template_data import ensure_template_tables

    try:
        ensure_template_tables(get_engine())
        logger.info("Template tables ready")
    except Exception as e:
        logger.error(f"Failed to initialize database tables: {e}", exc_info=True)
        raise

    yield


app = FastAPI(
    title="Ledger Ingest API",
    version="1.0.0",
    description="Streaming ingestion of ledger spreadsheets and CSV files, and export of compliance results",
    lifespan=lifespan
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ingest.router)
app.include_router(export.router)


@app.get("/")
async def root():
    return {
        "message": "Ledger Ingest API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "ledger-ingest-api"
    }
