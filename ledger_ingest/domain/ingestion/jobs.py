"""
Background processing of an uploaded file into the template tables.
"""
import logging
from typing import Optional, Sequence

from sqlalchemy.engine import Engine

from ledger_ingest.db.template_data import TemplateDataSink
from ledger_ingest.integrations.storage import StorageError

from .errors import IngestionError
from .transformer import RowTransformer
from .types import BlobReference, FieldMapping, ProcessingOutcome, TemplateField

logger = logging.getLogger(__name__)


async def process_template_file(
    transformer: RowTransformer,
    engine: Engine,
    file_id: str,
    blob: BlobReference,
    *,
    mapping: FieldMapping,
    fields: Sequence[TemplateField] = (),
    expected_headers: Optional[Sequence[str]] = None,
) -> Optional[ProcessingOutcome]:
    """
    Stream a file into ``template_rows`` and record the outcome on its status row.

    Failures are recorded as ``error`` with the message and not re-raised;
    this runs after the HTTP response has been sent.
    """
    sink = TemplateDataSink(engine, file_id)
    try:
        outcome = await transformer.process_into(
            blob,
            sink,
            mapping=mapping,
            fields=fields,
            expected_headers=expected_headers,
        )
    except (IngestionError, StorageError) as exc:
        logger.error(f"Processing failed for template file {file_id} ({blob}): {exc}")
        await sink.mark_failed(str(exc))
        return None

    logger.info(
        f"Template file {file_id} finished with {outcome.total_rows} rows "
        f"using the {outcome.strategy.value} strategy"
    )
    return outcome
