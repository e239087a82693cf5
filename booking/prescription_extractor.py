"""
Extraction Client — the orchestrator's single entry point to prescription reading.

    record = await extract_prescription(document_bytes, filename)

Runs the extraction graph (graph.py) and returns a PrescriptionRecord. Every
failure, whether an unsupported file, a transport error, an unparseable LLM reply
or a schema mismatch, surfaces as ExtractionError. The caller cannot tell them
apart and does not need to: its only options are retry or hand-off to an agent.
"""

import logging
from typing import Optional

from booking.graph import extraction_graph
from booking.models import PrescriptionRecord

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    """The document could not be read, parsed or validated."""


async def extract_prescription(document: bytes, filename: Optional[str] = None) -> PrescriptionRecord:
    logger.info("Extracting prescription from %s (%d bytes)", filename or "upload", len(document or b""))

    initial_state = {
        "document": document,
        "filename": filename,
        "media_type": None,
        "document_b64": None,
        "document_text": None,
        "image_b64": None,
        "image_media_type": None,
        "pages_parsed": 0,
        "raw_extraction": None,
        "record": None,
    }

    try:
        final_state = await extraction_graph.ainvoke(initial_state)
    except Exception as exc:
        logger.exception("Prescription extraction failed")
        raise ExtractionError(str(exc) or exc.__class__.__name__) from exc

    record = final_state.get("record")
    if record is None:
        raise ExtractionError("Extraction produced no record")
    return record
