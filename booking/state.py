"""
ExtractionState — the typed state object that flows through the extraction graph.

    load_document → extract → validate

Each node reads from and writes to this state. The orchestrator never sees it:
it only receives the final PrescriptionRecord (or an ExtractionError) from
prescription_extractor.extract_prescription().
"""

from typing import Optional, TypedDict

from booking.models import PrescriptionRecord


class ExtractionState(TypedDict):
    """State flowing through the extraction graph."""

    # ── Upload ──────────────────────────────────────────────────────────────
    document: bytes
    filename: Optional[str]

    # ── Loaded document ─────────────────────────────────────────────────────
    media_type: Optional[str]       # sniffed from magic bytes, e.g. "application/pdf"
    document_b64: Optional[str]     # original bytes, base64; sent to the remote service
    document_text: Optional[str]    # PDF text layer, None for images and scanned PDFs
    image_b64: Optional[str]        # what the vision model sees (image or rendered PDF page)
    image_media_type: Optional[str]
    pages_parsed: int

    # ── Extraction ──────────────────────────────────────────────────────────
    raw_extraction: Optional[dict]  # unvalidated JSON from the LLM / remote service

    # ── Output ──────────────────────────────────────────────────────────────
    record: Optional[PrescriptionRecord]
