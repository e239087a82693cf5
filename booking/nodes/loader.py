"""
Loader Node — entry point of the extraction graph.

Identifies the upload from its magic bytes and prepares what the extract node
needs:
  - document_b64 for the remote service (always the original bytes)
  - document_text for text-layer PDFs
  - image_b64 for photos, and for scanned PDFs (page 1 rendered to PNG)
"""

import base64
import logging
from typing import Optional

from booking.pdf_parser import has_text, pages_to_document, parse_pdf, render_first_page
from booking.state import ExtractionState

logger = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024

_SIGNATURES = [
    (b"%PDF", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
]


def sniff_media_type(data: bytes) -> Optional[str]:
    """Return the media type for a supported upload, or None."""
    for magic, media_type in _SIGNATURES:
        if data.startswith(magic):
            return media_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def run(state: ExtractionState) -> dict:
    """Validates the upload and loads its contents for extraction."""
    document = state.get("document") or b""
    if not document:
        raise ValueError("Uploaded document is empty")
    if len(document) > MAX_DOCUMENT_BYTES:
        raise ValueError(f"Uploaded document is {len(document)} bytes; limit is {MAX_DOCUMENT_BYTES}")

    media_type = sniff_media_type(document)
    if media_type is None:
        raise ValueError("Unsupported document type; expected a JPEG, PNG, WEBP, GIF or PDF")

    update = {
        "media_type": media_type,
        "document_b64": base64.b64encode(document).decode("ascii"),
        "document_text": None,
        "image_b64": None,
        "image_media_type": None,
        "pages_parsed": 0,
    }

    if media_type != "application/pdf":
        update["image_b64"] = update["document_b64"]
        update["image_media_type"] = media_type
        logger.info("Loaded %s image (%d bytes)", media_type, len(document))
        return update

    pages = parse_pdf(document)
    if not pages:
        raise ValueError("PDF contains no parseable pages")
    update["pages_parsed"] = len(pages)

    if has_text(pages):
        update["document_text"] = pages_to_document(pages)
        logger.info("Loaded PDF text layer: %d page(s), %d chars", len(pages), len(update["document_text"]))
    else:
        # Scanned prescription: the vision model reads the first page.
        update["image_b64"] = base64.b64encode(render_first_page(document)).decode("ascii")
        update["image_media_type"] = "image/png"
        logger.info("PDF has no text layer; falling back to page 1 image")

    return update
