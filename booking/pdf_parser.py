"""
PDF Parser — reads prescription PDFs with PyMuPDF.

parse_pdf() returns one dict per page:
  [{"page_no": int, "text": str, "source": "pymupdf"}, ...]

Many prescriptions are phone scans saved as PDF and have no text layer at all;
for those, render_first_page() produces a PNG the vision model can read instead.
"""

import logging

logger = logging.getLogger(__name__)

RENDER_DPI = 150


# ── Public API ───────────────────────────────────────────────────────────────

def parse_pdf(pdf_bytes: bytes) -> list[dict]:
    """Parse a PDF from raw bytes using PyMuPDF."""
    import pymupdf as fitz  # PyMuPDF 1.24+

    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    results = []

    try:
        for idx, page in enumerate(doc):
            text = page.get_text("text")
            results.append({"page_no": idx, "text": text.strip(), "source": "pymupdf"})
    finally:
        doc.close()
    logger.info("pymupdf: extracted %d page(s)", len(results))
    return results


def render_first_page(pdf_bytes: bytes) -> bytes:
    """Rasterise page 1 to PNG bytes."""
    import pymupdf as fitz

    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        if doc.page_count == 0:
            raise ValueError("PDF has no pages")
        pixmap = doc[0].get_pixmap(dpi=RENDER_DPI)
        png = pixmap.tobytes("png")
    finally:
        doc.close()

    logger.info("pymupdf: rendered page 1 to %d byte PNG", len(png))
    return png


# ── Helpers ──────────────────────────────────────────────────────────────────

def has_text(pages: list[dict]) -> bool:
    return any(p["text"] for p in pages)


def pages_to_document(pages: list[dict]) -> str:
    """
    Concatenate per-page text into a single document string, adding
    page-break markers so the LLM extractor can orient itself.
    """
    parts = [f"--- Page {p['page_no'] + 1} ---\n{p['text']}" for p in pages]
    return "\n\n".join(parts)
