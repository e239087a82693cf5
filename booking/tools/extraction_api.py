"""
HTTP client for a remote prescription extraction service.

When EXTRACTION_API_URL is set, the extract node sends the uploaded document
here instead of prompting the local LLM. This is the only file that knows the
service's wire format; if the service changes its schema, update ONLY this
file and tests/mock_server.py.

Request:
    POST {EXTRACTION_API_URL}
    {
        "document":   "<base64 of the original upload>",
        "media_type": "image/jpeg" | "image/png" | "application/pdf" | ...,
        "filename":   "rx.jpg" | null
    }

Response (PrescriptionRecord JSON):
    {
        "prescription_valid": true,
        "validation_issues":  [],
        "patient_details":    {"name": str, "age": str, "gender": str},
        "doctor_details":     {"name": str, "degree": str},
        "diagnosis":          str,
        "tests_extracted":    [{"test_name": str, "confidence": float, "source": "prescription", ...}],
        "optional_tests":     [{"test_name": str, "confidence": float, "source": "recommended", "reason": str}],
        "flags":              [str]
    }
"""

import asyncio
import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

TIMEOUT_SECONDS = 30.0
RETRY_DELAY_503 = 2.0


async def call_extraction_service(document_b64: str, media_type: str, filename: Optional[str] = None) -> dict:
    """
    Error handling:
        - 503 → retries once after 2 s (service warming up)
        - any other non-200 → raises httpx.HTTPStatusError
        - transport errors → raise httpx.RequestError
    The caller turns every failure into an ExtractionError.
    """
    url = os.getenv("EXTRACTION_API_URL")
    if not url:
        raise ValueError("EXTRACTION_API_URL environment variable not set")

    payload = {"document": document_b64, "media_type": media_type, "filename": filename}

    async with httpx.AsyncClient(timeout=TIMEOUT_SECONDS) as client:
        try:
            response = await client.post(url, json=payload)
        except httpx.RequestError as exc:
            logger.error("Extraction API request failed for %s: %s", filename, exc)
            raise

        if response.status_code == 503:
            logger.warning("Extraction API returned 503 — retrying in %.1fs", RETRY_DELAY_503)
            await asyncio.sleep(RETRY_DELAY_503)
            response = await client.post(url, json=payload)

        if response.status_code != 200:
            logger.error(
                "Extraction API error %d for %s: %s",
                response.status_code,
                filename,
                response.text,
            )
            response.raise_for_status()

        data = response.json()
        logger.info(
            "Extraction API: valid=%s, %d prescribed test(s), %d optional",
            data.get("prescription_valid"),
            len(data.get("tests_extracted") or []),
            len(data.get("optional_tests") or []),
        )
        return data
