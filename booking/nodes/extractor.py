"""
Extract Node — turns the loaded document into raw prescription JSON.

Two backends:
  - remote: EXTRACTION_API_URL is set → tools/extraction_api.py
  - local:  the configured LLM (llm.py) reads the PDF text or the image

The output is unvalidated; the validate node coerces it into a
PrescriptionRecord. The LLM is asked to judge validity itself because
"valid" here is an administrative check (signature, date, doctor
registration), not something the code can infer from the fields.
"""

import json
import logging
import os
import re

from langchain_core.messages import HumanMessage, SystemMessage

from booking.llm import get_llm
from booking.state import ExtractionState
from booking.tools.extraction_api import call_extraction_service

logger = logging.getLogger(__name__)

# ── Prompt ────────────────────────────────────────────────────────────────────

SYSTEM_PROMPT = """You are a medical prescription reading assistant for a diagnostic lab booking service.
You will receive a doctor's prescription, either as an image or as extracted text.
Your task is to check whether the prescription can be used to book lab tests and to extract
the lab tests it orders. Return a single JSON object.

Return ONLY a valid JSON object with EXACTLY these keys:

- "prescription_valid": true or false
- "validation_issues": array of short human-readable strings explaining why the prescription
  cannot be used. MUST be empty when prescription_valid is true. Typical issues:
  "Doctor's signature missing", "Prescription date illegible", "Prescription older than 6 months",
  "Doctor registration number missing", "Not a medical prescription".
- "patient_details": {"name": str, "age": str, "gender": str}  (copy as written, "" if absent)
- "doctor_details": {"name": str, "degree": str}  (degree = qualification such as "MBBS, MD")
- "diagnosis": string ("" if absent)
- "tests_extracted": array of lab tests ordered by the doctor, each
  {"test_name": str, "confidence": float 0-1, "source": "prescription"}
- "optional_tests": array of tests NOT ordered but commonly advised alongside the diagnosis, each
  {"test_name": str, "confidence": float 0-1, "source": "recommended", "reason": str}
  Suggest at most 3. Never repeat a test that is already in tests_extracted.
- "flags": array of strings for anything the reviewer should double-check
  (e.g. "Handwriting partly illegible", "Test name abbreviated").

Rules:
- Use standard lab test names (e.g. "Complete Blood Count (CBC)", "HbA1c", "Lipid Profile").
- Do NOT invent tests the doctor did not order in tests_extracted.
- Do NOT give medical advice.
- Return ONLY the JSON object, no surrounding text, no markdown code fences.
"""

TEXT_PROMPT_TEMPLATE = """Prescription text:

{document_text}

Read the prescription and return only the JSON object."""

IMAGE_PROMPT = "Read the attached prescription and return only the JSON object."


# ── Node ──────────────────────────────────────────────────────────────────────

async def run(state: ExtractionState) -> dict:
    """Calls the remote extraction service or the LLM and returns raw JSON."""
    if os.getenv("EXTRACTION_API_URL"):
        raw = await call_extraction_service(
            state["document_b64"],
            state["media_type"],
            state.get("filename"),
        )
        return {"raw_extraction": raw if isinstance(raw, dict) else {}}

    messages = [SystemMessage(content=SYSTEM_PROMPT), _build_human_message(state)]

    llm = get_llm()
    logger.info("Extractor: invoking LLM on %s (%s)", state.get("filename") or "upload", state.get("media_type"))
    response = await llm.ainvoke(messages)
    raw = response.content if isinstance(response.content, str) else _join_text_blocks(response.content)
    logger.debug("LLM extraction response:\n%s", raw)

    return {"raw_extraction": _parse_llm_json(raw.strip())}


# ── Helpers ───────────────────────────────────────────────────────────────────

def _build_human_message(state: ExtractionState) -> HumanMessage:
    if state.get("document_text"):
        return HumanMessage(content=TEXT_PROMPT_TEMPLATE.format(document_text=state["document_text"]))

    if not state.get("image_b64"):
        raise ValueError("Nothing to extract: document has neither text nor image content")

    data_url = f"data:{state['image_media_type']};base64,{state['image_b64']}"
    return HumanMessage(
        content=[
            {"type": "text", "text": IMAGE_PROMPT},
            {"type": "image_url", "image_url": {"url": data_url}},
        ]
    )


def _join_text_blocks(content: list) -> str:
    # Some providers return a list of content blocks instead of a plain string.
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _parse_llm_json(raw: str) -> dict:
    """
    Parse the LLM output as JSON.  Tolerant of markdown fences and leading/
    trailing whitespace that the model may add despite instructions.
    """
    cleaned = re.sub(r"```(?:json)?", "", raw, flags=re.IGNORECASE).strip()
    cleaned = cleaned.rstrip("`").strip()

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning("JSON parse failed (%s). Raw output: %s", exc, raw[:500])
        return {}

    if not isinstance(parsed, dict):
        logger.warning("LLM returned %s instead of a JSON object", type(parsed).__name__)
        return {}
    return parsed
