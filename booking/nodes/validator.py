"""
Validator Node — normalizes raw extraction JSON into a PrescriptionRecord.

Whatever the backend returned, the record leaving this node satisfies:
  - every test has a non-empty name and a confidence in [0, 1]
  - tests_extracted are tagged "prescription", optional_tests "recommended"
  - optional tests never duplicate a prescribed test (case-insensitive)
  - validation_issues is non-empty exactly when prescription_valid is false
"""

import logging

from booking.models import PrescriptionRecord
from booking.state import ExtractionState

logger = logging.getLogger(__name__)

GENERIC_INVALID_ISSUE = "The prescription could not be verified"
COVERAGE_VALUES = {"insurance", "pay_and_book"}


def run(state: ExtractionState) -> dict:
    """Validates and normalizes the raw extraction."""
    raw = state.get("raw_extraction")
    if not raw or not isinstance(raw, dict):
        raise ValueError("Extraction returned no usable data")
    if "prescription_valid" not in raw:
        raise ValueError("Extraction result is missing 'prescription_valid'")

    record = normalize(raw)
    logger.info(
        "Validated prescription: valid=%s, issues=%s, tests=%s, optional=%s",
        record.prescription_valid,
        record.validation_issues,
        [t.test_name for t in record.tests_extracted],
        [t.test_name for t in record.optional_tests],
    )
    return {"record": record}


def normalize(raw: dict) -> PrescriptionRecord:
    valid = _bool(raw.get("prescription_valid"))
    issues = _str_list(raw.get("validation_issues"))
    flags = _str_list(raw.get("flags"))

    if valid and issues:
        # Issues on a valid prescription are advisory only.
        flags = flags + issues
        issues = []
    elif not valid and not issues:
        issues = [GENERIC_INVALID_ISSUE]

    tests = _tests(raw.get("tests_extracted"), "prescription")
    prescribed = {t["test_name"].lower() for t in tests}
    optional = [
        t for t in _tests(raw.get("optional_tests"), "recommended")
        if t["test_name"].lower() not in prescribed
    ]

    patient = raw.get("patient_details") if isinstance(raw.get("patient_details"), dict) else {}
    doctor = raw.get("doctor_details") if isinstance(raw.get("doctor_details"), dict) else {}

    return PrescriptionRecord(
        prescription_valid=valid,
        validation_issues=issues,
        patient_details={k: _text(patient.get(k)) for k in ("name", "age", "gender")},
        doctor_details={k: _text(doctor.get(k)) for k in ("name", "degree")},
        diagnosis=_text(raw.get("diagnosis")),
        tests_extracted=tests,
        optional_tests=optional,
        flags=flags,
    )


# ── Helpers ───────────────────────────────────────────────────────────────────

def _bool(val) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in ("true", "yes", "1")
    return bool(val)


def _text(val) -> str:
    return "" if val is None else str(val).strip()


def _str_list(val) -> list[str]:
    if not val or not isinstance(val, list):
        return []
    return [str(item).strip() for item in val if item and str(item).strip()]


def _confidence(val) -> float:
    try:
        return min(max(float(val), 0.0), 1.0)
    except (TypeError, ValueError):
        return 0.0


def _tests(val, source: str) -> list[dict]:
    if not val or not isinstance(val, list):
        return []

    tests = []
    for item in val:
        if isinstance(item, str):
            item = {"test_name": item}
        if not isinstance(item, dict):
            continue
        name = _text(item.get("test_name") or item.get("name"))
        if not name:
            logger.debug("Dropping unnamed test entry: %s", item)
            continue
        coverage = item.get("coverage")
        tests.append({
            "test_name": name,
            "confidence": _confidence(item.get("confidence", 1.0)),
            "source": source,
            "reason": _text(item.get("reason")) or None,
            "coverage": coverage if coverage in COVERAGE_VALUES else None,
        })
    return tests
