"""
Lightweight mock of the remote prescription extraction service.

Runs locally on port 8001. Point the extractor at it with:
    EXTRACTION_API_URL=http://localhost:8001/extract

Behaviour is keyed on the filename so tests can pick the outcome:
    *invalid*  → prescription_valid=false with two issues
    *broken*   → HTTP 500
    anything else → a valid prescription (CBC + Lipid Profile, Vitamin D optional)

This server is a development and testing tool ONLY.
"""

import base64
import binascii
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock Prescription Extraction Server", version="0.1.0-mock")


class ExtractRequest(BaseModel):
    document: str  # base64
    media_type: str
    filename: Optional[str] = None


@app.post("/extract")
def extract(body: ExtractRequest):
    try:
        base64.b64decode(body.document, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=422, detail="document is not valid base64")

    name = (body.filename or "").lower()
    if "broken" in name:
        raise HTTPException(status_code=500, detail="model crashed")

    if "invalid" in name:
        return {
            "prescription_valid": False,
            "validation_issues": ["Signature missing", "Date illegible"],
            "patient_details": {"name": "", "age": "", "gender": ""},
            "doctor_details": {"name": "", "degree": ""},
            "diagnosis": "",
            "tests_extracted": [],
            "optional_tests": [],
            "flags": [],
        }

    return {
        "prescription_valid": True,
        "validation_issues": [],
        "patient_details": {"name": "Riya Sharma", "age": "34", "gender": "Female"},
        "doctor_details": {"name": "Dr. A. Mehta", "degree": "MBBS, MD"},
        "diagnosis": "Dyslipidaemia",
        "tests_extracted": [
            {"test_name": "Complete Blood Count (CBC)", "confidence": 0.96, "source": "prescription"},
            {"test_name": "Lipid Profile", "confidence": 0.91, "source": "prescription"},
        ],
        "optional_tests": [
            {
                "test_name": "Vitamin D",
                "confidence": 0.72,
                "source": "recommended",
                "reason": "Frequently advised with routine lipid screening",
            },
        ],
        "flags": [],
    }


@app.get("/health")
def health():
    return {"status": "ok", "mode": "mock"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8001)
