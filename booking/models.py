"""
Domain records for the lab booking flow.

FlowState is the single active step of the conversation. The remaining models
are the data the orchestrator moves between steps:

    PrescriptionRecord  — one per successful extraction, replaced on re-upload
    TestItem            — a single lab test, prescribed or recommended
    Address / Provider  — static catalog entries (see catalog.py)

TestItem, Address and Provider are frozen: a test's `source` decides how it is
priced, so it must not change once the item sits in a cart. Promotion from the
optional pool produces a re-tagged copy instead (see cart.promote).
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

TestSource = Literal["prescription", "recommended"]
Coverage = Literal["insurance", "pay_and_book"]


class FlowState(str, Enum):
    WELCOME = "WELCOME"
    AWAITING_PRESCRIPTION = "AWAITING_PRESCRIPTION"
    PROCESSING = "PROCESSING"
    VALIDATION_FEEDBACK = "VALIDATION_FEEDBACK"
    REVIEW_TESTS = "REVIEW_TESTS"
    FINAL_REVIEW = "FINAL_REVIEW"
    PAYMENT = "PAYMENT"
    CONFIRMED = "CONFIRMED"
    AGENT_FALLBACK = "AGENT_FALLBACK"


class TestItem(BaseModel):
    """A lab test in the cart or in the optional pool."""

    model_config = ConfigDict(frozen=True)

    test_name: str
    confidence: float = Field(1.0, ge=0.0, le=1.0, description="Extraction confidence")
    source: TestSource
    reason: Optional[str] = Field(None, description="Why the test was recommended")
    coverage: Optional[Coverage] = None


class PatientDetails(BaseModel):
    # Free-form text as printed on the prescription; not validated further.
    name: str = ""
    age: str = ""
    gender: str = ""


class DoctorDetails(BaseModel):
    name: str = ""
    degree: str = ""


class PrescriptionRecord(BaseModel):
    """Structured result of one extraction call."""

    prescription_valid: bool
    validation_issues: list[str] = Field(default_factory=list)
    patient_details: PatientDetails = Field(default_factory=PatientDetails)
    doctor_details: DoctorDetails = Field(default_factory=DoctorDetails)
    diagnosis: str = ""
    tests_extracted: list[TestItem] = Field(default_factory=list)
    optional_tests: list[TestItem] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)


class Address(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    details: str


class Provider(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    rating: float
    delivery_fee: float = Field(..., ge=0)
    optional_test_price: float = Field(..., ge=0)
