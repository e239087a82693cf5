"""
Conversation messages and their typed payloads.

Every message carries plain `content`; some also carry a payload that tells
the presentation layer which widget to render. The payload is a tagged union
keyed on `type`, each variant with a fixed schema:

    options             → option buttons
    status              → status indicator line
    address_picker      → saved collection addresses
    provider_picker     → partner labs with their fee schedule
    prescription_review → patient/doctor metadata, cart, optional pool, pricing
    cart                → final order summary with total due

A message with no payload is plain text.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from booking.models import Address, DoctorDetails, PatientDetails, Provider, TestItem

Role = Literal["assistant", "user", "system"]


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class OptionsPayload(_Payload):
    type: Literal["options"] = "options"
    options: list[str]


class StatusPayload(_Payload):
    type: Literal["status"] = "status"
    status: str


class AddressPickerPayload(_Payload):
    type: Literal["address_picker"] = "address_picker"
    addresses: list[Address]


class ProviderPickerPayload(_Payload):
    type: Literal["provider_picker"] = "provider_picker"
    providers: list[Provider]
    selected_provider_id: str


class PrescriptionReviewPayload(_Payload):
    type: Literal["prescription_review"] = "prescription_review"
    patient_details: PatientDetails
    doctor_details: DoctorDetails
    diagnosis: str
    cart: list[TestItem]
    optional_tests: list[TestItem]
    provider: Provider
    total_due: float
    covered_count: int


class CartPayload(_Payload):
    type: Literal["cart"] = "cart"
    items: list[TestItem]
    address: Optional[Address]
    provider: Provider
    total_due: float
    covered_count: int


Payload = Annotated[
    Union[
        OptionsPayload,
        StatusPayload,
        AddressPickerPayload,
        ProviderPickerPayload,
        PrescriptionReviewPayload,
        CartPayload,
    ],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """One immutable entry of the conversation log."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    content: str
    payload: Optional[Payload] = None

    @computed_field
    @property
    def type(self) -> str:
        return self.payload.type if self.payload is not None else "text"
