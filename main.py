"""
FastAPI Backend — Lab Test Booking Assistant.

Each booking conversation is a session backed by one FlowOrchestrator. The
endpoints map user interactions (option buttons, prescription upload, address
and provider pickers, cart edits, confirmation, payment) onto orchestrator
actions and return a snapshot of the session after each one.

Prescription extraction runs in the background after an upload; clients poll
GET /sessions/{id} until the state leaves PROCESSING.
"""

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

# Load environment variables from .env file
load_dotenv()

from booking import catalog
from booking.messages import Message
from booking.models import Address, FlowState, Provider, TestItem
from booking.nodes.loader import MAX_DOCUMENT_BYTES, sniff_media_type
from booking.orchestrator import FlowOrchestrator, InvalidTransition
from booking.prescription_extractor import extract_prescription

# ── Logging ─────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-30s | %(levelname)-7s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# session_id → orchestrator; in-memory only, lost on restart
_sessions: dict[str, FlowOrchestrator] = {}
# session_id → time.monotonic() of the last request that touched it
_last_seen: dict[str, float] = {}


# ── Lifespan ────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Lab Booking Assistant starting up")
    logger.info("LLM_PROVIDER=%s", os.getenv("LLM_PROVIDER", "claude"))
    logger.info("EXTRACTION_API_URL=%s", os.getenv("EXTRACTION_API_URL", "NOT SET"))
    logger.info("TYPING_DELAY_SCALE=%s", os.getenv("TYPING_DELAY_SCALE", "1.0"))
    yield
    for orchestrator in _sessions.values():
        await orchestrator.aclose()
    _sessions.clear()
    _last_seen.clear()
    logger.info("Lab Booking Assistant shutting down")


# ── App ─────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Lab Booking Assistant",
    version="0.1.0",
    description="Guided prescription-to-lab-booking conversation",
    lifespan=lifespan,
)

# CORS — permissive for development, tighten for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request / Response Models ───────────────────────────────────────────────
class OptionRequest(BaseModel):
    option: str = Field(..., min_length=1, description="Label of the option button the user picked")


class AddressRequest(BaseModel):
    address_id: str


class ProviderRequest(BaseModel):
    provider_id: str


class PromoteRequest(BaseModel):
    index: int = Field(..., description="Position in the optional test pool")


class RemoveRequest(BaseModel):
    index: int
    in_cart: bool = Field(True, description="True to remove from the cart, False from the optional pool")


class TextRequest(BaseModel):
    text: str


class SessionSnapshot(BaseModel):
    """Everything a client needs to render the conversation."""

    session_id: str
    state: FlowState
    is_typing: bool
    messages: list[Message]
    cart: list[TestItem]
    optional_tests: list[TestItem]
    selected_address: Optional[Address]
    selected_provider: Provider
    total_due: float
    covered_count: int


# ── Endpoints ───────────────────────────────────────────────────────────────
@app.post("/sessions", response_model=SessionSnapshot, status_code=201)
async def create_session():
    """Open a booking conversation and send the welcome menu."""
    await _expire_idle_sessions()

    session_id = uuid.uuid4().hex
    orchestrator = FlowOrchestrator(extractor=extract_prescription)
    _sessions[session_id] = orchestrator
    _last_seen[session_id] = time.monotonic()
    logger.info("Session %s created", session_id)

    await orchestrator.start()
    return _snapshot(session_id, orchestrator)


@app.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str):
    return _snapshot(session_id, _get(session_id))


@app.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str):
    orchestrator = _sessions.pop(session_id, None)
    _last_seen.pop(session_id, None)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="Session not found")
    await orchestrator.aclose()


@app.post("/sessions/{session_id}/options", response_model=SessionSnapshot)
async def select_option(session_id: str, body: OptionRequest):
    orchestrator = _get(session_id)
    await _act(orchestrator.select_option(body.option))
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/prescription", response_model=SessionSnapshot)
async def upload_prescription(session_id: str, file: UploadFile = File(...)):
    """
    Upload a prescription photo or PDF.

    The response comes back in PROCESSING with the address picker attached;
    extraction continues in the background.
    """
    orchestrator = _get(session_id)
    logger.info("Prescription upload: filename=%s, content_type=%s", file.filename, file.content_type)

    document = await file.read()
    if not document:
        raise HTTPException(status_code=422, detail="Uploaded file is empty.")
    if len(document) > MAX_DOCUMENT_BYTES:
        raise HTTPException(status_code=422, detail="Uploaded file is larger than 10 MB.")
    if sniff_media_type(document) is None:
        raise HTTPException(
            status_code=422,
            detail="Uploaded file does not appear to be an image or PDF.",
        )

    await _act(orchestrator.upload_document(document, file.filename))
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/address", response_model=SessionSnapshot)
async def select_address(session_id: str, body: AddressRequest):
    orchestrator = _get(session_id)
    await _act(orchestrator.select_address(body.address_id))
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/provider/change", response_model=SessionSnapshot)
async def request_provider_change(session_id: str):
    orchestrator = _get(session_id)
    await _act(orchestrator.request_provider_change())
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/provider", response_model=SessionSnapshot)
async def select_provider(session_id: str, body: ProviderRequest):
    orchestrator = _get(session_id)
    await _act(orchestrator.select_provider(body.provider_id))
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/cart/promote", response_model=SessionSnapshot)
async def promote_optional(session_id: str, body: PromoteRequest):
    orchestrator = _get(session_id)
    try:
        orchestrator.promote_optional(body.index)
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/cart/remove", response_model=SessionSnapshot)
async def remove_test(session_id: str, body: RemoveRequest):
    orchestrator = _get(session_id)
    try:
        orchestrator.remove_test(body.index, body.in_cart)
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/confirm", response_model=SessionSnapshot)
async def confirm_booking(session_id: str):
    orchestrator = _get(session_id)
    await _act(orchestrator.confirm_booking())
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/payment", response_model=SessionSnapshot)
async def pay(session_id: str):
    orchestrator = _get(session_id)
    await _act(orchestrator.pay())
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/report-incorrect", response_model=SessionSnapshot)
async def report_incorrect(session_id: str):
    orchestrator = _get(session_id)
    await orchestrator.report_incorrect_extraction()
    return _snapshot(session_id, orchestrator)


@app.post("/sessions/{session_id}/messages", response_model=SessionSnapshot)
async def send_text(session_id: str, body: TextRequest):
    orchestrator = _get(session_id)
    await orchestrator.send_text(body.text)
    return _snapshot(session_id, orchestrator)


@app.get("/catalog/addresses", response_model=list[Address])
async def list_addresses():
    return catalog.get_addresses()


@app.get("/catalog/providers", response_model=list[Provider])
async def list_providers():
    return catalog.get_providers()


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "lab-booking-assistant",
        "llm_provider": os.getenv("LLM_PROVIDER", "claude"),
        "active_sessions": len(_sessions),
    }


# ── Helpers ─────────────────────────────────────────────────────────────────
def _get(session_id: str) -> FlowOrchestrator:
    orchestrator = _sessions.get(session_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="Session not found")
    _last_seen[session_id] = time.monotonic()
    return orchestrator


async def _expire_idle_sessions() -> None:
    """Close sessions untouched for longer than SESSION_TTL_SECONDS (default 30 min)."""
    ttl = float(os.getenv("SESSION_TTL_SECONDS", "1800"))
    cutoff = time.monotonic() - ttl
    for session_id in [sid for sid, seen in _last_seen.items() if seen < cutoff]:
        orchestrator = _sessions.pop(session_id, None)
        _last_seen.pop(session_id, None)
        if orchestrator is not None:
            await orchestrator.aclose()
            logger.info("Session %s expired after %.0fs idle", session_id, ttl)


async def _act(action):
    """Await an orchestrator action, mapping domain errors onto HTTP codes."""
    try:
        return await action
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except catalog.UnknownCatalogEntry as exc:
        raise HTTPException(status_code=404, detail=str(exc))


def _snapshot(session_id: str, orchestrator: FlowOrchestrator) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=session_id,
        state=orchestrator.state,
        is_typing=orchestrator.is_typing,
        messages=orchestrator.log.all(),
        cart=orchestrator.cart,
        optional_tests=orchestrator.optional_tests,
        selected_address=orchestrator.selected_address,
        selected_provider=orchestrator.selected_provider,
        total_due=orchestrator.total_due(),
        covered_count=orchestrator.covered_count(),
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=False)
