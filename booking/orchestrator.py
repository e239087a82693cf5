"""
Flow Orchestrator — the state machine behind a lab booking conversation.

    WELCOME → AWAITING_PRESCRIPTION → PROCESSING → VALIDATION_FEEDBACK
                                                 → REVIEW_TESTS → FINAL_REVIEW
                                                   → PAYMENT → CONFIRMED
    AGENT_FALLBACK is reachable from almost anywhere.

One orchestrator owns one session: the current FlowState, the episode join
(pending prescription record + chosen address), the cart and the selected
provider. Every mutation happens on the event loop; the only concurrency is
the extraction task started on upload and the typing pauses between messages.

PROCESSING is left through the join: _evaluate_join() runs after every write
to either input and fires the transition once per episode, whichever input
arrives last. Extraction results carry the token of the episode that started
them, and a result for an abandoned episode is dropped.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional

from booking import cart as cart_model
from booking import catalog
from booking.conversation import ConversationLog
from booking.join import EpisodeJoin
from booking.messages import (
    AddressPickerPayload,
    CartPayload,
    OptionsPayload,
    PrescriptionReviewPayload,
    ProviderPickerPayload,
    StatusPayload,
)
from booking.models import Address, FlowState, PrescriptionRecord, Provider, TestItem
from booking.prescription_extractor import ExtractionError, extract_prescription

logger = logging.getLogger(__name__)

Extractor = Callable[[bytes, Optional[str]], Awaitable[PrescriptionRecord]]

# ── Option labels ───────────────────────────────────────────────────────────
BOOK_LAB_TESTS = "Book Lab Tests"
WELCOME_OPTIONS = [BOOK_LAB_TESTS, "Customer Support", "Booking / Order Queries"]
UPLOAD_NEW = "Upload a new prescription"
TRY_AGAIN = "Try Again"
CONNECT_AGENT = "Connect to Agent"
CONNECT_SUPPORT = "Connect to a customer support agent"
ASSIGN_AGENT = "Assign to agent"
GO_BACK = "Go Back"

RETRY_OPTIONS = {UPLOAD_NEW, TRY_AGAIN}
AGENT_OPTIONS = {CONNECT_AGENT, CONNECT_SUPPORT}

UPLOAD_STATES = {FlowState.AWAITING_PRESCRIPTION, FlowState.VALIDATION_FEEDBACK}
CLOSED_STATES = {FlowState.PAYMENT, FlowState.CONFIRMED}


class InvalidTransition(ValueError):
    """The requested action is not available in the current flow state."""


class FlowOrchestrator:
    def __init__(
        self,
        extractor: Extractor = extract_prescription,
        addresses: Optional[list[Address]] = None,
        providers: Optional[list[Provider]] = None,
        typing_delay: Optional[float] = None,
    ) -> None:
        self.log = ConversationLog()
        self.state = FlowState.WELCOME
        self.record: Optional[PrescriptionRecord] = None
        self.cart: list[TestItem] = []
        self.is_typing = False

        self._extractor = extractor
        self._addresses = list(addresses) if addresses is not None else catalog.get_addresses()
        if providers is None:
            self._providers = catalog.get_providers()
            self.selected_provider = catalog.default_provider()
        else:
            if not providers:
                raise ValueError("At least one provider is required")
            self._providers = list(providers)
            self.selected_provider = self._providers[0]

        if typing_delay is None:
            typing_delay = float(os.getenv("TYPING_DELAY_SCALE", "1.0"))
        self._typing_delay = typing_delay

        self._join = EpisodeJoin()
        self._tasks: set[asyncio.Task] = set()
        self._started = False

    # ── Derived views ───────────────────────────────────────────────────────
    @property
    def selected_address(self) -> Optional[Address]:
        return self._join.address

    @property
    def optional_tests(self) -> list[TestItem]:
        return list(self.record.optional_tests) if self.record else []

    @property
    def addresses(self) -> list[Address]:
        return list(self._addresses)

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers)

    def total_due(self) -> float:
        return cart_model.price(self.cart, self.selected_provider)

    def covered_count(self) -> int:
        return cart_model.covered_count(self.cart)

    # ── Lifecycle ───────────────────────────────────────────────────────────
    async def start(self) -> None:
        """Send the welcome menu. Safe to call more than once."""
        if self._started:
            return
        self._started = True
        await self._pause(1.2)
        self._send_welcome()

    async def drain(self) -> None:
        """Wait for any in-flight extraction to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── User actions ────────────────────────────────────────────────────────
    async def select_option(self, option: str) -> None:
        if option in RETRY_OPTIONS:
            self._require_not(CLOSED_STATES, option)
            self.log.append("user", option)
            await self._reopen_upload()
        elif option in AGENT_OPTIONS or option == ASSIGN_AGENT:
            self.log.append("user", option)
            await self._agent_fallback(assign=option == ASSIGN_AGENT)
        elif option == GO_BACK:
            self._require({FlowState.VALIDATION_FEEDBACK}, option)
            self.log.append("user", option)
            self.state = FlowState.WELCOME
            self._send_welcome()
        elif option in WELCOME_OPTIONS:
            self._require({FlowState.WELCOME}, option)
            self.log.append("user", option)
            await self._handle_menu_choice(option)
        else:
            raise InvalidTransition(f"Unknown option: {option!r}")

    async def upload_document(self, document: bytes, filename: Optional[str] = None) -> int:
        """
        Start a new episode for an uploaded prescription and return its token.

        The extraction runs as a background task; the address picker is sent
        straight away so the user can answer while the document is read.
        """
        self._require(UPLOAD_STATES, "upload")
        self.log.append("user", f"Uploaded: {filename or 'prescription'}")

        self.state = FlowState.PROCESSING
        self.record = None
        token = self._join.begin()

        await self._pause(0.5)
        self.log.append(
            "assistant",
            "Your prescription has been submitted and is now under review by our AI for processing. "
            "Please wait a moment...",
        )
        await self._pause(0.5)
        self.log.append(
            "assistant",
            "While I review your prescription, please select the sample collection address:",
            AddressPickerPayload(addresses=self._addresses),
        )

        task = asyncio.create_task(self._run_extraction(token, document, filename))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return token

    async def select_address(self, address_id: str) -> Address:
        address = next((a for a in self._addresses if a.id == str(address_id)), None)
        if address is None:
            raise catalog.UnknownCatalogEntry(f"Unknown address: {address_id}")

        self._join.offer_address(address)
        self.log.append("user", f"Collect from: {address.label}")

        if self.state is FlowState.PROCESSING and self._join.record is None:
            await self._pause(1.0)
            # The record may have landed while we paused.
            if self.state is FlowState.PROCESSING and self._join.record is None:
                self.log.append(
                    "assistant",
                    "Got your address. Still reviewing your prescription... almost there.",
                    StatusPayload(status="Finalizing extraction..."),
                )

        await self._evaluate_join()
        return address

    async def request_provider_change(self) -> None:
        self._require_not(CLOSED_STATES, "change provider")
        self.log.append(
            "assistant",
            "Choose your preferred lab partner:",
            ProviderPickerPayload(providers=self._providers, selected_provider_id=self.selected_provider.id),
        )

    async def select_provider(self, provider_id: str) -> Provider:
        """
        Switch the lab partner. Allowed while extraction is still running; the
        review is only re-rendered when there is a review to show.
        """
        self._require_not(CLOSED_STATES, "select provider")
        provider = next((p for p in self._providers if p.id == str(provider_id)), None)
        if provider is None:
            raise catalog.UnknownCatalogEntry(f"Unknown provider: {provider_id}")

        self.selected_provider = provider
        self.log.append("user", f"Switched to: {provider.name}")
        logger.info("Provider switched to %s, total due now %.2f", provider.id, self.total_due())

        await self._pause(0.8)
        # A retry or re-upload may have cleared the record while we paused.
        if self.state is FlowState.REVIEW_TESTS and self.record is not None:
            self.log.append(
                "assistant",
                f"I've updated your booking with {provider.name}. Here is the updated test summary with their pricing:",
                self._review_payload(),
            )
        elif self.state not in CLOSED_STATES:
            self.log.append("assistant", f"Noted. Your tests will be booked with {provider.name}.")
        return provider

    def promote_optional(self, index: int) -> Optional[TestItem]:
        """Move an optional test into the cart. Out-of-range indexes are a no-op."""
        self._require({FlowState.REVIEW_TESTS}, "add test")
        item, remaining = cart_model.promote(self.record.optional_tests, index)
        if item is None:
            return None
        self.cart = self.cart + [item]
        self.record = self.record.model_copy(update={"optional_tests": remaining})
        return item

    def remove_test(self, index: int, in_cart: bool) -> None:
        self._require({FlowState.REVIEW_TESTS}, "remove test")
        if in_cart:
            self.cart = cart_model.remove(self.cart, index)
        else:
            remaining = cart_model.remove(self.record.optional_tests, index)
            self.record = self.record.model_copy(update={"optional_tests": remaining})

    async def confirm_booking(self) -> None:
        self._require({FlowState.REVIEW_TESTS}, "confirm booking")
        self.state = FlowState.FINAL_REVIEW
        await self._pause(1.0)
        if self.state is not FlowState.FINAL_REVIEW:
            logger.info("Flow moved to %s before the cart summary; dropping it", self.state.value)
            return
        self.log.append(
            "assistant",
            "Here's your final test cart. Please review and proceed to confirm your booking.",
            CartPayload(
                items=list(self.cart),
                address=self.selected_address,
                provider=self.selected_provider,
                total_due=self.total_due(),
                covered_count=self.covered_count(),
            ),
        )

    async def pay(self) -> None:
        self._require({FlowState.FINAL_REVIEW}, "pay")
        self.state = FlowState.PAYMENT
        logger.info("Settling payment of %.2f with %s", self.total_due(), self.selected_provider.id)
        await self._pause(2.0)
        if self.state is not FlowState.PAYMENT:
            logger.info("Flow moved to %s during settlement; booking not confirmed", self.state.value)
            return
        self.log.append(
            "assistant",
            "🎉 Your lab test booking is confirmed!\nYou'll receive appointment details shortly.",
        )
        self.state = FlowState.CONFIRMED

    async def report_incorrect_extraction(self) -> None:
        self.log.append("user", "I think the extraction is incorrect")
        await self._agent_fallback()

    async def send_text(self, text: str) -> None:
        """Free text is logged but never moves the flow."""
        text = text.strip()
        if not text:
            return
        self.log.append("user", text)
        await self._pause(1.0)
        self.log.append(
            "assistant",
            "I'm focusing on your booking flow right now. Please use the options provided above to move forward.",
        )

    # ── Join ────────────────────────────────────────────────────────────────
    async def _run_extraction(self, token: int, document: bytes, filename: Optional[str]) -> None:
        try:
            record = await self._extractor(document, filename)
        except ExtractionError as exc:
            logger.warning("Extraction failed for episode %d: %s", token, exc)
            self._extraction_failed(token)
            return
        except Exception:
            logger.exception("Unexpected extraction error for episode %d", token)
            self._extraction_failed(token)
            return

        if not self._join.offer_record(token, record):
            logger.info("Discarding stale extraction result for episode %d", token)
            return
        await self._evaluate_join()

    def _extraction_failed(self, token: int) -> None:
        if not self._join.is_current(token) or self.state is not FlowState.PROCESSING:
            logger.info("Ignoring extraction failure for abandoned episode %d", token)
            return
        self.log.append(
            "assistant",
            "I had trouble reading the prescription. Would you like to try again or talk to an agent?",
            OptionsPayload(options=[TRY_AGAIN, CONNECT_AGENT]),
        )
        self.state = FlowState.AGENT_FALLBACK

    async def _evaluate_join(self) -> None:
        if self.state is not FlowState.PROCESSING:
            return
        joined = self._join.take()
        if joined is None:
            return
        record, _address = joined
        await self._complete_processing(self._join.token, record)

    async def _complete_processing(self, token: int, record: PrescriptionRecord) -> None:
        self.record = record

        if not record.prescription_valid:
            issues = "\n".join(f"• {issue}" for issue in record.validation_issues)
            self.log.append(
                "assistant",
                f"❌ This prescription is invalid and cannot be processed\n\nReason(s):\n{issues}",
                OptionsPayload(options=[UPLOAD_NEW, CONNECT_SUPPORT]),
            )
            self.state = FlowState.VALIDATION_FEEDBACK
            logger.info("Episode %d: invalid prescription (%d issue(s))", token, len(record.validation_issues))
            return

        self.log.append(
            "assistant",
            "✅ Prescription verified successfully\nI've now extracted the lab tests mentioned by your doctor.",
        )
        await self._pause(1.5)
        if not self._join.is_current(token) or self.state is not FlowState.PROCESSING:
            logger.info("Episode %d moved on before review; dropping review", token)
            return

        self.cart = list(record.tests_extracted)
        self.log.append(
            "assistant",
            "I found the following member details and tests from your prescription:",
            self._review_payload(),
        )
        self.state = FlowState.REVIEW_TESTS
        logger.info(
            "Episode %d: %d prescribed test(s), %d optional",
            token,
            len(self.cart),
            len(record.optional_tests),
        )

    # ── Helpers ─────────────────────────────────────────────────────────────
    async def _handle_menu_choice(self, option: str) -> None:
        if option == BOOK_LAB_TESTS:
            self.state = FlowState.AWAITING_PRESCRIPTION
            await self._pause(0.8)
            self.log.append(
                "assistant",
                "Please upload a clear photo or PDF of your doctor's prescription so I can read and process it for you.",
            )
            return

        await self._pause(0.5)
        self.log.append(
            "assistant",
            f"You selected \"{option}\". I'll connect you with an agent to assist further.",
            StatusPayload(status="Connecting to agent..."),
        )
        self.state = FlowState.AGENT_FALLBACK

    async def _reopen_upload(self) -> None:
        self.state = FlowState.AWAITING_PRESCRIPTION
        await self._pause(0.5)
        self.log.append("assistant", "Sure. Please upload a clear photo or PDF of the prescription.")

    async def _agent_fallback(self, assign: bool = False) -> None:
        self.state = FlowState.AGENT_FALLBACK
        await self._pause(0.5)
        if assign:
            self.log.append(
                "assistant",
                "Your request has been assigned to a lab booking agent. They will reach out to you shortly.",
                StatusPayload(status="Assigned to agent"),
            )
            return
        self.log.append(
            "assistant",
            "I can connect you to a lab booking agent who will manually review and book your tests.",
            OptionsPayload(options=[ASSIGN_AGENT]),
        )

    def _send_welcome(self) -> None:
        self.log.append(
            "assistant",
            "Welcome to HealthSaathi 👋\nHow can I help you today?",
            OptionsPayload(options=WELCOME_OPTIONS),
        )

    def _review_payload(self) -> PrescriptionReviewPayload:
        record = self.record
        return PrescriptionReviewPayload(
            patient_details=record.patient_details,
            doctor_details=record.doctor_details,
            diagnosis=record.diagnosis,
            cart=list(self.cart),
            optional_tests=list(record.optional_tests),
            provider=self.selected_provider,
            total_due=self.total_due(),
            covered_count=self.covered_count(),
        )

    def _require(self, allowed: set[FlowState], action: str) -> None:
        if self.state not in allowed:
            raise InvalidTransition(f"Cannot {action} while in {self.state.value}")

    def _require_not(self, blocked: set[FlowState], action: str) -> None:
        if self.state in blocked:
            raise InvalidTransition(f"Cannot {action} while in {self.state.value}")

    async def _pause(self, seconds: float) -> None:
        """Typing indicator between messages; skipped entirely when the scale is 0."""
        if self._typing_delay <= 0:
            return
        self.is_typing = True
        try:
            await asyncio.sleep(seconds * self._typing_delay)
        finally:
            self.is_typing = False
