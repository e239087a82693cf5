"""
Unit tests — FlowOrchestrator state machine, join and stale-result handling.

The extractor is replaced with the mocks in tests/mocks/extraction.py and the
typing delay is 0, so each scenario runs synchronously apart from the points
where the test releases an extraction result.
"""

import asyncio

import pytest

from booking.catalog import default_provider
from booking.join import EpisodeJoin
from booking.models import Address, FlowState
from booking.orchestrator import (
    ASSIGN_AGENT,
    BOOK_LAB_TESTS,
    CONNECT_AGENT,
    CONNECT_SUPPORT,
    GO_BACK,
    TRY_AGAIN,
    UPLOAD_NEW,
    FlowOrchestrator,
    InvalidTransition,
)
from tests.mocks.extraction import (
    FAKE_JPEG,
    ControlledExtractor,
    failing_extractor,
    invalid_record,
    static_extractor,
    valid_record,
)


def make_orchestrator(extractor) -> FlowOrchestrator:
    return FlowOrchestrator(extractor=extractor, typing_delay=0.0)


async def to_processing(orch: FlowOrchestrator) -> None:
    await orch.start()
    await orch.select_option(BOOK_LAB_TESTS)
    await orch.upload_document(FAKE_JPEG, "rx.jpg")
    await settle()


async def settle() -> None:
    # Let extraction tasks start, or run their continuations once resolved.
    for _ in range(5):
        await asyncio.sleep(0)


def messages_of_type(orch: FlowOrchestrator, kind: str):
    return [m for m in orch.log.all() if m.type == kind]


# ── Welcome menu ────────────────────────────────────────────────────────────


class TestWelcome:
    def test_start_sends_menu_once(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await orch.start()
            await orch.start()
            return orch

        orch = asyncio.run(scenario())
        assert len(orch.log) == 1
        assert orch.log.all()[0].payload.options[0] == BOOK_LAB_TESTS
        assert orch.state is FlowState.WELCOME

    def test_book_lab_tests_awaits_prescription(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await orch.start()
            await orch.select_option(BOOK_LAB_TESTS)
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AWAITING_PRESCRIPTION
        assert "upload" in orch.log.all()[-1].content.lower()

    def test_other_menu_option_falls_back_to_agent(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await orch.start()
            await orch.select_option("Customer Support")
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AGENT_FALLBACK
        last = orch.log.all()[-1]
        assert last.type == "status"
        assert last.payload.status == "Connecting to agent..."

    def test_unknown_option_rejected(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await orch.start()
            with pytest.raises(InvalidTransition):
                await orch.select_option("Something else")
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.WELCOME
        assert len(orch.log) == 1


# ── Upload and join ─────────────────────────────────────────────────────────


class TestJoin:
    def test_upload_enters_processing_with_address_picker(self):
        async def scenario():
            orch = make_orchestrator(ControlledExtractor())
            await to_processing(orch)
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.PROCESSING
        assert orch.record is None
        pickers = messages_of_type(orch, "address_picker")
        assert len(pickers) == 1
        assert [a.id for a in pickers[0].payload.addresses] == [a.id for a in orch.addresses]

    def test_record_alone_does_not_leave_processing(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_processing(orch)
            await orch.drain()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.PROCESSING
        assert orch.cart == []

    def test_address_alone_does_not_leave_processing(self):
        async def scenario():
            extractor = ControlledExtractor()
            orch = make_orchestrator(extractor)
            await to_processing(orch)
            await orch.select_address("1")
            state = orch.state
            extractor.resolve(0, valid_record())
            await orch.drain()
            return orch, state

        orch, state_before_record = asyncio.run(scenario())
        assert state_before_record is FlowState.PROCESSING
        assert orch.state is FlowState.REVIEW_TESTS

    def test_status_message_when_address_arrives_first(self):
        async def scenario():
            extractor = ControlledExtractor()
            orch = make_orchestrator(extractor)
            await to_processing(orch)
            await orch.select_address("2")
            return orch

        orch = asyncio.run(scenario())
        user_ack, status = orch.log.all()[-2:]
        assert user_ack.role == "user"
        assert user_ack.content == "Collect from: Office"
        assert status.type == "status"
        assert status.payload.status == "Finalizing extraction..."

    @pytest.mark.parametrize("address_first", [True, False])
    def test_join_commutes(self, address_first):
        async def scenario():
            extractor = ControlledExtractor()
            orch = make_orchestrator(extractor)
            await to_processing(orch)
            if address_first:
                await orch.select_address("1")
                extractor.resolve(0, valid_record())
                await orch.drain()
            else:
                extractor.resolve(0, valid_record())
                await orch.drain()
                await orch.select_address("1")
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.REVIEW_TESTS
        assert [t.test_name for t in orch.cart] == ["CBC"]
        assert [t.test_name for t in orch.optional_tests] == ["Vitamin D"]
        assert orch.selected_address.id == "1"
        assert len(messages_of_type(orch, "prescription_review")) == 1

    def test_join_fires_once_per_episode(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_processing(orch)
            await orch.drain()
            await orch.select_address("1")
            await orch.select_address("2")
            await orch.select_address("1")
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.REVIEW_TESTS
        assert len(messages_of_type(orch, "prescription_review")) == 1
        verified = [m for m in orch.log.all() if m.content.startswith("✅")]
        assert len(verified) == 1

    def test_join_fires_once_with_typing_delay(self):
        async def scenario():
            orch = FlowOrchestrator(extractor=static_extractor(valid_record()), typing_delay=0.001)
            await to_processing(orch)
            first = asyncio.create_task(orch.select_address("1"))
            await asyncio.sleep(0)
            # A second address lands while the verified message is still "typing".
            await orch.select_address("2")
            await first
            await orch.drain()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.REVIEW_TESTS
        assert len(messages_of_type(orch, "prescription_review")) == 1

    def test_valid_record_scenario(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_processing(orch)
            await orch.select_address("1")
            await orch.drain()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.REVIEW_TESTS
        assert [t.test_name for t in orch.cart] == ["CBC"]
        assert orch.total_due() == default_provider().delivery_fee
        assert orch.covered_count() == 1

        review = messages_of_type(orch, "prescription_review")[-1].payload
        assert review.patient_details.name == "Riya Sharma"
        assert review.doctor_details.degree == "MBBS, MD"
        assert review.diagnosis == "Fatigue, suspected anaemia"
        assert [t.test_name for t in review.cart] == ["CBC"]
        assert [t.test_name for t in review.optional_tests] == ["Vitamin D"]
        assert review.provider == default_provider()
        assert review.total_due == default_provider().delivery_fee

    def test_invalid_record_scenario(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(invalid_record()))
            await to_processing(orch)
            await orch.select_address("1")
            await orch.drain()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.VALIDATION_FEEDBACK
        assert orch.cart == []
        last = orch.log.all()[-1]
        assert "• Signature missing\n• Date illegible" in last.content
        assert last.type == "options"
        assert last.payload.options == [UPLOAD_NEW, CONNECT_SUPPORT]

    def test_reupload_replaces_cart(self):
        async def scenario():
            extractor = ControlledExtractor()
            orch = make_orchestrator(extractor)
            await to_processing(orch)
            await orch.select_address("1")
            extractor.resolve(0, invalid_record())
            await orch.drain()

            await orch.select_option(UPLOAD_NEW)
            await orch.upload_document(FAKE_JPEG, "rx2.jpg")
            await settle()
            second = valid_record(tests_extracted=[
                {"test_name": "LFT", "source": "prescription"},
                {"test_name": "KFT", "source": "prescription"},
            ])
            extractor.resolve(1, second)
            await orch.drain()
            return orch

        orch = asyncio.run(scenario())
        # Address carries over from the first episode, so the join fires on the record.
        assert orch.state is FlowState.REVIEW_TESTS
        assert [t.test_name for t in orch.cart] == ["LFT", "KFT"]


# ── Staleness and failures ──────────────────────────────────────────────────


class TestStaleResults:
    def test_late_result_from_abandoned_episode_is_dropped(self):
        async def scenario():
            extractor = ControlledExtractor()
            orch = make_orchestrator(extractor)
            await to_processing(orch)
            await orch.select_option(UPLOAD_NEW)
            await orch.upload_document(FAKE_JPEG, "rx2.jpg")
            await settle()
            await orch.select_address("1")

            stale =valid_record(tests_extracted=[{"test_name": "STALE", "source": "prescription"}])
            extractor.resolve(0, stale)
            await settle()
            state_after_stale = orch.state

            extractor.resolve(1, valid_record())
            await orch.drain()
            return orch, state_after_stale

        orch, state_after_stale = asyncio.run(scenario())
        assert state_after_stale is FlowState.PROCESSING
        assert orch.state is FlowState.REVIEW_TESTS
        assert [t.test_name for t in orch.cart] == ["CBC"]
        assert len(messages_of_type(orch, "prescription_review")) == 1

    def test_late_failure_from_abandoned_episode_is_ignored(self):
        async def scenario():
            extractor = ControlledExtractor()
            orch = make_orchestrator(extractor)
            await to_processing(orch)
            await orch.select_option(TRY_AGAIN)
            await orch.upload_document(FAKE_JPEG, "rx2.jpg")
            extractor.fail(0)
            await settle()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.PROCESSING
        assert not any("trouble reading" in m.content for m in orch.log.all())

    def test_failure_after_retry_click_does_not_hijack_upload(self):
        async def scenario():
            extractor = ControlledExtractor()
            orch = make_orchestrator(extractor)
            await to_processing(orch)
            await orch.select_option(UPLOAD_NEW)
            extractor.fail(0)
            await settle()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AWAITING_PRESCRIPTION

    def test_extraction_failure_offers_retry_or_agent(self):
        async def scenario():
            orch = make_orchestrator(failing_extractor())
            await to_processing(orch)
            await orch.drain()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AGENT_FALLBACK
        last = orch.log.all()[-1]
        assert last.payload.options == [TRY_AGAIN, CONNECT_AGENT]

    def test_unexpected_extractor_error_is_treated_as_failure(self):
        async def broken(document, filename=None):
            raise RuntimeError("boom")

        async def scenario():
            orch = make_orchestrator(broken)
            await to_processing(orch)
            await orch.drain()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AGENT_FALLBACK

    def test_try_again_after_failure_reopens_upload(self):
        async def scenario():
            orch = make_orchestrator(failing_extractor())
            await to_processing(orch)
            await orch.drain()
            await orch.select_option(TRY_AGAIN)
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AWAITING_PRESCRIPTION


# ── Review, provider and cart ───────────────────────────────────────────────


async def to_review(orch: FlowOrchestrator) -> None:
    await to_processing(orch)
    await orch.select_address("1")
    await orch.drain()


class TestReview:
    def test_provider_switch_changes_total_not_cart(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_review(orch)
            orch.promote_optional(0)
            cart_before = list(orch.cart)
            total_before = orch.total_due()

            await orch.request_provider_change()
            await orch.select_provider("p2")
            return orch, cart_before, total_before

        orch, cart_before, total_before = asyncio.run(scenario())
        assert orch.state is FlowState.REVIEW_TESTS
        assert orch.cart == cart_before
        assert total_before == 499
        assert orch.total_due() == 599 + 50

        picker = messages_of_type(orch, "provider_picker")[-1]
        assert picker.payload.selected_provider_id == "p1"
        review = messages_of_type(orch, "prescription_review")[-1].payload
        assert review.provider.id == "p2"
        assert review.cart == cart_before
        assert review.total_due == 649

    def test_promote_and_remove(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_review(orch)
            promoted = orch.promote_optional(0)
            missing = orch.promote_optional(0)
            orch.remove_test(0, in_cart=True)
            return orch, promoted, missing

        orch, promoted, missing = asyncio.run(scenario())
        assert promoted.source == "recommended"
        assert missing is None
        assert orch.optional_tests == []
        assert [(t.test_name, t.source) for t in orch.cart] == [("Vitamin D", "recommended")]

    def test_dismiss_optional(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_review(orch)
            orch.remove_test(0, in_cart=False)
            return orch

        orch = asyncio.run(scenario())
        assert orch.optional_tests == []
        assert [t.test_name for t in orch.cart] == ["CBC"]

    def test_confirm_and_pay(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_review(orch)
            orch.promote_optional(0)
            await orch.confirm_booking()
            state_after_confirm = orch.state
            await orch.pay()
            return orch, state_after_confirm

        orch, state_after_confirm = asyncio.run(scenario())
        assert state_after_confirm is FlowState.FINAL_REVIEW
        assert orch.state is FlowState.CONFIRMED

        summary = messages_of_type(orch, "cart")[-1].payload
        assert [t.test_name for t in summary.items] == ["CBC", "Vitamin D"]
        assert summary.address.label == "Home"
        assert summary.total_due == 499
        assert summary.covered_count == 1
        assert "confirmed" in orch.log.all()[-1].content

    def test_actions_outside_review_are_rejected(self):
        async def scenario():
            orch = make_orchestrator(ControlledExtractor())
            await to_processing(orch)
            with pytest.raises(InvalidTransition):
                orch.promote_optional(0)
            with pytest.raises(InvalidTransition):
                await orch.confirm_booking()
            with pytest.raises(InvalidTransition):
                await orch.pay()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.PROCESSING

    def test_unknown_provider_raises_lookup_error(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_review(orch)
            with pytest.raises(LookupError):
                await orch.select_provider("nope")
            return orch

        orch = asyncio.run(scenario())
        assert orch.selected_provider == default_provider()

    def test_provider_locked_after_payment(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_review(orch)
            await orch.confirm_booking()
            await orch.pay()
            with pytest.raises(InvalidTransition):
                await orch.select_provider("p2")
            with pytest.raises(InvalidTransition):
                await orch.request_provider_change()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.CONFIRMED
        assert orch.selected_provider == default_provider()


# ── Actions during typing pauses and extraction ─────────────────────────────


class TestInterleavedActions:
    def test_provider_chosen_during_processing_prices_the_review(self):
        async def scenario():
            extractor = ControlledExtractor()
            orch = make_orchestrator(extractor)
            await to_processing(orch)

            await orch.request_provider_change()
            await orch.select_provider("p2")
            state_after_switch = orch.state
            reviews_before_join = len(messages_of_type(orch, "prescription_review"))

            await orch.select_address("1")
            extractor.resolve(0, valid_record())
            await settle()
            await orch.drain()
            return orch, state_after_switch, reviews_before_join

        orch, state_after_switch, reviews_before_join = asyncio.run(scenario())
        assert state_after_switch is FlowState.PROCESSING
        assert reviews_before_join == 0
        assert orch.state is FlowState.REVIEW_TESTS

        review = messages_of_type(orch, "prescription_review")[-1].payload
        assert review.provider.id == "p2"
        assert review.total_due == 50

    def test_agent_handoff_during_settlement_is_not_overwritten(self):
        async def scenario():
            orch = FlowOrchestrator(extractor=static_extractor(valid_record()), typing_delay=0.01)
            await to_review(orch)
            await orch.confirm_booking()

            payment = asyncio.create_task(orch.pay())
            await asyncio.sleep(0)
            await orch.report_incorrect_extraction()
            await payment
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AGENT_FALLBACK
        assert not any("confirmed" in m.content for m in orch.log.all())
        assert orch.log.all()[-1].payload.options == [ASSIGN_AGENT]

    def test_agent_handoff_during_confirm_drops_cart_summary(self):
        async def scenario():
            orch = FlowOrchestrator(extractor=static_extractor(valid_record()), typing_delay=0.01)
            await to_review(orch)

            confirm = asyncio.create_task(orch.confirm_booking())
            await asyncio.sleep(0)
            await orch.select_option(CONNECT_AGENT)
            await confirm
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AGENT_FALLBACK
        assert messages_of_type(orch, "cart") == []

    def test_reupload_during_provider_switch(self):
        async def scenario():
            extractor = ControlledExtractor()
            orch = FlowOrchestrator(extractor=extractor, typing_delay=0.01)
            await to_processing(orch)
            await orch.select_address("1")
            extractor.resolve(0, valid_record())
            await settle()
            await orch.drain()
            assert orch.state is FlowState.REVIEW_TESTS

            switch = asyncio.create_task(orch.select_provider("p2"))
            await asyncio.sleep(0)
            await orch.select_option(TRY_AGAIN)
            await orch.upload_document(FAKE_JPEG, "rx2.jpg")
            await switch
            state = orch.state
            await orch.aclose()
            return orch, state

        orch, state = asyncio.run(scenario())
        assert state is FlowState.PROCESSING
        assert orch.selected_provider.id == "p2"
        assert len(messages_of_type(orch, "prescription_review")) == 1
        notes = [m for m in orch.log.all() if m.content == "Noted. Your tests will be booked with Apollo Diagnostics."]
        assert len(notes) == 1


# ── Fallbacks and free text ─────────────────────────────────────────────────


class TestFallbacks:
    def test_report_incorrect_extraction(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await to_review(orch)
            await orch.report_incorrect_extraction()
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AGENT_FALLBACK
        assert orch.log.all()[-1].payload.options == [ASSIGN_AGENT]

    def test_assign_to_agent_confirms_handoff(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(invalid_record()))
            await to_review(orch)
            await orch.select_option(CONNECT_SUPPORT)
            await orch.select_option(ASSIGN_AGENT)
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.AGENT_FALLBACK
        assert orch.log.all()[-1].type == "status"

    def test_go_back_from_validation_feedback(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(invalid_record()))
            await to_review(orch)
            await orch.select_option(GO_BACK)
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.WELCOME
        assert orch.log.all()[-1].payload.options[0] == BOOK_LAB_TESTS

    def test_free_text_never_changes_state(self):
        async def scenario():
            orch = make_orchestrator(ControlledExtractor())
            await to_processing(orch)
            await orch.send_text("hello?")
            await orch.send_text("   ")
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.PROCESSING
        user_msg, reply = orch.log.all()[-2:]
        assert user_msg.content == "hello?"
        assert "options provided above" in reply.content

    def test_upload_rejected_outside_upload_states(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            await orch.start()
            with pytest.raises(InvalidTransition):
                await orch.upload_document(FAKE_JPEG, "rx.jpg")
            return orch

        orch = asyncio.run(scenario())
        assert orch.state is FlowState.WELCOME


# ── Conversation log ────────────────────────────────────────────────────────


class TestConversationLog:
    def test_listeners_see_every_append_in_order(self):
        seen = []

        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            orch.log.subscribe(lambda m: seen.append(m.id))
            await to_review(orch)
            return orch

        orch = asyncio.run(scenario())
        assert seen == [m.id for m in orch.log.all()]
        assert len(set(seen)) == len(seen)

    def test_failing_listener_does_not_block_append(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))

            def broken(message):
                raise RuntimeError("ui gone")

            orch.log.subscribe(broken)
            await orch.start()
            return orch

        orch = asyncio.run(scenario())
        assert len(orch.log) == 1

    def test_unsubscribe_and_find(self):
        async def scenario():
            orch = make_orchestrator(static_extractor(valid_record()))
            seen = []
            unsubscribe = orch.log.subscribe(seen.append)
            await orch.start()
            unsubscribe()
            await orch.select_option(BOOK_LAB_TESTS)
            return orch, seen

        orch, seen = asyncio.run(scenario())
        assert len(seen) == 1
        assert orch.log.find(seen[0].id) == seen[0]
        assert orch.log.find("missing") is None


# ── Join primitive ──────────────────────────────────────────────────────────


class TestEpisodeJoin:
    ADDRESS = Address(id="1", label="Home", details="somewhere")

    def test_take_once(self):
        join = EpisodeJoin()
        token = join.begin()
        join.offer_address(self.ADDRESS)
        assert join.take() is None
        assert join.offer_record(token, valid_record())
        assert join.take() is not None
        assert join.take() is None
        join.offer_address(self.ADDRESS)
        assert join.take() is None

    def test_stale_token_refused(self):
        join = EpisodeJoin()
        old = join.begin()
        new = join.begin()
        assert not join.offer_record(old, valid_record())
        assert join.record is None
        assert join.offer_record(new, valid_record())

    def test_begin_keeps_address_and_clears_record(self):
        join = EpisodeJoin()
        token = join.begin()
        join.offer_address(self.ADDRESS)
        join.offer_record(token, valid_record())
        join.take()
        join.begin()
        assert join.record is None
        assert join.address == self.ADDRESS
        assert not join.consumed
