"""
Quick script to run a full booking conversation against a local prescription file.

Usage:
    python run_flow.py path/to/prescription.jpg
    python run_flow.py path/to/prescription.pdf --address 2 --provider p3 --add 0 --pay

Drives the same FlowOrchestrator the API uses: books lab tests, uploads the
file, picks the collection address, optionally switches provider and adds
recommended tests, then confirms (and pays with --pay). The transcript is
printed as it grows.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from booking.messages import Message
from booking.models import FlowState
from booking.orchestrator import BOOK_LAB_TESTS, FlowOrchestrator

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)-30s | %(levelname)-7s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def print_message(message: Message) -> None:
    speaker = "YOU" if message.role == "user" else "BOT"
    print(f"\n[{speaker}] {message.content}")

    payload = message.payload
    if payload is None:
        return
    if payload.type == "options":
        print("   options: " + " | ".join(payload.options))
    elif payload.type == "status":
        print(f"   … {payload.status}")
    elif payload.type == "address_picker":
        for addr in payload.addresses:
            print(f"   ({addr.id}) {addr.label}: {addr.details}")
    elif payload.type == "provider_picker":
        for prov in payload.providers:
            print(f"   ({prov.id}) {prov.name} ★{prov.rating} — ₹{prov.optional_test_price:.0f}/test, fee ₹{prov.delivery_fee:.0f}")
    elif payload.type in ("prescription_review", "cart"):
        items = payload.cart if payload.type == "prescription_review" else payload.items
        for item in items:
            price = "covered" if item.source == "prescription" else f"₹{payload.provider.optional_test_price:.2f}"
            print(f"   - {item.test_name} [{price}]")
        if payload.type == "prescription_review":
            for idx, item in enumerate(payload.optional_tests):
                print(f"   + ({idx}) {item.test_name} — {item.reason or 'recommended'}")
        print(f"   provider: {payload.provider.name} | total due: ₹{payload.total_due:.2f}")


async def run_flow(args: argparse.Namespace) -> FlowState:
    path = Path(args.file)
    if not path.exists():
        logger.error("File not found: %s", args.file)
        sys.exit(1)

    orchestrator = FlowOrchestrator(typing_delay=0.0)
    orchestrator.log.subscribe(print_message)

    await orchestrator.start()
    await orchestrator.select_option(BOOK_LAB_TESTS)
    await orchestrator.upload_document(path.read_bytes(), path.name)
    await orchestrator.select_address(args.address)
    await orchestrator.drain()

    if orchestrator.state is not FlowState.REVIEW_TESTS:
        logger.info("Flow stopped in %s", orchestrator.state.value)
        return orchestrator.state

    if args.provider:
        await orchestrator.request_provider_change()
        await orchestrator.select_provider(args.provider)

    # Promote from the highest index down so earlier indexes stay valid.
    for index in sorted(args.add, reverse=True):
        orchestrator.promote_optional(index)

    await orchestrator.confirm_booking()
    if args.pay:
        await orchestrator.pay()

    return orchestrator.state


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Run a lab booking conversation end to end")
    parser.add_argument("file", help="Prescription image or PDF")
    parser.add_argument("--address", default="1", help="Saved address id (default: 1)")
    parser.add_argument("--provider", default=None, help="Switch to this provider id after review")
    parser.add_argument("--add", type=int, action="append", default=[], help="Optional test index to add (repeatable)")
    parser.add_argument("--pay", action="store_true", help="Proceed to payment after the final review")
    args = parser.parse_args()

    logger.info("LLM_PROVIDER: %s", os.getenv("LLM_PROVIDER", "claude"))
    logger.info("EXTRACTION_API_URL: %s", os.getenv("EXTRACTION_API_URL", "NOT SET"))

    final_state = asyncio.run(run_flow(args))
    logger.info("Finished in state %s", final_state.value)


if __name__ == "__main__":
    main()
