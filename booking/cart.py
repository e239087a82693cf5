"""
Cart Model — pure derivations over the cart and the optional test pool.

Pricing rule:
    total = optional_test_price * (# items with source == "recommended")
            + delivery_fee

Prescription-sourced tests are covered by the member's plan and contribute
nothing. The total depends on the selected provider, so callers recompute it
on every render instead of caching it.

None of these functions mutate their inputs; pools are returned as new lists.
"""

import logging
from typing import Optional

from booking.models import Provider, TestItem

logger = logging.getLogger(__name__)


def promote(optional_tests: list[TestItem], index: int) -> tuple[Optional[TestItem], list[TestItem]]:
    """
    Take the optional test at `index` out of the pool, re-tagged as
    recommended so it is priced as a paid add-on.

    Returns (item, remaining_pool). Out-of-range indexes are a no-op and return
    (None, copy_of_pool).
    """
    if not 0 <= index < len(optional_tests):
        logger.warning("promote: index %d out of range for %d optional test(s)", index, len(optional_tests))
        return None, list(optional_tests)

    item = optional_tests[index].model_copy(update={"source": "recommended"})
    remaining = optional_tests[:index] + optional_tests[index + 1:]
    logger.info("Promoted optional test '%s' into the cart", item.test_name)
    return item, remaining


def remove(pool: list[TestItem], index: int) -> list[TestItem]:
    """Positional removal from either the cart or the optional pool."""
    if not 0 <= index < len(pool):
        logger.warning("remove: index %d out of range for %d item(s)", index, len(pool))
        return list(pool)
    return pool[:index] + pool[index + 1:]


def price(cart: list[TestItem], provider: Provider) -> float:
    paid = sum(1 for item in cart if item.source == "recommended")
    return paid * provider.optional_test_price + provider.delivery_fee


def covered_count(cart: list[TestItem]) -> int:
    return sum(1 for item in cart if item.source == "prescription")
