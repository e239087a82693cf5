"""
EpisodeJoin — waits for two independently arriving inputs before the flow
leaves PROCESSING.

An episode is one upload → extraction → join cycle. begin() opens a new
episode and returns its token; the extraction result must be offered with the
token it was started under, so a late result from an abandoned episode is
refused instead of overwriting the current one.

take() hands out (record, address) once both slots are filled, and only once
per episode. Later writes to either slot within the same episode are stored
but never fire again.
"""

import logging
from typing import Optional

from booking.models import Address, PrescriptionRecord

logger = logging.getLogger(__name__)


class EpisodeJoin:
    def __init__(self) -> None:
        self.token = 0
        self.record: Optional[PrescriptionRecord] = None
        self.address: Optional[Address] = None
        self.consumed = False

    def begin(self) -> int:
        """Open a new episode. The address survives; the record does not."""
        self.token += 1
        self.record = None
        self.consumed = False
        logger.info("Episode %d started", self.token)
        return self.token

    def is_current(self, token: int) -> bool:
        return token == self.token

    def offer_record(self, token: int, record: PrescriptionRecord) -> bool:
        """Fill the record slot. Returns False if `token` belongs to an older episode."""
        if not self.is_current(token):
            return False
        self.record = record
        return True

    def offer_address(self, address: Address) -> None:
        self.address = address

    def ready(self) -> bool:
        return self.record is not None and self.address is not None and not self.consumed

    def take(self) -> Optional[tuple[PrescriptionRecord, Address]]:
        if not self.ready():
            return None
        self.consumed = True
        logger.info("Episode %d joined (address=%s)", self.token, self.address.id)
        return self.record, self.address
