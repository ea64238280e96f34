"""
Payment fee timeline.

The fee charged on every payment is the latest entry of an append-only
timeline. A background scheduler evolves it by a bounded random walk:
each step multiplies the current fee by a factor drawn from [0, 2).
"""

import logging
import random
from datetime import datetime
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN
from typing import Callable, List, Optional

from card_ledger.storage.models import FeeEntry, utc_now
from card_ledger.storage.repository import LedgerStore
from .money import CENT, ZERO

logger = logging.getLogger(__name__)

MIN_FEE = Decimal("0.01")
MAX_MULTIPLIER = 2


class FeeEngine:
    """Reads and evolves the fee timeline stored in the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the fee engine.

        Args:
            store: Ledger holding the fee timeline
            rng: Source of multipliers; defaults to a system-seeded generator
            clock: Returns the timestamp recorded for new entries
        """
        self.store = store
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    def current_fee(self) -> Decimal:
        """Fee of the most recent entry, or 0.00 for an empty timeline."""
        entry = self.store.latest_fee_entry()
        return entry.fee if entry is not None else ZERO

    def _draw_multiplier(self) -> Decimal:
        # str() keeps the float's shortest repr instead of its binary expansion
        return Decimal(str(self.rng.random() * MAX_MULTIPLIER))

    def next_fee(self, previous: Decimal, multiplier: Decimal) -> Decimal:
        """Apply one random-walk step to ``previous``.

        A multiplicative walk can never leave zero, so an empty timeline
        starts from the multiplier itself. The result never drops below
        MIN_FEE.
        """
        if previous == 0:
            # Truncate so the result stays inside [0, 2)
            candidate = multiplier.quantize(CENT, rounding=ROUND_DOWN)
        else:
            candidate = (previous * multiplier).quantize(CENT, rounding=ROUND_HALF_EVEN)

        if candidate <= MIN_FEE:
            candidate = MIN_FEE
        return candidate

    def evolve_fee(self) -> Decimal:
        """Append the next step of the random walk and return the new fee."""
        previous = self.current_fee()
        multiplier = self._draw_multiplier()
        new_fee = self.next_fee(previous, multiplier)

        self.store.append_fee_entry(FeeEntry(fee=new_fee, recorded_at=self.clock()))
        logger.info("Fee updated from %s to %s (multiplier %.4f)", previous, new_fee, multiplier)
        return new_fee

    def seed_fee(self) -> Decimal:
        """Append an initial fee drawn from [0, 2) to bootstrap the timeline."""
        initial_fee = max(self._draw_multiplier().quantize(CENT, rounding=ROUND_DOWN), MIN_FEE)

        self.store.append_fee_entry(FeeEntry(fee=initial_fee, recorded_at=self.clock()))
        logger.info("Fee timeline seeded at %s", initial_fee)
        return initial_fee

    def fee_history(self, limit: int = 100) -> List[FeeEntry]:
        """Recorded fees, newest first."""
        return self.store.list_fee_entries(limit)
