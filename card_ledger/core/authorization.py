"""
Card authorization.

Decision Order:
1. Lookup - unknown, undecodable or inactive cards are denied
2. Velocity check - a card that paid within the cooldown window is denied
3. Otherwise the card is granted

Every attempt writes exactly one authorization record, including attempts
whose card could not be found (recorded with no card id).
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from card_ledger.exceptions import CardLedgerError, DecodingError
from card_ledger.storage.models import AuthorizationRecord, Card, utc_now
from card_ledger.storage.repository import LedgerStore
from .codec import CardNumberCodec

logger = logging.getLogger(__name__)

DEFAULT_VELOCITY_WINDOW = timedelta(seconds=5)


class AuthorizationDecision(Enum):
    """Outcome of one authorization attempt."""
    GRANTED = "granted"
    CARD_NOT_FOUND = "card_not_found"
    CARD_INACTIVE = "card_inactive"
    VELOCITY_LIMIT = "velocity_limit"
    INTERNAL_ERROR = "internal_error"

    @property
    def granted(self) -> bool:
        return self is AuthorizationDecision.GRANTED


def resolve_card(store: LedgerStore, codec: CardNumberCodec, stored_number: str) -> Optional[Card]:
    """Find a card by token, treating tokens the codec rejects as not found."""
    try:
        codec.decode(stored_number)
    except DecodingError:
        return None
    return store.find(stored_number)


class AuthorizationEngine:
    """Decides whether a card may be used right now."""

    def __init__(
        self,
        store: LedgerStore,
        codec: CardNumberCodec,
        velocity_window: timedelta = DEFAULT_VELOCITY_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.codec = codec
        self.velocity_window = velocity_window
        self.clock = clock

    def _decide(self, card: Optional[Card]) -> AuthorizationDecision:
        if card is None:
            return AuthorizationDecision.CARD_NOT_FOUND
        if not card.active:
            return AuthorizationDecision.CARD_INACTIVE

        last = self.store.latest_transaction(card.id)
        if last is not None and last.occurred_at + self.velocity_window > self.clock():
            return AuthorizationDecision.VELOCITY_LIMIT

        return AuthorizationDecision.GRANTED

    def evaluate(self, stored_number: str) -> AuthorizationDecision:
        """Run the decision and record the attempt.

        Store failures never escape: they are logged and reported as
        INTERNAL_ERROR, because every call must produce an outcome.
        """
        card: Optional[Card] = None
        try:
            card = resolve_card(self.store, self.codec, stored_number)
            decision = self._decide(card)
            self.store.record_authorization(AuthorizationRecord(
                card_id=card.id if card is not None else None,
                granted=decision.granted,
                attempted_at=self.clock(),
            ))
        except CardLedgerError:
            logger.exception("Authorization failed for card token %s", stored_number)
            self._record_denial(card)
            return AuthorizationDecision.INTERNAL_ERROR

        if not decision.granted:
            logger.info("Authorization denied (%s) for card %s", decision.value,
                        card.id if card is not None else "<unknown>")
        return decision

    def _record_denial(self, card: Optional[Card]) -> None:
        try:
            self.store.record_authorization(AuthorizationRecord(
                card_id=card.id if card is not None else None,
                granted=False,
                attempted_at=self.clock(),
            ))
        except CardLedgerError:
            logger.exception("Could not record denied authorization")

    def authorize(self, stored_number: str) -> bool:
        """True if the card may be used now."""
        return self.evaluate(stored_number).granted
