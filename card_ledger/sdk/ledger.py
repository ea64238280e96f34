"""
Card ledger client.

Wires the codec, store and engines together and exposes the operations
an API layer calls: create, authorize, pay, balance lookup and update.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from card_ledger.config.loader import LedgerConfig
from card_ledger.core.authorization import AuthorizationEngine, resolve_card
from card_ledger.core.codec import CardNumberCodec, generate_card_number
from card_ledger.core.fees import FeeEngine
from card_ledger.core.money import CENT, MoneyInput, to_optional_money
from card_ledger.core.payments import PaymentProcessor
from card_ledger.core.scheduler import FeeUpdateScheduler
from card_ledger.exceptions import CardNotFoundError, ValidationError
from card_ledger.storage.models import (
    Card,
    CardFieldChange,
    Transaction,
    utc_now,
)
from card_ledger.storage.repository import LedgerStore, initialize_schema

logger = logging.getLogger(__name__)

_MAX_ISSUE_ATTEMPTS = 5


@dataclass(frozen=True)
class IssuedCard:
    """A newly created card together with its plaintext number."""
    card: Card
    card_number: str

    @property
    def token(self) -> str:
        """Identifier the holder presents for authorization and payment."""
        return self.card.stored_number


@dataclass(frozen=True)
class CardHistory:
    """Payments and audited updates of one card."""
    card: Card
    transactions: List[Transaction]
    field_changes: List[CardFieldChange]


class CardLedger:
    """Entry point for card operations.

    Cards are addressed by their token, the encoded card number returned
    at issuance.
    """

    def __init__(
        self,
        store: LedgerStore,
        codec: CardNumberCodec,
        velocity_window: timedelta = timedelta(seconds=5),
        max_initial_balance: Decimal = Decimal("2147483647.00"),
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.codec = codec
        self.max_initial_balance = max_initial_balance
        self.rng = rng or random.SystemRandom()
        self.clock = clock
        self.fees = FeeEngine(store, rng=self.rng, clock=clock)
        self.authorizer = AuthorizationEngine(store, codec, velocity_window=velocity_window, clock=clock)
        self.payments = PaymentProcessor(store, codec, self.fees, clock=clock)

    @classmethod
    def from_config(cls, config: LedgerConfig, initialize: bool = True) -> "CardLedger":
        """Build a ledger from configuration, creating the schema if asked."""
        if initialize:
            initialize_schema(config.database.path)
        store = LedgerStore(
            config.database.path,
            busy_timeout=config.database.busy_timeout_seconds,
            max_conflict_retries=config.database.max_conflict_retries,
        )
        return cls(
            store,
            CardNumberCodec.from_base64(config.codec.key),
            velocity_window=timedelta(seconds=config.authorization.velocity_window_seconds),
            max_initial_balance=config.cards.max_initial_balance,
        )

    def fee_scheduler(self, config: LedgerConfig) -> FeeUpdateScheduler:
        """Build the background fee updater for this ledger."""
        return FeeUpdateScheduler(
            self.fees,
            readiness_check=self.store.is_ready,
            update_interval=config.fees.update_interval_seconds,
            readiness_poll=config.fees.readiness_poll_seconds,
            seed_if_empty=config.fees.seed_if_empty,
        )

    def _random_balance(self) -> Decimal:
        return (Decimal(str(self.rng.random())) * self.max_initial_balance).quantize(CENT)

    def create_card(self, credit_limit: Optional[MoneyInput] = None) -> IssuedCard:
        """Issue an active card with a random initial balance.

        Raises:
            ValidationError: If the credit limit is malformed or negative
        """
        limit = to_optional_money(credit_limit, "credit_limit")
        if limit is not None and limit < 0:
            raise ValidationError("credit_limit cannot be negative")

        for attempt in range(1, _MAX_ISSUE_ATTEMPTS + 1):
            card_number = generate_card_number(self.rng)
            stored_number = self.codec.encode(card_number)
            if self.store.find(stored_number) is not None:
                logger.warning("Generated card number already issued (attempt %d)", attempt)
                continue
            card = self.store.create_card(
                stored_number,
                initial_balance=self._random_balance(),
                credit_limit=limit,
                created_at=self.clock(),
            )
            logger.info("Issued card %d", card.id)
            return IssuedCard(card=card, card_number=card_number)

        raise ValidationError(f"Could not generate an unused card number in {_MAX_ISSUE_ATTEMPTS} attempts")

    def authorize(self, token: str) -> bool:
        """True if the card may be used now; every call is recorded."""
        return self.authorizer.authorize(token)

    def pay(self, token: str, amount: MoneyInput) -> Transaction:
        """Charge a card; see PaymentProcessor.pay."""
        return self.payments.pay(token, amount)

    def get_balance(self, token: str) -> Optional[Card]:
        """Current card state, or None if the token is unknown."""
        return resolve_card(self.store, self.codec, token)

    def update_card(
        self,
        token: str,
        balance: Optional[MoneyInput] = None,
        credit_limit: Optional[MoneyInput] = None,
        active: Optional[bool] = None,
    ) -> Card:
        """Change balance, credit limit or status, auditing each change.

        Raises:
            CardNotFoundError: If the token is unknown
            ValidationError: If a value is malformed or the result would
                leave balance + credit limit below zero
        """
        new_balance = to_optional_money(balance, "balance")
        new_limit = to_optional_money(credit_limit, "credit_limit")

        card = resolve_card(self.store, self.codec, token)
        if card is None:
            raise CardNotFoundError("Card not found.")
        return self.store.update_fields(
            card.id,
            balance=new_balance,
            credit_limit=new_limit,
            active=active,
            changed_at=self.clock(),
        )

    def current_fee(self) -> Decimal:
        """Fee that the next payment would be charged."""
        return self.fees.current_fee()

    def history(self, token: str, limit: int = 100) -> CardHistory:
        """Payments and audited updates for a card.

        Raises:
            CardNotFoundError: If the token is unknown
        """
        card = resolve_card(self.store, self.codec, token)
        if card is None:
            raise CardNotFoundError("Card not found.")
        return CardHistory(
            card=card,
            transactions=self.store.list_transactions(card.id, limit),
            field_changes=self.store.list_field_changes(card.id),
        )

    def card_number(self, card: Card) -> str:
        """Decode a card's plaintext number."""
        return self.codec.decode(card.stored_number)
