"""
Card payments.

A payment debits amount + current fee from the card and records a
transaction. Both writes happen in one database transaction: on failure
the balance is unchanged and no transaction exists.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Callable

from card_ledger.exceptions import (
    CardNotAuthorizedError,
    ValidationError,
)
from card_ledger.storage.models import Transaction, utc_now
from card_ledger.storage.repository import LedgerStore
from .authorization import resolve_card
from .codec import CardNumberCodec
from .fees import FeeEngine
from .money import MoneyInput, to_money

logger = logging.getLogger(__name__)


class PaymentProcessor:
    """Executes payments against the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        codec: CardNumberCodec,
        fees: FeeEngine,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.codec = codec
        self.fees = fees
        self.clock = clock

    def pay(self, stored_number: str, amount: MoneyInput) -> Transaction:
        """Charge ``amount`` plus the current fee to a card.

        Insufficient spending power is reported with the same error kind as
        an unknown or inactive card.

        Args:
            stored_number: Card token
            amount: Principal to charge, must be > 0

        Returns:
            The persisted transaction

        Raises:
            ValidationError: If the amount is malformed or not positive
            CardNotAuthorizedError: If the card is unknown, inactive or
                cannot cover amount + fee
            ConflictError: If the card row stayed locked through every retry
        """
        principal = to_money(amount, "amount")
        if principal <= 0:
            raise ValidationError(f"amount must be > 0, got {principal}")

        card = resolve_card(self.store, self.codec, stored_number)
        if card is None or not card.active:
            raise CardNotAuthorizedError("Card is not authorized or has insufficient balance.")

        fee = self.fees.current_fee()
        total = to_money(principal + fee, "amount plus fee")
        if card.spending_power < total:
            raise CardNotAuthorizedError("Card is not authorized or has insufficient balance.")

        def work(conn: sqlite3.Connection) -> Transaction:
            # Re-checked inside the UPDATE; a concurrent payment may have won
            self.store.debit(card.id, total, conn=conn)
            return self.store.insert_transaction(
                Transaction(card_id=card.id, amount=principal, fee=fee, occurred_at=self.clock()),
                conn=conn,
            )

        transaction = self.store.run_atomic(work)
        logger.info(
            "Card %d charged %s + fee %s (transaction %d)",
            card.id, principal, fee, transaction.id,
        )
        return transaction
