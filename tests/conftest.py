"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from card_ledger.core.codec import CardNumberCodec
from card_ledger.storage.models import FeeEntry
from card_ledger.storage.repository import LedgerStore, initialize_schema

# Fixed 512-bit key so tokens are stable within a test run
TEST_CODEC_KEY = CardNumberCodec.generate_key()


class FakeClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def db_path(tmp_path) -> str:
    """Initialized SQLite database in a temporary directory."""
    path = os.path.join(str(tmp_path), "ledger.db")
    initialize_schema(path)
    return path


@pytest.fixture
def store(db_path, clock) -> LedgerStore:
    """Ledger store with a short retry backoff and the fake clock."""
    return LedgerStore(db_path, busy_timeout=5.0, max_conflict_retries=3, retry_backoff=0.01, clock=clock)


@pytest.fixture
def codec() -> CardNumberCodec:
    return CardNumberCodec.from_base64(TEST_CODEC_KEY)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def issue_card(store, codec, clock):
    """Factory creating a card with a known balance; returns the card."""
    counter = {"n": 0}

    def _issue(balance="1000.00", credit_limit=None, number=None):
        counter["n"] += 1
        card_number = number or f"{counter['n']:015d}"
        return store.create_card(
            codec.encode(card_number),
            initial_balance=Decimal(balance),
            credit_limit=Decimal(credit_limit) if credit_limit is not None else None,
            created_at=clock(),
        )

    return _issue


@pytest.fixture
def set_fee(store, clock):
    """Append a fee entry recorded at the fake clock's current time."""
    def _set(fee: str) -> None:
        store.append_fee_entry(FeeEntry(fee=Decimal(fee), recorded_at=clock()))

    return _set
