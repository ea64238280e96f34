"""
Data models for storage layer.

Defines the card record and the append-only entities written around it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

# Field names written to card_field_change
FIELD_BALANCE = "Balance"
FIELD_CREDIT_LIMIT = "CreditLimit"
FIELD_ACTIVE = "IsActive"


@dataclass(frozen=True)
class Card:
    """Snapshot of a card row.

    stored_number is the encoded card number; it is opaque to everything
    except the codec and doubles as the lookup key.
    """
    id: int
    stored_number: str
    balance: Decimal
    credit_limit: Optional[Decimal]
    active: bool
    created_at: datetime

    @property
    def spending_power(self) -> Decimal:
        """Balance plus credit limit, with an absent limit counted as zero."""
        return self.balance + (self.credit_limit or Decimal("0"))


@dataclass(frozen=True)
class Transaction:
    """Immutable record of one completed payment."""
    card_id: int
    amount: Decimal
    fee: Decimal
    occurred_at: datetime
    id: Optional[int] = None

    @property
    def total(self) -> Decimal:
        """Amount actually debited from the card."""
        return self.amount + self.fee


@dataclass(frozen=True)
class AuthorizationRecord:
    """One authorization attempt. card_id is None when the card was not found."""
    card_id: Optional[int]
    granted: bool
    attempted_at: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class FeeEntry:
    """One point on the fee timeline."""
    fee: Decimal
    recorded_at: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class CardFieldChange:
    """Audit row for a single field changed through the update path."""
    card_id: int
    field: str
    old_value: Optional[str]
    new_value: str
    changed_at: datetime
    id: Optional[int] = None


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_timestamp(moment: datetime) -> str:
    """Serialize a datetime as sortable ISO-8601 UTC text."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_timestamp(value: str) -> datetime:
    """Parse text written by to_timestamp."""
    return datetime.fromisoformat(value)
