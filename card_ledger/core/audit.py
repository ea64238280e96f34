"""
Field-level audit trail for card updates.

Records one row per changed field whenever a card's balance, credit limit
or active flag is changed through the explicit update path. Payment
debits are not recorded here; the transaction row already captures them.
"""

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from card_ledger.storage.models import (
    FIELD_ACTIVE,
    FIELD_BALANCE,
    FIELD_CREDIT_LIMIT,
    Card,
    CardFieldChange,
    from_timestamp,
    to_timestamp,
)


def stringify(value: Union[Decimal, bool, None]) -> Optional[str]:
    """Render a field value the way it is stored in the audit table."""
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value)
    return f"{value:.2f}"


class AuditTrail:
    """Append-only recorder for card field changes.

    Works on a connection owned by the caller so the audit rows commit in
    the same transaction as the card update they describe.
    """

    def diff(self, before: Card, after: Card, changed_at: datetime) -> List[CardFieldChange]:
        """Build one change per field that differs between two snapshots."""
        pairs = [
            (FIELD_BALANCE, before.balance, after.balance),
            (FIELD_CREDIT_LIMIT, before.credit_limit, after.credit_limit),
            (FIELD_ACTIVE, before.active, after.active),
        ]
        return [
            CardFieldChange(
                card_id=before.id,
                field=field,
                old_value=stringify(old),
                new_value=stringify(new),
                changed_at=changed_at,
            )
            for field, old, new in pairs
            if old != new
        ]

    def record(self, conn: sqlite3.Connection, change: CardFieldChange) -> CardFieldChange:
        """Append a single change and return it with its row id."""
        cursor = conn.execute(
            """
            INSERT INTO card_field_change
            (card_id, field, old_value, new_value, changed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                change.card_id,
                change.field,
                change.old_value,
                change.new_value,
                to_timestamp(change.changed_at),
            ),
        )
        return CardFieldChange(
            card_id=change.card_id,
            field=change.field,
            old_value=change.old_value,
            new_value=change.new_value,
            changed_at=change.changed_at,
            id=cursor.lastrowid,
        )

    def record_changes(
        self,
        conn: sqlite3.Connection,
        before: Card,
        after: Card,
        changed_at: datetime,
    ) -> List[CardFieldChange]:
        """Append a row for every field that differs between two snapshots."""
        return [self.record(conn, change) for change in self.diff(before, after, changed_at)]

    def history(self, conn: sqlite3.Connection, card_id: int) -> List[CardFieldChange]:
        """All recorded changes for a card, oldest first."""
        cursor = conn.execute(
            """
            SELECT id, card_id, field, old_value, new_value, changed_at
            FROM card_field_change
            WHERE card_id = ?
            ORDER BY changed_at, id
            """,
            (card_id,),
        )
        return [
            CardFieldChange(
                card_id=row["card_id"],
                field=row["field"],
                old_value=row["old_value"],
                new_value=row["new_value"],
                changed_at=from_timestamp(row["changed_at"]),
                id=row["id"],
            )
            for row in cursor.fetchall()
        ]
