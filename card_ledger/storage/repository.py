"""
Repository pattern for data access.

Owns every card mutation and the append-only history tables. Balance
checks and writes happen inside a single BEGIN IMMEDIATE transaction, so
SQLite's write lock serializes concurrent debits against the same card.
"""

import logging
import sqlite3
import time
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, TypeVar

from card_ledger.core.audit import AuditTrail
from card_ledger.core.money import from_cents, to_cents
from card_ledger.exceptions import (
    CardNotFoundError,
    ConflictError,
    InsufficientFundsOrInactiveError,
    InternalError,
    ValidationError,
)
from .db import DEFAULT_DB_PATH, get_connection, is_lock_error
from .models import (
    AuthorizationRecord,
    Card,
    CardFieldChange,
    FeeEntry,
    Transaction,
    from_timestamp,
    to_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CARD_COLUMNS = "id, stored_number, balance_cents, credit_limit_cents, active, created_at"

_TABLES = ("card", "card_transaction", "authorization_record", "fee_entry", "card_field_change")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the card and history tables if they don't exist.

    Only the card table is ever updated. The other tables are append-only
    ledgers: no UPDATE or DELETE is performed on them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS card (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                stored_number TEXT NOT NULL UNIQUE,
                balance_cents INTEGER NOT NULL,
                credit_limit_cents INTEGER,
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                CHECK (credit_limit_cents IS NULL OR credit_limit_cents >= 0),
                CHECK (balance_cents + COALESCE(credit_limit_cents, 0) >= 0)
            );

            CREATE TABLE IF NOT EXISTS card_transaction (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                card_id INTEGER NOT NULL REFERENCES card(id),
                amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                fee_cents INTEGER NOT NULL CHECK (fee_cents >= 0),
                occurred_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_card_transaction_card
                ON card_transaction (card_id, occurred_at);

            CREATE TABLE IF NOT EXISTS authorization_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                card_id INTEGER REFERENCES card(id),
                granted INTEGER NOT NULL,
                attempted_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS fee_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                fee_cents INTEGER NOT NULL CHECK (fee_cents >= 1),
                recorded_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_fee_entry_recorded
                ON fee_entry (recorded_at);

            CREATE TABLE IF NOT EXISTS card_field_change (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                card_id INTEGER NOT NULL REFERENCES card(id),
                field TEXT NOT NULL,
                old_value TEXT,
                new_value TEXT NOT NULL,
                changed_at TEXT NOT NULL
            );
        """)
    finally:
        conn.close()


def _card_from_row(row: sqlite3.Row) -> Card:
    return Card(
        id=row["id"],
        stored_number=row["stored_number"],
        balance=from_cents(row["balance_cents"]),
        credit_limit=from_cents(row["credit_limit_cents"]),
        active=bool(row["active"]),
        created_at=from_timestamp(row["created_at"]),
    )


def _transaction_from_row(row: sqlite3.Row) -> Transaction:
    return Transaction(
        card_id=row["card_id"],
        amount=from_cents(row["amount_cents"]),
        fee=from_cents(row["fee_cents"]),
        occurred_at=from_timestamp(row["occurred_at"]),
        id=row["id"],
    )


def _fee_entry_from_row(row: sqlite3.Row) -> FeeEntry:
    return FeeEntry(
        fee=from_cents(row["fee_cents"]),
        recorded_at=from_timestamp(row["recorded_at"]),
        id=row["id"],
    )


class LedgerStore:
    """Repository for cards and their ledger history.

    Every public method opens its own connection. Methods that take a
    ``conn`` argument can also join a transaction started by
    :meth:`run_atomic`, which is how the payment path debits the card and
    writes the transaction row as one unit.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        busy_timeout: float = 5.0,
        max_conflict_retries: int = 3,
        retry_backoff: float = 0.05,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a connection waits for the write lock
            max_conflict_retries: Attempts made before a ConflictError surfaces
            retry_backoff: Base delay in seconds between attempts
            audit: Recorder for card field changes
            clock: Source of default timestamps
        """
        if max_conflict_retries < 1:
            raise ValueError("max_conflict_retries must be >= 1")
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.max_conflict_retries = max_conflict_retries
        self.retry_backoff = retry_backoff
        self.audit = audit or AuditTrail()
        self.clock = clock

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path, timeout=self.busy_timeout)
        except sqlite3.Error as e:
            raise InternalError(f"Cannot open ledger database {self.db_path}: {e}") from e

    def _read(self, query: Callable[[sqlite3.Connection], T]) -> T:
        conn = self._connect()
        try:
            return query(conn)
        except sqlite3.Error as e:
            raise InternalError(f"Ledger read failed: {e}") from e
        finally:
            conn.close()

    def run_atomic(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``work`` inside one write transaction and commit it.

        Lock contention is retried up to ``max_conflict_retries`` times.
        Any exception raised by ``work`` rolls the whole transaction back.

        Raises:
            ConflictError: If the write lock could not be obtained in time
            InternalError: On any other database failure
        """
        last_error: Optional[sqlite3.OperationalError] = None
        for attempt in range(1, self.max_conflict_retries + 1):
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = work(conn)
                conn.execute("COMMIT")
                return result
            except sqlite3.OperationalError as e:
                _rollback(conn)
                if not is_lock_error(e):
                    raise InternalError(f"Ledger write failed: {e}") from e
                last_error = e
                logger.warning(
                    "Write conflict on %s (attempt %d/%d): %s",
                    self.db_path, attempt, self.max_conflict_retries, e,
                )
            except sqlite3.Error as e:
                _rollback(conn)
                raise InternalError(f"Ledger write failed: {e}") from e
            except Exception:
                _rollback(conn)
                raise
            finally:
                conn.close()
            if attempt < self.max_conflict_retries:
                time.sleep(self.retry_backoff * attempt)

        raise ConflictError(
            f"Gave up after {self.max_conflict_retries} attempts: {last_error}",
            attempts=self.max_conflict_retries,
        )

    def is_ready(self) -> bool:
        """True when the database opens and every ledger table exists."""
        try:
            conn = get_connection(self.db_path, timeout=self.busy_timeout)
        except sqlite3.Error:
            return False
        try:
            placeholders = ", ".join("?" for _ in _TABLES)
            row = conn.execute(
                f"SELECT COUNT(*) FROM sqlite_master WHERE type = 'table' AND name IN ({placeholders})",
                _TABLES,
            ).fetchone()
            return row[0] == len(_TABLES)
        except sqlite3.Error:
            return False
        finally:
            conn.close()

    # Cards

    def find(self, stored_number: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Card]:
        """Exact lookup by encoded card number."""
        def query(c: sqlite3.Connection) -> Optional[Card]:
            row = c.execute(
                f"SELECT {_CARD_COLUMNS} FROM card WHERE stored_number = ?",
                (stored_number,),
            ).fetchone()
            return _card_from_row(row) if row else None

        return query(conn) if conn is not None else self._read(query)

    def get(self, card_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Card]:
        """Lookup by surrogate id."""
        def query(c: sqlite3.Connection) -> Optional[Card]:
            row = c.execute(f"SELECT {_CARD_COLUMNS} FROM card WHERE id = ?", (card_id,)).fetchone()
            return _card_from_row(row) if row else None

        return query(conn) if conn is not None else self._read(query)

    def create_card(
        self,
        stored_number: str,
        initial_balance: Decimal,
        credit_limit: Optional[Decimal] = None,
        created_at: Optional[datetime] = None,
    ) -> Card:
        """Persist a new active card.

        Raises:
            ValidationError: If the credit limit is negative or the stored
                number is already issued
        """
        if credit_limit is not None and credit_limit < 0:
            raise ValidationError("credit_limit cannot be negative")
        if initial_balance + (credit_limit or 0) < 0:
            raise ValidationError("balance plus credit limit cannot be negative")
        created_at = created_at or self.clock()

        def work(conn: sqlite3.Connection) -> Card:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO card
                    (stored_number, balance_cents, credit_limit_cents, active, created_at)
                    VALUES (?, ?, ?, 1, ?)
                    """,
                    (
                        stored_number,
                        to_cents(initial_balance),
                        to_cents(credit_limit) if credit_limit is not None else None,
                        to_timestamp(created_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError(f"Card number already issued: {e}") from e
            return self.get(cursor.lastrowid, conn=conn)

        return self.run_atomic(work)

    def debit(self, card_id: int, amount: Decimal, conn: Optional[sqlite3.Connection] = None) -> Card:
        """Subtract ``amount`` from an active card with enough spending power.

        The precondition is part of the UPDATE statement, so the check and
        the write are one atomic step under the write lock.

        Raises:
            InsufficientFundsOrInactiveError: If the card is inactive, missing
                or its balance plus credit limit is below ``amount``
        """
        if conn is None:
            return self.run_atomic(lambda c: self.debit(card_id, amount, conn=c))

        cents = to_cents(amount)
        cursor = conn.execute(
            """
            UPDATE card
            SET balance_cents = balance_cents - ?
            WHERE id = ?
              AND active = 1
              AND balance_cents + COALESCE(credit_limit_cents, 0) >= ?
            """,
            (cents, card_id, cents),
        )
        if cursor.rowcount != 1:
            raise InsufficientFundsOrInactiveError(
                f"Card {card_id} is inactive or cannot cover {amount:.2f}"
            )
        return self.get(card_id, conn=conn)

    def update_fields(
        self,
        card_id: int,
        balance: Optional[Decimal] = None,
        credit_limit: Optional[Decimal] = None,
        active: Optional[bool] = None,
        changed_at: Optional[datetime] = None,
    ) -> Card:
        """Apply the given fields and audit each one that actually changed.

        Raises:
            CardNotFoundError: If the card does not exist
            ValidationError: If the result would break balance + limit >= 0
        """
        if credit_limit is not None and credit_limit < 0:
            raise ValidationError("credit_limit cannot be negative")
        changed_at = changed_at or self.clock()

        def work(conn: sqlite3.Connection) -> Card:
            before = self.get(card_id, conn=conn)
            if before is None:
                raise CardNotFoundError(f"Card {card_id} not found")

            after = Card(
                id=before.id,
                stored_number=before.stored_number,
                balance=balance if balance is not None else before.balance,
                credit_limit=credit_limit if credit_limit is not None else before.credit_limit,
                active=active if active is not None else before.active,
                created_at=before.created_at,
            )
            if after == before:
                return before
            if after.spending_power < 0:
                raise ValidationError(
                    f"Balance {after.balance:.2f} exceeds credit limit "
                    f"{after.credit_limit or 0:.2f} for card {card_id}"
                )

            self.audit.record_changes(conn, before, after, changed_at)
            conn.execute(
                """
                UPDATE card
                SET balance_cents = ?, credit_limit_cents = ?, active = ?
                WHERE id = ?
                """,
                (
                    to_cents(after.balance),
                    to_cents(after.credit_limit) if after.credit_limit is not None else None,
                    int(after.active),
                    card_id,
                ),
            )
            return self.get(card_id, conn=conn)

        return self.run_atomic(work)

    # Transactions

    def insert_transaction(self, transaction: Transaction, conn: Optional[sqlite3.Connection] = None) -> Transaction:
        """Append a completed payment."""
        if conn is None:
            return self.run_atomic(lambda c: self.insert_transaction(transaction, conn=c))

        cursor = conn.execute(
            """
            INSERT INTO card_transaction (card_id, amount_cents, fee_cents, occurred_at)
            VALUES (?, ?, ?, ?)
            """,
            (
                transaction.card_id,
                to_cents(transaction.amount),
                to_cents(transaction.fee),
                to_timestamp(transaction.occurred_at),
            ),
        )
        return Transaction(
            card_id=transaction.card_id,
            amount=transaction.amount,
            fee=transaction.fee,
            occurred_at=transaction.occurred_at,
            id=cursor.lastrowid,
        )

    def latest_transaction(self, card_id: int) -> Optional[Transaction]:
        """Most recent payment on a card, if any."""
        def query(conn: sqlite3.Connection) -> Optional[Transaction]:
            row = conn.execute(
                """
                SELECT id, card_id, amount_cents, fee_cents, occurred_at
                FROM card_transaction
                WHERE card_id = ?
                ORDER BY occurred_at DESC, id DESC
                LIMIT 1
                """,
                (card_id,),
            ).fetchone()
            return _transaction_from_row(row) if row else None

        return self._read(query)

    def list_transactions(self, card_id: int, limit: int = 100) -> List[Transaction]:
        """Payments on a card, newest first."""
        def query(conn: sqlite3.Connection) -> List[Transaction]:
            cursor = conn.execute(
                """
                SELECT id, card_id, amount_cents, fee_cents, occurred_at
                FROM card_transaction
                WHERE card_id = ?
                ORDER BY occurred_at DESC, id DESC
                LIMIT ?
                """,
                (card_id, limit),
            )
            return [_transaction_from_row(row) for row in cursor.fetchall()]

        return self._read(query)

    # Authorization records

    def record_authorization(self, record: AuthorizationRecord) -> AuthorizationRecord:
        """Append an authorization attempt."""
        def work(conn: sqlite3.Connection) -> AuthorizationRecord:
            cursor = conn.execute(
                "INSERT INTO authorization_record (card_id, granted, attempted_at) VALUES (?, ?, ?)",
                (record.card_id, int(record.granted), to_timestamp(record.attempted_at)),
            )
            return AuthorizationRecord(
                card_id=record.card_id,
                granted=record.granted,
                attempted_at=record.attempted_at,
                id=cursor.lastrowid,
            )

        return self.run_atomic(work)

    def list_authorizations(self, card_id: Optional[int] = None, limit: int = 100) -> List[AuthorizationRecord]:
        """Authorization attempts, newest first.

        Args:
            card_id: Restrict to one card; None returns every attempt,
                including the ones whose card was not found
            limit: Maximum number of records to return
        """
        def query(conn: sqlite3.Connection) -> List[AuthorizationRecord]:
            sql = "SELECT id, card_id, granted, attempted_at FROM authorization_record"
            params: list = []
            if card_id is not None:
                sql += " WHERE card_id = ?"
                params.append(card_id)
            sql += " ORDER BY attempted_at DESC, id DESC LIMIT ?"
            params.append(limit)
            return [
                AuthorizationRecord(
                    card_id=row["card_id"],
                    granted=bool(row["granted"]),
                    attempted_at=from_timestamp(row["attempted_at"]),
                    id=row["id"],
                )
                for row in conn.execute(sql, params).fetchall()
            ]

        return self._read(query)

    # Fee timeline

    def append_fee_entry(self, entry: FeeEntry) -> FeeEntry:
        """Append a point to the fee timeline."""
        def work(conn: sqlite3.Connection) -> FeeEntry:
            cursor = conn.execute(
                "INSERT INTO fee_entry (fee_cents, recorded_at) VALUES (?, ?)",
                (to_cents(entry.fee), to_timestamp(entry.recorded_at)),
            )
            return FeeEntry(fee=entry.fee, recorded_at=entry.recorded_at, id=cursor.lastrowid)

        return self.run_atomic(work)

    def latest_fee_entry(self) -> Optional[FeeEntry]:
        """The fee entry with the latest recorded_at, if any."""
        def query(conn: sqlite3.Connection) -> Optional[FeeEntry]:
            row = conn.execute(
                "SELECT id, fee_cents, recorded_at FROM fee_entry ORDER BY recorded_at DESC, id DESC LIMIT 1"
            ).fetchone()
            return _fee_entry_from_row(row) if row else None

        return self._read(query)

    def list_fee_entries(self, limit: int = 100) -> List[FeeEntry]:
        """Fee timeline, newest first."""
        def query(conn: sqlite3.Connection) -> List[FeeEntry]:
            cursor = conn.execute(
                "SELECT id, fee_cents, recorded_at FROM fee_entry ORDER BY recorded_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [_fee_entry_from_row(row) for row in cursor.fetchall()]

        return self._read(query)

    # Audit

    def list_field_changes(self, card_id: int) -> List[CardFieldChange]:
        """Audited field changes for a card, oldest first."""
        return self._read(lambda conn: self.audit.history(conn, card_id))


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.rollback()
