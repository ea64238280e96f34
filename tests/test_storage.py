"""
Unit tests for storage layer.

Tests schema creation, card mutation, conflict handling and the
append-only history tables.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from card_ledger.exceptions import (
    CardNotFoundError,
    ConflictError,
    InsufficientFundsOrInactiveError,
    InternalError,
    ValidationError,
)
from card_ledger.storage.db import get_connection, is_lock_error
from card_ledger.storage.models import (
    AuthorizationRecord,
    FeeEntry,
    Transaction,
)
from card_ledger.storage.repository import LedgerStore, initialize_schema


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify all ledger tables are created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                tables = {row[0] for row in cursor.fetchall()}
                assert {
                    "card", "card_transaction", "authorization_record",
                    "fee_entry", "card_field_change",
                } <= tables

                cursor = conn.execute("PRAGMA table_info(card)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'id', 'stored_number', 'balance_cents', 'credit_limit_cents',
                    'active', 'created_at',
                ]
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)
            assert LedgerStore(db_path).is_ready()

    def test_not_ready_without_schema(self):
        """A fresh database file has no ledger tables yet."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = LedgerStore(os.path.join(temp_dir, "empty.db"))
            assert not store.is_ready()

    def test_not_ready_when_directory_missing(self):
        store = LedgerStore("/nonexistent/dir/ledger.db")
        assert not store.is_ready()


class TestCards:
    """Test card creation and lookup."""

    def test_create_and_find(self, store, issue_card):
        card = issue_card(balance="1000.00", credit_limit="250.50")

        found = store.find(card.stored_number)
        assert found == card
        assert found.balance == Decimal("1000.00")
        assert found.credit_limit == Decimal("250.50")
        assert found.active is True
        assert found.spending_power == Decimal("1250.50")

    def test_absent_credit_limit_counts_as_zero(self, issue_card):
        card = issue_card(balance="10.00")
        assert card.credit_limit is None
        assert card.spending_power == Decimal("10.00")

    def test_find_unknown_returns_none(self, store):
        assert store.find("does-not-exist") is None
        assert store.get(999) is None

    def test_duplicate_stored_number_rejected(self, issue_card):
        issue_card(number="111111111111111")
        with pytest.raises(ValidationError, match="already issued"):
            issue_card(number="111111111111111")

    def test_negative_credit_limit_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create_card("token", Decimal("10"), Decimal("-1"))


class TestDebit:
    """Test atomic conditional debits."""

    def test_debit_reduces_balance(self, store, issue_card):
        card = issue_card(balance="100.00")
        updated = store.debit(card.id, Decimal("40.25"))
        assert updated.balance == Decimal("59.75")
        assert store.get(card.id).balance == Decimal("59.75")

    def test_debit_can_use_credit_limit(self, store, issue_card):
        card = issue_card(balance="10.00", credit_limit="100.00")
        updated = store.debit(card.id, Decimal("110.00"))
        assert updated.balance == Decimal("-100.00")
        assert updated.spending_power == Decimal("0.00")

    def test_debit_beyond_spending_power_fails(self, store, issue_card):
        card = issue_card(balance="10.00", credit_limit="5.00")
        with pytest.raises(InsufficientFundsOrInactiveError):
            store.debit(card.id, Decimal("15.01"))
        assert store.get(card.id).balance == Decimal("10.00")

    def test_debit_inactive_card_fails(self, store, issue_card):
        card = issue_card(balance="100.00")
        store.update_fields(card.id, active=False)
        with pytest.raises(InsufficientFundsOrInactiveError):
            store.debit(card.id, Decimal("1.00"))
        assert store.get(card.id).balance == Decimal("100.00")

    def test_failed_work_rolls_back_debit(self, store, issue_card):
        """Nothing commits when a later step in the same unit fails."""
        card = issue_card(balance="100.00")

        def work(conn):
            store.debit(card.id, Decimal("50.00"), conn=conn)
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.run_atomic(work)
        assert store.get(card.id).balance == Decimal("100.00")


class TestConflicts:
    """Test lock contention handling."""

    def test_lock_error_detection(self):
        assert is_lock_error(sqlite3.OperationalError("database is locked"))
        assert not is_lock_error(sqlite3.OperationalError("no such table: card"))

    def test_conflict_surfaces_after_retries(self, db_path, issue_card):
        """A writer holding the lock exhausts every retry."""
        store = LedgerStore(db_path, busy_timeout=0.05, max_conflict_retries=2, retry_backoff=0)
        card = issue_card(balance="100.00")

        blocker = get_connection(db_path)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(ConflictError) as exc_info:
                store.debit(card.id, Decimal("1.00"))
            assert exc_info.value.attempts == 2
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        assert store.get(card.id).balance == Decimal("100.00")

    def test_conflict_retry_succeeds(self, store, issue_card):
        """A transient lock error is retried transparently."""
        card = issue_card(balance="100.00")
        calls = {"n": 0}
        real_debit = store.debit

        def flaky(conn):
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("database is locked")
            return real_debit(card.id, Decimal("5.00"), conn=conn)

        result = store.run_atomic(flaky)
        assert calls["n"] == 2
        assert result.balance == Decimal("95.00")

    def test_other_database_errors_are_internal(self, db_path):
        store = LedgerStore(db_path)

        def broken(conn):
            conn.execute("SELECT * FROM missing_table")

        with pytest.raises(InternalError):
            store.run_atomic(broken)

    def test_read_failure_is_internal(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            store = LedgerStore(os.path.join(temp_dir, "no_schema.db"))
            with pytest.raises(InternalError):
                store.find("token")

    def test_invalid_retry_count(self, db_path):
        with pytest.raises(ValueError):
            LedgerStore(db_path, max_conflict_retries=0)


class TestUpdateFields:
    """Test the explicit update path and its audit trail."""

    def test_update_writes_one_change_per_field(self, store, issue_card, clock):
        """Balance, credit limit and status each produce an audit row."""
        card = issue_card(balance="1000.00", credit_limit="1000.00")

        updated = store.update_fields(
            card.id,
            balance=Decimal("500"),
            credit_limit=Decimal("2000"),
            active=False,
            changed_at=clock(),
        )

        assert updated.balance == Decimal("500.00")
        assert updated.credit_limit == Decimal("2000.00")
        assert updated.active is False

        changes = store.list_field_changes(card.id)
        assert [(c.field, c.old_value, c.new_value) for c in changes] == [
            ("Balance", "1000.00", "500.00"),
            ("CreditLimit", "1000.00", "2000.00"),
            ("IsActive", "True", "False"),
        ]
        assert all(c.changed_at == clock() for c in changes)

    def test_default_timestamps_follow_store_clock(self, store, issue_card, clock):
        """Updates without an explicit time stay in order with clocked ones."""
        card = issue_card(balance="1000.00", credit_limit="1000.00")

        store.update_fields(card.id, balance=Decimal("900"))
        clock.advance(1)
        store.update_fields(card.id, active=False, changed_at=clock())

        changes = store.list_field_changes(card.id)
        assert [c.field for c in changes] == ["Balance", "IsActive"]
        assert changes[0].changed_at == clock() - timedelta(seconds=1)

    def test_unchanged_fields_are_not_audited(self, store, issue_card):
        card = issue_card(balance="1000.00", credit_limit="1000.00")

        store.update_fields(card.id, balance=Decimal("1000.00"), credit_limit=Decimal("750"), active=True)

        changes = store.list_field_changes(card.id)
        assert len(changes) == 1
        assert changes[0].field == "CreditLimit"

    def test_setting_limit_from_absent(self, store, issue_card):
        card = issue_card(balance="10.00")
        store.update_fields(card.id, credit_limit=Decimal("50"))
        change = store.list_field_changes(card.id)[0]
        assert change.old_value is None
        assert change.new_value == "50.00"

    def test_no_op_update(self, store, issue_card):
        card = issue_card()
        assert store.update_fields(card.id) == card
        assert store.list_field_changes(card.id) == []

    def test_missing_card(self, store):
        with pytest.raises(CardNotFoundError):
            store.update_fields(42, balance=Decimal("1"))

    def test_update_cannot_break_spending_invariant(self, store, issue_card):
        card = issue_card(balance="10.00", credit_limit="100.00")
        with pytest.raises(ValidationError):
            store.update_fields(card.id, credit_limit=Decimal("5.00"), balance=Decimal("-10.00"))
        assert store.get(card.id) == card
        assert store.list_field_changes(card.id) == []

    def test_negative_credit_limit(self, store, issue_card):
        card = issue_card()
        with pytest.raises(ValidationError):
            store.update_fields(card.id, credit_limit=Decimal("-1"))


class TestHistoryTables:
    """Test append-only inserts and their read paths."""

    def test_transactions_newest_first(self, store, issue_card, clock):
        card = issue_card()
        first = store.insert_transaction(Transaction(card.id, Decimal("1.00"), Decimal("0.10"), clock()))
        clock.advance(10)
        second = store.insert_transaction(Transaction(card.id, Decimal("2.00"), Decimal("0.20"), clock()))

        assert first.id is not None and second.id is not None
        assert store.latest_transaction(card.id) == second
        assert store.list_transactions(card.id) == [second, first]
        assert store.latest_transaction(card.id).total == Decimal("2.20")

    def test_latest_transaction_absent(self, store, issue_card):
        card = issue_card()
        assert store.latest_transaction(card.id) is None

    def test_authorization_with_unknown_card(self, store, clock):
        record = store.record_authorization(AuthorizationRecord(None, False, clock()))
        assert record.id is not None
        records = store.list_authorizations()
        assert len(records) == 1
        assert records[0].card_id is None
        assert records[0].granted is False

    def test_authorizations_filtered_by_card(self, store, issue_card, clock):
        card = issue_card()
        store.record_authorization(AuthorizationRecord(card.id, True, clock()))
        store.record_authorization(AuthorizationRecord(None, False, clock()))
        assert [r.card_id for r in store.list_authorizations(card.id)] == [card.id]
        assert len(store.list_authorizations()) == 2

    def test_fee_timeline_latest_by_recorded_at(self, store):
        early = datetime(2024, 1, 1, tzinfo=timezone.utc)
        store.append_fee_entry(FeeEntry(Decimal("1.00"), early + timedelta(hours=2)))
        store.append_fee_entry(FeeEntry(Decimal("0.50"), early))

        assert store.latest_fee_entry().fee == Decimal("1.00")
        assert [e.fee for e in store.list_fee_entries()] == [Decimal("1.00"), Decimal("0.50")]

    def test_fee_below_minimum_rejected_by_schema(self, store):
        with pytest.raises(InternalError):
            store.append_fee_entry(FeeEntry(Decimal("0.00"), datetime.now(timezone.utc)))

    def test_timestamps_round_trip_as_utc(self, store, issue_card):
        card = issue_card()
        naive = datetime(2024, 5, 1, 8, 30, 15, 123456)
        tx = store.insert_transaction(Transaction(card.id, Decimal("1.00"), Decimal("0"), naive))
        stored = store.latest_transaction(card.id)
        assert stored.occurred_at == naive.replace(tzinfo=timezone.utc)
        assert tx.id == stored.id


class TestConnectionFailures:
    """Test that database open failures are reported as InternalError."""

    def test_connect_failure(self, db_path):
        store = LedgerStore(db_path)
        with patch("card_ledger.storage.repository.get_connection",
                   side_effect=sqlite3.OperationalError("unable to open database file")):
            with pytest.raises(InternalError):
                store.latest_fee_entry()
