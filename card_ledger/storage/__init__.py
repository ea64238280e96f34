"""
Storage layer for Card Ledger.

SQLite persistence for cards and their append-only history tables.
"""
