"""
SDK for Card Ledger.

Provides programmatic access to card issuance, authorization and payments.
"""

from .ledger import CardLedger, IssuedCard

__all__ = ["CardLedger", "IssuedCard"]
