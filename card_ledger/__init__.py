"""
Card Ledger.

Virtual card ledger with authorization, atomic payments and an evolving
per-transaction fee.
"""

__version__ = "0.1.0"
