"""
Configuration for Card Ledger.
"""

from .loader import LedgerConfig, load_config

__all__ = ["LedgerConfig", "load_config"]
