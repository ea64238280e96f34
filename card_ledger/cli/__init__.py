"""
Command line interface for Card Ledger.
"""
