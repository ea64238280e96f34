"""
Core modules for Card Ledger.

This package contains the card number codec, fee engine, authorization
engine, payment processor, audit trail and the background fee scheduler.
"""
