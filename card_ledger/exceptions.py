"""Custom exception hierarchy for card-ledger."""


class CardLedgerError(Exception):
    """Base exception for all card-ledger errors."""


class ValidationError(CardLedgerError, ValueError):
    """Raised when an amount, credit limit or other input is malformed."""


class ConfigurationError(ValidationError):
    """Raised when configuration is invalid or missing."""


class CardNotFoundError(CardLedgerError):
    """Raised when a card targeted by an update or lookup does not exist."""


class CardNotAuthorizedError(CardLedgerError):
    """Raised when a card is inactive, unknown or lacks spending power."""


class InsufficientFundsOrInactiveError(CardNotAuthorizedError):
    """Raised when the atomic debit precondition fails at commit time."""


class DecodingError(CardLedgerError):
    """Raised when a stored card number was not produced by this codec."""


class ConflictError(CardLedgerError):
    """Raised when a concurrent write kept the card row locked."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class InternalError(CardLedgerError):
    """Raised when the persistence layer is unavailable or failing."""
