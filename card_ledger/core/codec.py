"""
Card number encoding for at-rest storage.

Card numbers are stored encrypted with AES-SIV, a deterministic
authenticated cipher: the same number always encodes to the same token,
so the token can be used directly as the lookup key, and anything not
produced under the configured key fails to decode.
"""

import base64
import binascii
import random
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESSIV

from card_ledger.exceptions import ConfigurationError, DecodingError

CARD_NUMBER_LENGTH = 15

# AES-SIV takes a double-length key: 256, 384 or 512 bits
_VALID_KEY_SIZES = (32, 48, 64)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), altchars=b"-_", validate=True)


class CardNumberCodec:
    """Reversible keyed transform between card numbers and stored tokens."""

    def __init__(self, key: bytes):
        if len(key) not in _VALID_KEY_SIZES:
            raise ConfigurationError(
                f"Codec key must be {', '.join(map(str, _VALID_KEY_SIZES))} bytes, got {len(key)}"
            )
        self._cipher = AESSIV(key)

    @classmethod
    def from_base64(cls, encoded_key: str) -> "CardNumberCodec":
        """Build a codec from the base64 key stored in configuration."""
        try:
            key = _b64decode(encoded_key.strip())
        except (binascii.Error, ValueError):
            raise ConfigurationError("Codec key is not valid base64")
        return cls(key)

    @staticmethod
    def generate_key(bit_length: int = 512) -> str:
        """Return a fresh random key, base64 encoded for configuration."""
        return _b64encode(AESSIV.generate_key(bit_length))

    def encode(self, plaintext: str) -> str:
        """Encrypt a card number into its stored token."""
        if not plaintext:
            raise ValueError("card number cannot be empty")
        return _b64encode(self._cipher.encrypt(plaintext.encode("utf-8"), None))

    def decode(self, stored: str) -> str:
        """Recover the card number from a stored token.

        Raises:
            DecodingError: If the token was not produced by this codec
        """
        try:
            ciphertext = _b64decode(stored)
            return self._cipher.decrypt(ciphertext, None).decode("utf-8")
        except (binascii.Error, ValueError, UnicodeError, InvalidTag):
            raise DecodingError("Card token was not issued under the configured key")


def generate_card_number(rng: Optional[random.Random] = None) -> str:
    """Generate a random 15-digit card number."""
    rng = rng or random.SystemRandom()
    return "".join(str(rng.randrange(10)) for _ in range(CARD_NUMBER_LENGTH))


def mask_card_number(card_number: str) -> str:
    """Hide all but the last four digits."""
    return "*" * (len(card_number) - 4) + card_number[-4:]
