"""Symmetric encryption of monetary amounts stored at rest.

Balances and goal amounts are persisted as Fernet tokens.  The Fernet key is
derived once per process from the configured secret and salt with PBKDF2, so
every token written by one deployment can be read back by another deployment
sharing the same key material.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import DecryptionError, KeyMaterialError
from .money import ZERO, AmountLike, to_decimal

if TYPE_CHECKING:  # pragma: no cover
    from .config import Settings


@dataclass(slots=True, frozen=True)
class EncryptedAmount:
    """Opaque ciphertext of an amount; never compares equal to a plain number."""

    token: str

    def __str__(self) -> str:
        return self.token


class AmountCipher:
    """Encrypt and decrypt decimal amounts with process-wide key material."""

    __slots__ = ("_fernet",)

    def __init__(self, secret: str, salt: str, *, iterations: int = 200_000) -> None:
        if not secret or not salt:
            raise KeyMaterialError("Both a cipher secret and a salt are required.")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode("utf-8"),
            iterations=iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AmountCipher":
        return cls(settings.cipher_secret, settings.cipher_salt, iterations=settings.kdf_iterations)

    def encrypt(self, amount: AmountLike) -> EncryptedAmount:
        if isinstance(amount, EncryptedAmount):
            raise TypeError("Amount is already encrypted.")
        plaintext = str(to_decimal(amount))
        return EncryptedAmount(self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii"))

    def decrypt(self, blob: EncryptedAmount) -> Decimal:
        """Return the amount inside ``blob``.

        Raises :class:`DecryptionError` for corrupt or foreign ciphertext; the
        caller decides what an unreadable balance means, it is never zero here.
        """

        if not isinstance(blob, EncryptedAmount):
            raise TypeError(f"Expected EncryptedAmount, got {type(blob).__name__}.")
        try:
            plaintext = self._fernet.decrypt(blob.token.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise DecryptionError("Stored amount cannot be decrypted with the current key.") from exc
        try:
            return to_decimal(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecryptionError("Decrypted payload is not an amount.") from exc

    def zero(self) -> EncryptedAmount:
        return self.encrypt(ZERO)


__all__ = ["AmountCipher", "EncryptedAmount"]
