"""Symmetric encryption for OAuth tokens at rest."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import TokenDecryptionError


class TokenCipher:
    """Fernet wrapper that turns token strings into storable ciphertext."""

    def __init__(self, key: str | bytes) -> None:
        if isinstance(key, str):
            key = key.encode()
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, plain_text: str) -> str:
        return self._fernet.encrypt(plain_text.encode()).decode()

    def decrypt(self, cipher_text: str) -> str:
        try:
            return self._fernet.decrypt(cipher_text.encode()).decode()
        except (InvalidToken, UnicodeError) as exc:
            raise TokenDecryptionError("Stored token could not be decrypted") from exc
