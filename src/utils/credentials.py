from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from domain.errors import CredentialsError

IV_LENGTH = 12
TAG_LENGTH = 16


class CredentialCipher:
    """AES-256-GCM for exchange credentials at rest.

    Stored form is hex of ``iv + auth_tag + ciphertext``.
    """

    def __init__(self, key_hex: str) -> None:
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise CredentialsError("Credentials key must be hex encoded") from exc
        if len(key) != 32:
            raise CredentialsError("Credentials key must be 32 bytes (64 hex chars)")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return (iv + tag + ciphertext).hex()

    def decrypt(self, stored: str) -> str:
        try:
            data = bytes.fromhex(stored)
        except ValueError as exc:
            raise CredentialsError("Stored credential is not valid hex") from exc
        if len(data) < IV_LENGTH + TAG_LENGTH:
            raise CredentialsError("Stored credential is truncated")

        iv = data[:IV_LENGTH]
        tag = data[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
        ciphertext = data[IV_LENGTH + TAG_LENGTH :]
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialsError("Credential decryption failed") from exc
        return plaintext.decode("utf-8")


def generate_key() -> str:
    return AESGCM.generate_key(bit_length=256).hex()


__all__ = ["CredentialCipher", "generate_key"]
