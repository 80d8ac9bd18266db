"""Email PII protection.

Addresses are stored twice: an AES-256-GCM ciphertext for the rare cases the
plaintext is needed (sending a reset link, showing a masked copy) and a keyed
HMAC-SHA256 digest used as the unique lookup column.

Ciphertext layout, hex encoded: nonce (12 bytes) | tag (16 bytes) | ciphertext.
"""

from __future__ import annotations

import hashlib
import hmac
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import Settings, get_settings

NONCE_SIZE = 12
TAG_SIZE = 16


class DecryptionError(Exception):
    """Ciphertext was tampered with, truncated, or encrypted under another key."""


def normalize_email(email: str) -> str:
    return email.strip().lower()


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    masked = "*" if len(local) <= 1 else local[0] + "***"
    return f"{masked}@{domain}"


class EmailCipher:
    def __init__(self, encryption_key: bytes, hmac_key: str) -> None:
        if len(encryption_key) != 32:
            raise ValueError("Email encryption key must be 32 bytes")
        self._aead = AESGCM(encryption_key)
        self._hmac_key = hmac_key.encode("utf-8")

    def encrypt_email(self, plain: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        # AESGCM appends the tag to the ciphertext; it is moved in front.
        sealed = self._aead.encrypt(nonce, plain.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return (nonce + tag + ciphertext).hex()

    def decrypt_email(self, encoded: str) -> str:
        try:
            raw = bytes.fromhex(encoded)
        except (TypeError, ValueError) as exc:
            raise DecryptionError("Encrypted email is not valid hex") from exc
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Encrypted email is truncated")

        nonce = raw[:NONCE_SIZE]
        tag = raw[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE :]
        try:
            plain = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Encrypted email failed authentication") from exc
        try:
            return plain.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted email is not valid UTF-8") from exc

    def hash_email(self, plain: str) -> str:
        return hmac.new(
            self._hmac_key, normalize_email(plain).encode("utf-8"), hashlib.sha256
        ).hexdigest()


def get_email_cipher(settings: Optional[Settings] = None) -> EmailCipher:
    settings = settings or get_settings()
    return EmailCipher(settings.email_encryption_key_bytes, settings.email_hmac_key)
