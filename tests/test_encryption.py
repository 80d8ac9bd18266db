import os

import pytest

from encryption import DecryptionError, EmailCipher, mask_email

KEY = bytes.fromhex("11" * 32)


def make_cipher(key: bytes = KEY, hmac_key: str = "hmac-secret") -> EmailCipher:
    return EmailCipher(key, hmac_key)


def test_encrypt_decrypt_round_trip() -> None:
    cipher = make_cipher()
    encoded = cipher.encrypt_email("alice@example.com")
    assert "alice" not in encoded
    assert cipher.decrypt_email(encoded) == "alice@example.com"


def test_encrypt_uses_fresh_nonce_each_call() -> None:
    cipher = make_cipher()
    first = cipher.encrypt_email("alice@example.com")
    second = cipher.encrypt_email("alice@example.com")
    assert first != second
    assert first[:24] != second[:24]


def test_layout_is_nonce_tag_ciphertext() -> None:
    cipher = make_cipher()
    raw = bytes.fromhex(cipher.encrypt_email("bob@example.com"))
    assert len(raw) == 12 + 16 + len("bob@example.com")


def test_decrypt_with_wrong_key_fails() -> None:
    encoded = make_cipher().encrypt_email("alice@example.com")
    other = make_cipher(key=os.urandom(32))
    with pytest.raises(DecryptionError):
        other.decrypt_email(encoded)


def test_decrypt_tampered_ciphertext_fails() -> None:
    cipher = make_cipher()
    raw = bytearray(bytes.fromhex(cipher.encrypt_email("alice@example.com")))
    raw[-1] ^= 0x01
    with pytest.raises(DecryptionError):
        cipher.decrypt_email(bytes(raw).hex())


def test_decrypt_rejects_garbage() -> None:
    cipher = make_cipher()
    with pytest.raises(DecryptionError):
        cipher.decrypt_email("not-hex")
    with pytest.raises(DecryptionError):
        cipher.decrypt_email("00" * 20)


def test_hash_email_normalizes_case_and_whitespace() -> None:
    cipher = make_cipher()
    assert cipher.hash_email("  Alice@Example.COM ") == cipher.hash_email(
        "alice@example.com"
    )
    assert len(cipher.hash_email("alice@example.com")) == 64


def test_hash_email_depends_on_key() -> None:
    assert make_cipher(hmac_key="a").hash_email("x@y.z") != make_cipher(
        hmac_key="b"
    ).hash_email("x@y.z")


def test_cipher_rejects_short_key() -> None:
    with pytest.raises(ValueError):
        EmailCipher(b"short", "hmac")


def test_mask_email() -> None:
    assert mask_email("alice@example.com") == "a***@example.com"
    assert mask_email("a@example.com") == "*@example.com"
