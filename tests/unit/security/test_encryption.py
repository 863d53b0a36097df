"""
Test page access token encryption.
"""

import pytest

from crm_sync.security.encryption import (
    EncryptionError,
    decrypt_token,
    encrypt_token,
    generate_new_key,
)


@pytest.fixture(autouse=True)
def encryption_key(monkeypatch):
    monkeypatch.setattr("crm_sync.security.encryption.settings.ENCRYPTION_KEY", generate_new_key())


def test_basic_encryption_decryption():
    """Test that encryption and decryption work correctly."""
    token = "EAAB-fake-page-token-12345"

    encrypted = encrypt_token(token)

    assert isinstance(encrypted, bytes)
    assert token.encode() not in encrypted
    assert decrypt_token(encrypted) == token


def test_decrypt_accepts_memoryview():
    """BYTEA columns may come back as memoryview."""
    encrypted = encrypt_token("page_token")

    assert decrypt_token(memoryview(encrypted)) == "page_token"


def test_encryption_with_different_tokens():
    """Test encryption with various token formats."""
    for token in [
        "simple_token",
        "token_with_special_chars_!@#$%^&*()",
        "very_long_token_" + "x" * 500,
    ]:
        assert decrypt_token(encrypt_token(token)) == token


def test_empty_token_is_rejected():
    with pytest.raises(EncryptionError):
        encrypt_token("")


def test_token_from_another_key_fails(monkeypatch):
    encrypted = encrypt_token("page_token")
    monkeypatch.setattr("crm_sync.security.encryption.settings.ENCRYPTION_KEY", generate_new_key())

    with pytest.raises(EncryptionError):
        decrypt_token(encrypted)


def test_missing_key_is_reported(monkeypatch):
    monkeypatch.setattr("crm_sync.security.encryption.settings.ENCRYPTION_KEY", None)

    with pytest.raises(EncryptionError, match="ENCRYPTION_KEY"):
        encrypt_token("page_token")
