"""
Test encryption service functionality.
"""

import pytest

from app.services.infrastructure.encryption_service import (
    EncryptionError,
    FernetCredentialCipher,
    generate_new_key,
    validate_encryption_config,
)


@pytest.fixture
def encryption_key(monkeypatch):
    key = generate_new_key()
    monkeypatch.setattr("app.config.settings.ENCRYPTION_KEY", key)
    return key


@pytest.fixture
def cipher(encryption_key):
    return FernetCredentialCipher()


def test_basic_encryption_decryption(cipher):
    """Test that encryption and decryption work correctly."""
    test_token = "fake_oauth_token_12345"

    encrypted = cipher.encrypt(test_token)

    assert isinstance(encrypted, bytes)
    assert test_token.encode() not in encrypted
    assert cipher.decrypt(encrypted) == test_token


def test_encryption_config_validation(encryption_key):
    """Test that encryption configuration is valid."""
    assert validate_encryption_config() is True


def test_encryption_config_validation_without_key(monkeypatch):
    monkeypatch.setattr("app.config.settings.ENCRYPTION_KEY", None)

    assert validate_encryption_config() is False


def test_encryption_config_validation_with_malformed_key(monkeypatch):
    monkeypatch.setattr("app.config.settings.ENCRYPTION_KEY", "not-a-fernet-key")

    assert validate_encryption_config() is False


def test_encryption_with_different_tokens(cipher):
    """Test encryption with various token formats."""
    test_tokens = [
        "simple_token",
        "token_with_special_chars_!@#$%^&*()",
        "very_long_token_" + "x" * 100,
        "ya29.a0AfH6SMB-unicode-é",
    ]

    for token in test_tokens:
        assert cipher.decrypt(cipher.encrypt(token)) == token


def test_empty_token_rejected(cipher):
    with pytest.raises(EncryptionError):
        cipher.encrypt("")


def test_ciphertext_from_another_key_rejected(cipher):
    foreign = FernetCredentialCipher(generate_new_key()).encrypt("refresh-token")

    with pytest.raises(EncryptionError):
        cipher.decrypt(foreign)


def test_invalid_key_rejected():
    with pytest.raises(EncryptionError):
        FernetCredentialCipher("not-a-fernet-key")


def test_decrypt_accepts_memoryview(cipher):
    """BYTEA columns can come back as memoryview."""
    encrypted = cipher.encrypt("refresh-token")

    assert cipher.decrypt(memoryview(encrypted)) == "refresh-token"
