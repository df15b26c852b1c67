"""Tests for AES-GCM encryption helpers."""

import pytest

from custodian.core.encryption import (
    DecryptionError,
    EncryptionKeyError,
    Encryptor,
    KeyRing,
    generate_key,
    key_from_string,
    key_to_string,
)


class TestEncryptor:
    """Tests for Encryptor."""

    def test_string_round_trip(self) -> None:
        encryptor = Encryptor(generate_key())

        token = encryptor.encrypt_string("jane@example.com")

        assert token != "jane@example.com"
        assert encryptor.decrypt_string(token) == "jane@example.com"

    def test_nonce_is_random(self) -> None:
        encryptor = Encryptor(generate_key())

        assert encryptor.encrypt(b"same") != encryptor.encrypt(b"same")

    def test_wrong_key_fails(self) -> None:
        token = Encryptor(generate_key()).encrypt(b"secret")

        with pytest.raises(DecryptionError):
            Encryptor(generate_key()).decrypt(token)

    def test_associated_data_must_match(self) -> None:
        encryptor = Encryptor(generate_key())
        token = encryptor.encrypt(b"secret", b"users:1")

        with pytest.raises(DecryptionError):
            encryptor.decrypt(token, b"users:2")

    def test_short_ciphertext_rejected(self) -> None:
        with pytest.raises(DecryptionError, match="too short"):
            Encryptor(generate_key()).decrypt(b"abc")

    def test_invalid_key_length(self) -> None:
        with pytest.raises(EncryptionKeyError):
            Encryptor(b"short")


class TestKeyStrings:
    """Tests for key serialisation."""

    def test_round_trip(self) -> None:
        key = generate_key()

        assert key_from_string(key_to_string(key)) == key

    def test_invalid_base64(self) -> None:
        with pytest.raises(EncryptionKeyError):
            key_from_string("not base64!!")

    def test_wrong_length(self) -> None:
        with pytest.raises(EncryptionKeyError):
            key_from_string(key_to_string(b"x" * 16))


def test_key_ring_requires_valid_master_key() -> None:
    with pytest.raises(EncryptionKeyError):
        KeyRing(b"too-short")
