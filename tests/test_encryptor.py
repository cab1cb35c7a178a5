"""Tests for AES-256-CBC encryption and the ENCRYPT1 envelope."""

import os
import stat

import pytest

from src.core.encryptor import HEADER_SIZE, MAGIC, Encryptor, check_envelope
from src.core.errors import (
    DecryptionError,
    EnvelopeError,
    NotEncryptedError,
    TransformError,
    ValidationError,
)


def _encryptor(key: str = "K") -> Encryptor:
    encryptor = Encryptor()
    encryptor.set_key(key)
    return encryptor


def test_envelope_layout():
    """Output is magic, 16-byte IV, then whole AES blocks."""
    encrypted = _encryptor().encrypt_data(b"hello")

    assert encrypted[:8] == b"ENCRYPT1"
    assert len(encrypted) == HEADER_SIZE + 16
    assert Encryptor.is_encrypted_data(encrypted)


@pytest.mark.parametrize("data", [b"", b"hello", b"x" * 16, os.urandom(100000)])
def test_round_trip(data):
    encryptor = _encryptor()
    assert encryptor.decrypt_data(encryptor.encrypt_data(data)) == data


def test_fresh_iv_per_encryption():
    encryptor = _encryptor()
    assert encryptor.encrypt_data(b"same") != encryptor.encrypt_data(b"same")


def test_wrong_key_does_not_yield_plaintext():
    encrypted = _encryptor("K").encrypt_data(b"hello, this is secret")

    try:
        result = _encryptor("not K").decrypt_data(encrypted)
    except DecryptionError:
        return
    assert result != b"hello, this is secret"


def test_decrypting_plain_data_is_envelope_error():
    with pytest.raises(EnvelopeError) as excinfo:
        _encryptor().decrypt_data(b"just some plain bytes that are long enough")
    assert not isinstance(excinfo.value, NotEncryptedError)


def test_zeroed_magic_is_envelope_error():
    encrypted = bytearray(_encryptor().encrypt_data(b"hello"))
    encrypted[:8] = bytes(8)

    with pytest.raises(EnvelopeError):
        _encryptor().decrypt_data(bytes(encrypted))


def test_require_encrypted(tmp_path):
    encryptor = _encryptor()
    plain = tmp_path / "plain.txt"
    sealed = tmp_path / "sealed.bin"
    plain.write_text("plain")
    encryptor.encrypt_file(plain, sealed)

    encryptor.require_encrypted(sealed)
    with pytest.raises(NotEncryptedError):
        encryptor.require_encrypted(plain)


def test_bad_magic_is_envelope_error():
    encrypted = bytearray(_encryptor().encrypt_data(b"hello"))
    encrypted[7:8] = b"2"

    with pytest.raises(EnvelopeError):
        _encryptor().decrypt_data(bytes(encrypted))


def test_envelope_errors_are_distinct_from_not_encrypted():
    with pytest.raises(EnvelopeError) as excinfo:
        check_envelope(MAGIC + b"short")
    assert not isinstance(excinfo.value, NotEncryptedError)
    assert isinstance(excinfo.value, TransformError)


def test_partial_block_ciphertext_rejected():
    encrypted = _encryptor().encrypt_data(b"hello world")
    with pytest.raises(EnvelopeError):
        _encryptor().decrypt_data(encrypted[:-3])


def test_empty_ciphertext_rejected():
    encrypted = _encryptor().encrypt_data(b"")
    with pytest.raises(EnvelopeError):
        _encryptor().decrypt_data(encrypted[:HEADER_SIZE])


def test_hex_key_and_text_key():
    encryptor = Encryptor()
    encryptor.set_key("ab" * 32)
    assert encryptor.key == bytes.fromhex("ab" * 32)

    encryptor.set_key("K")
    assert encryptor.key == b"K" + b"\0" * 31

    with pytest.raises(ValidationError):
        encryptor.set_key("")


def test_missing_key_raises():
    with pytest.raises(ValidationError):
        Encryptor().encrypt_data(b"hello")


def test_password_derivation_is_salted():
    salt = Encryptor.generate_salt()

    first = Encryptor.derive_key_from_password("correct horse", salt)
    again = Encryptor.derive_key_from_password("correct horse", salt)
    other = Encryptor.derive_key_from_password("correct horse", Encryptor.generate_salt())

    assert first == again
    assert first != other
    assert len(first) == 32


def test_key_file_round_trip(tmp_path):
    key_file = tmp_path / "backup.key"
    original = Encryptor()
    original.generate_random_key()

    original.save_key_to_file(key_file)
    loaded = Encryptor()
    loaded.load_key_from_file(key_file)

    assert loaded.key == original.key
    assert stat.S_IMODE(key_file.stat().st_mode) == 0o600


def test_file_round_trip(tmp_path):
    plain = tmp_path / "plain.bin"
    sealed = tmp_path / "sealed.bin"
    opened = tmp_path / "opened.bin"
    plain.write_bytes(os.urandom(50000))
    encryptor = Encryptor(chunk_size=4096)
    encryptor.generate_random_key()

    encryptor.encrypt_file(plain, sealed)
    encryptor.decrypt_file(sealed, opened)

    assert opened.read_bytes() == plain.read_bytes()
    assert encryptor.is_encrypted(sealed)
    assert not encryptor.is_encrypted(plain)


def test_string_round_trip():
    encryptor = _encryptor()
    assert encryptor.decrypt_string(encryptor.encrypt_string("pässword")) == "pässword"


def test_hmac():
    encryptor = _encryptor()
    tag = encryptor.calculate_hmac(b"payload")

    assert encryptor.verify_hmac(b"payload", tag)
    assert not encryptor.verify_hmac(b"tampered", tag)
