"""Tests for the password-based backup envelope."""
import struct

import pytest

from quicknotes.crypto import (
    FORMAT_VERSION,
    MAGIC,
    NONCE_SIZE,
    SALT_SIZE,
    TAG_SIZE,
    EncryptedData,
    KdfParams,
    decrypt,
    decrypt_with_key,
    derive_key,
    encrypt,
    encrypt_with_key,
)
from quicknotes.exceptions import ArchiveFormatError, AuthenticationFailure
from tests.helpers import FAST_KDF

HEADER_SIZE = 4 + 1 + 12
SALT_OFFSET = HEADER_SIZE
NONCE_OFFSET = SALT_OFFSET + SALT_SIZE
CIPHERTEXT_OFFSET = NONCE_OFFSET + NONCE_SIZE


def _flip(data: bytes, index: int) -> bytes:
    buf = bytearray(data)
    buf[index] ^= 0x01
    return bytes(buf)


@pytest.fixture
def sealed():
    return encrypt(b"secret archive bytes", "correct-horse", FAST_KDF).to_bytes()


class TestEnvelope:
    """Encrypt/decrypt behavior."""

    def test_round_trip(self, sealed):
        envelope = EncryptedData.from_bytes(sealed)
        assert decrypt(envelope, "correct-horse") == b"secret archive bytes"

    def test_layout(self, sealed):
        assert sealed[:4] == MAGIC
        assert sealed[4] == FORMAT_VERSION
        assert struct.unpack(">III", sealed[5:17]) == (
            FAST_KDF.time_cost, FAST_KDF.memory_cost, FAST_KDF.parallelism
        )
        assert len(sealed) == CIPHERTEXT_OFFSET + len(b"secret archive bytes") + TAG_SIZE

    def test_wrong_password(self, sealed):
        with pytest.raises(AuthenticationFailure):
            decrypt(EncryptedData.from_bytes(sealed), "wrong")

    @pytest.mark.parametrize("index", [SALT_OFFSET, NONCE_OFFSET, CIPHERTEXT_OFFSET, -1])
    def test_tampering_is_detected(self, sealed, index):
        tampered = EncryptedData.from_bytes(_flip(sealed, index))
        with pytest.raises(AuthenticationFailure):
            decrypt(tampered, "correct-horse")

    def test_header_is_authenticated(self, sealed):
        # time_cost 1 -> 2 still parses, but no longer matches the AAD
        tampered = bytearray(sealed)
        tampered[8] = 2
        envelope = EncryptedData.from_bytes(bytes(tampered))
        assert envelope.kdf.time_cost == 2
        with pytest.raises(AuthenticationFailure):
            decrypt(envelope, "correct-horse")

    def test_fresh_salt_and_nonce(self):
        first = encrypt(b"same", "pw", FAST_KDF)
        second = encrypt(b"same", "pw", FAST_KDF)
        assert first.salt != second.salt
        assert first.nonce != second.nonce
        assert first.to_bytes() != second.to_bytes()

    def test_empty_plaintext(self):
        sealed = encrypt(b"", "pw", FAST_KDF).to_bytes()
        assert decrypt(EncryptedData.from_bytes(sealed), "pw") == b""

    def test_large_plaintext(self):
        data = bytes(range(256)) * 8192
        sealed = encrypt(data, "pw", FAST_KDF).to_bytes()
        assert decrypt(EncryptedData.from_bytes(sealed), "pw") == data

    def test_unicode_password(self):
        sealed = encrypt(b"data", "pässwörd 🔐", FAST_KDF).to_bytes()
        envelope = EncryptedData.from_bytes(sealed)
        assert decrypt(envelope, "pässwörd 🔐") == b"data"
        with pytest.raises(AuthenticationFailure):
            decrypt(envelope, "passwort")

    def test_kdf_params_travel_with_envelope(self):
        params = KdfParams(time_cost=2, memory_cost=16, parallelism=2)
        sealed = encrypt(b"data", "pw", params).to_bytes()
        envelope = EncryptedData.from_bytes(sealed)
        assert envelope.kdf == params
        assert decrypt(envelope, "pw") == b"data"

    def test_derived_key_reuse(self):
        salt = b"\x01" * SALT_SIZE
        key = derive_key("pw", salt, FAST_KDF)
        assert len(key) == 32
        assert derive_key("pw", salt, FAST_KDF) == key
        envelope = encrypt_with_key(b"payload", key, salt, FAST_KDF)
        assert decrypt_with_key(envelope, key) == b"payload"

    def test_parts_share_the_ciphertext(self):
        envelope = encrypt(b"x" * 4096, "pw", FAST_KDF)
        prefix, body = envelope.parts()
        assert body is envelope.ciphertext
        assert len(prefix) == CIPHERTEXT_OFFSET
        assert prefix + body == envelope.to_bytes()


class TestEnvelopeParsing:
    """Malformed envelopes are rejected before any key derivation."""

    def test_truncated(self, sealed):
        with pytest.raises(ArchiveFormatError):
            EncryptedData.from_bytes(sealed[:CIPHERTEXT_OFFSET + TAG_SIZE - 1])

    def test_empty(self):
        with pytest.raises(ArchiveFormatError):
            EncryptedData.from_bytes(b"")

    def test_bad_magic(self, sealed):
        with pytest.raises(ArchiveFormatError):
            EncryptedData.from_bytes(b"ZZZZ" + sealed[4:])

    def test_unsupported_version(self, sealed):
        with pytest.raises(ArchiveFormatError):
            EncryptedData.from_bytes(sealed[:4] + bytes([FORMAT_VERSION + 1]) + sealed[5:])

    @pytest.mark.parametrize(
        "params",
        [
            (0, 8, 1),
            (65, 8, 1),
            (1, 4, 1),
            (1, 8, 0),
            (1, 2 * 1024 * 1024, 1),
        ],
    )
    def test_unreasonable_kdf_params(self, sealed, params):
        header = struct.pack(">4sBIII", MAGIC, FORMAT_VERSION, *params)
        with pytest.raises(ArchiveFormatError):
            EncryptedData.from_bytes(header + sealed[HEADER_SIZE:])
