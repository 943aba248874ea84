"""Password-based authenticated encryption for backup files.

Backups are encrypted with AES-256-GCM under a key derived from the user's
password with Argon2id. Every call to :func:`encrypt` draws a fresh salt and
nonce, so encrypting the same archive twice never yields the same bytes.

Serialized envelope (big-endian)::

    magic       : 4 bytes   -> b"QNBK"
    version     : 1 byte    -> 0x01
    time_cost   : u32
    memory_cost : u32  (KiB)
    parallelism : u32
    salt        : 16 bytes
    nonce       : 12 bytes
    ciphertext  : remaining bytes (AES-256-GCM, 16-byte tag appended)

The header up to and including the KDF parameters is bound as associated
data, so altering any byte of the file makes decryption fail.
"""
import os
import struct
from dataclasses import dataclass
from typing import Tuple

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from quicknotes.exceptions import (
    ArchiveFormatError,
    AuthenticationFailure,
    EncryptionError,
)

MAGIC = b"QNBK"
FORMAT_VERSION = 1
SALT_SIZE = 16  # 128 bits
NONCE_SIZE = 12  # 96 bits for GCM
KEY_SIZE = 32  # AES-256
TAG_SIZE = 16

_HEADER = struct.Struct(">4sBIII")
_PREFIX_SIZE = _HEADER.size + SALT_SIZE + NONCE_SIZE

# Upper bounds accepted when reading an envelope. A corrupted header must not
# be able to make key derivation allocate gigabytes or spin for minutes.
_MAX_TIME_COST = 64
_MAX_MEMORY_COST = 1024 * 1024  # 1 GiB
_MAX_PARALLELISM = 64


@dataclass(frozen=True)
class KdfParams:
    """Argon2id cost parameters."""

    time_cost: int = 2
    memory_cost: int = 19456  # KiB
    parallelism: int = 1


@dataclass
class EncryptedData:
    """Encrypted data container."""

    salt: bytes
    nonce: bytes
    ciphertext: bytes
    kdf: KdfParams = KdfParams()

    def header(self) -> bytes:
        return _HEADER.pack(
            MAGIC,
            FORMAT_VERSION,
            self.kdf.time_cost,
            self.kdf.memory_cost,
            self.kdf.parallelism,
        )

    def parts(self) -> Tuple[bytes, bytes]:
        """The envelope as (header, salt and nonce) and ciphertext.

        Written one after the other, so the ciphertext is never copied.
        """
        return self.header() + self.salt + self.nonce, self.ciphertext

    def to_bytes(self) -> bytes:
        """Serialize to the on-disk envelope format."""
        return b"".join(self.parts())

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedData":
        """Parse a serialized envelope.

        Raises:
            ArchiveFormatError: If the data is not a QuickNotes envelope.
        """
        if len(data) < _PREFIX_SIZE + TAG_SIZE:
            raise ArchiveFormatError("Backup file is truncated")

        magic, version, time_cost, memory_cost, parallelism = _HEADER.unpack_from(data)
        if magic != MAGIC:
            raise ArchiveFormatError("Not a QuickNotes backup file")
        if version != FORMAT_VERSION:
            raise ArchiveFormatError(f"Unsupported backup format version {version}")
        if not (
            1 <= time_cost <= _MAX_TIME_COST
            and 1 <= parallelism <= _MAX_PARALLELISM
            and 8 * parallelism <= memory_cost <= _MAX_MEMORY_COST
        ):
            raise ArchiveFormatError("Backup file has invalid key-derivation parameters")

        offset = _HEADER.size
        salt = data[offset:offset + SALT_SIZE]
        offset += SALT_SIZE
        nonce = data[offset:offset + NONCE_SIZE]
        offset += NONCE_SIZE
        return cls(
            salt=salt,
            nonce=nonce,
            ciphertext=data[offset:],
            kdf=KdfParams(time_cost, memory_cost, parallelism),
        )


def derive_key(password: str, salt: bytes, params: KdfParams = KdfParams()) -> bytes:
    """Derive a 256-bit key from a password using Argon2id.

    This is deliberately slow and memory-hard; callers should derive once per
    operation and pass the key along rather than calling this repeatedly.
    """
    try:
        return hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=salt,
            time_cost=params.time_cost,
            memory_cost=params.memory_cost,
            parallelism=params.parallelism,
            hash_len=KEY_SIZE,
            type=Type.ID,
        )
    except HashingError as e:
        raise EncryptionError("Key derivation failed", original_error=e) from e


def encrypt_with_key(
    plaintext: bytes, key: bytes, salt: bytes, params: KdfParams
) -> EncryptedData:
    """Encrypt with an already-derived key; a fresh nonce is drawn here."""
    nonce = os.urandom(NONCE_SIZE)
    envelope = EncryptedData(salt=salt, nonce=nonce, ciphertext=b"", kdf=params)
    envelope.ciphertext = AESGCM(key).encrypt(nonce, plaintext, envelope.header())
    return envelope


def decrypt_with_key(envelope: EncryptedData, key: bytes) -> bytes:
    """Decrypt with an already-derived key.

    Raises:
        AuthenticationFailure: If the key is wrong or any byte was altered.
    """
    if len(envelope.nonce) != NONCE_SIZE or len(envelope.salt) != SALT_SIZE:
        raise AuthenticationFailure()
    try:
        return AESGCM(key).decrypt(envelope.nonce, envelope.ciphertext, envelope.header())
    except InvalidTag:
        raise AuthenticationFailure() from None


def encrypt(plaintext: bytes, password: str, params: KdfParams = KdfParams()) -> EncryptedData:
    """Encrypt data with AES-256-GCM under a password-derived key."""
    salt = os.urandom(SALT_SIZE)
    key = derive_key(password, salt, params)
    return encrypt_with_key(plaintext, key, salt, params)


def decrypt(envelope: EncryptedData, password: str) -> bytes:
    """Decrypt an envelope produced by :func:`encrypt`.

    Raises:
        AuthenticationFailure: Wrong password or tampered envelope.
    """
    if len(envelope.salt) != SALT_SIZE:
        raise AuthenticationFailure()
    key = derive_key(password, envelope.salt, envelope.kdf)
    return decrypt_with_key(envelope, key)
