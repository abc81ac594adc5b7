"""Envelope encryption for instance secrets.

A root key-encryption key (KEK) wraps a per-instance data-encryption key
(DEK); the DEK encrypts individual secret fields before they are stored.

Wrapped DEK layout:

    [0x02 version][12-byte nonce][ciphertext || 16-byte GCM tag]

Encrypted field layout (base64 encoded when stored):

    [0x01 version][12-byte nonce][ciphertext || 16-byte GCM tag]

The wrapping key is derived from the KEK with HKDF-SHA256 so the raw KEK is
never used directly as an AES key.
"""

import base64
import binascii
import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from tenanthub.core.errors import CryptographicError

logger = logging.getLogger(__name__)

WRAPPED_VERSION = 0x02
FIELD_VERSION = 0x01
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
HKDF_INFO = b"tenanthub-dek-wrapping"

# version + nonce + tag + at least one byte of key material
MIN_WRAPPED_SIZE = 1 + NONCE_SIZE + TAG_SIZE + 1


def _derive_wrapping_key(kek: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=HKDF_INFO,
    ).derive(kek)


def generate_dek() -> bytes:
    """Return a fresh random 256-bit data key."""
    return AESGCM.generate_key(bit_length=256)


def wrap_dek(dek: bytes, kek: bytes) -> bytes:
    """Encrypt a DEK under the KEK.

    Every call uses a new random nonce, so wrapping the same DEK twice
    produces different blobs.
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(_derive_wrapping_key(kek)).encrypt(nonce, dek, None)
    return bytes([WRAPPED_VERSION]) + nonce + sealed


def unwrap_dek(wrapped: bytes, kek: bytes) -> bytes:
    """Decrypt a wrapped DEK.

    Raises:
        CryptographicError: On a wrong version byte, a truncated blob,
            a wrong KEK or any tampering
    """
    if len(wrapped) > 0 and wrapped[0] != WRAPPED_VERSION:
        raise CryptographicError(f"unexpected version byte: 0x{wrapped[0]:02X}")
    if len(wrapped) < MIN_WRAPPED_SIZE:
        raise CryptographicError("wrapped data too short")

    nonce = wrapped[1 : 1 + NONCE_SIZE]
    sealed = wrapped[1 + NONCE_SIZE :]
    try:
        return AESGCM(_derive_wrapping_key(kek)).decrypt(nonce, sealed, None)
    except InvalidTag as e:
        raise CryptographicError("wrapped key failed authentication") from e


def is_wrapped(data: bytes | None) -> bool:
    """Structural check: version byte and minimum length. Never raises."""
    if not data:
        return False
    return data[0] == WRAPPED_VERSION and len(data) >= MIN_WRAPPED_SIZE


def is_wrapped_base64(text: str | None) -> bool:
    """Like is_wrapped, for a stored base64 value. Malformed input is False."""
    if not text:
        return False
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return False
    return is_wrapped(data)


def encrypt_field(plaintext: str, dek: bytes) -> str:
    """Encrypt one secret field with the instance DEK; returns base64 text."""
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(dek).encrypt(nonce, plaintext.encode(), None)
    return base64.b64encode(bytes([FIELD_VERSION]) + nonce + sealed).decode("ascii")


def decrypt_field(token: str, dek: bytes) -> str:
    try:
        data = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CryptographicError("encrypted field is not valid base64") from e
    if len(data) < 1 + NONCE_SIZE + TAG_SIZE or data[0] != FIELD_VERSION:
        raise CryptographicError("encrypted field has an unexpected format")
    try:
        plaintext = AESGCM(dek).decrypt(data[1 : 1 + NONCE_SIZE], data[1 + NONCE_SIZE :], None)
    except InvalidTag as e:
        raise CryptographicError("encrypted field failed authentication") from e
    return plaintext.decode()


def _decode_key(raw: bytes, source: str) -> bytes:
    text = raw.strip()
    try:
        decoded = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == KEY_SIZE:
        return decoded
    if len(raw) == KEY_SIZE:
        return raw
    raise CryptographicError(f"KEK from {source} must be {KEY_SIZE} bytes (raw or base64)")


def load_kek(kek_file: str | None, kek: str | None) -> bytes:
    """Load the KEK from a file path, else from an inline base64 value.

    Raises:
        CryptographicError: If no source is configured or the key is malformed
    """
    if kek_file and Path(kek_file).is_file():
        key = _decode_key(Path(kek_file).read_bytes(), kek_file)
        logger.info("KEK loaded from file", extra={"kek_file": kek_file})
        return key
    if kek:
        key = _decode_key(kek.encode(), "configuration")
        logger.info("KEK loaded from configuration")
        return key
    raise CryptographicError("No KEK configured (set ENCRYPTION_KEK_FILE or ENCRYPTION_KEK)")


class KeyRing:
    """Holds the KEK and performs envelope operations for instance secrets."""

    def __init__(self, kek: bytes) -> None:
        if len(kek) != KEY_SIZE:
            raise CryptographicError(f"KEK must be {KEY_SIZE} bytes")
        self._kek = kek

    @classmethod
    def from_config(cls, kek_file: str | None, kek: str | None) -> "KeyRing":
        return cls(load_kek(kek_file, kek))

    def new_wrapped_dek(self) -> tuple[bytes, str]:
        """Create a DEK; returns (dek, base64 wrapped form for storage)."""
        dek = generate_dek()
        return dek, base64.b64encode(wrap_dek(dek, self._kek)).decode("ascii")

    def unwrap(self, wrapped_b64: str) -> bytes:
        if not is_wrapped_base64(wrapped_b64):
            raise CryptographicError("stored DEK is not a wrapped key")
        return unwrap_dek(base64.b64decode(wrapped_b64), self._kek)

    def decrypt(self, wrapped_dek_b64: str, token: str) -> str:
        """Decrypt a stored field given its instance's wrapped DEK."""
        return decrypt_field(token, self.unwrap(wrapped_dek_b64))
