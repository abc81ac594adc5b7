"""Tests for envelope encryption of instance secrets."""

import base64
import os
from pathlib import Path

import pytest

from tenanthub.core.envelope import (
    KeyRing,
    decrypt_field,
    encrypt_field,
    generate_dek,
    is_wrapped,
    is_wrapped_base64,
    load_kek,
    unwrap_dek,
    wrap_dek,
)
from tenanthub.core.errors import CryptographicError


# version + nonce + 32-byte DEK + tag
WRAPPED_LENGTH = 1 + 12 + 32 + 16


@pytest.fixture
def kek() -> bytes:
    return os.urandom(32)


class TestWrapDek:
    """DEK wrapping under the KEK."""

    def test_unwrap_returns_original(self, kek: bytes) -> None:
        dek = generate_dek()
        assert unwrap_dek(wrap_dek(dek, kek), kek) == dek

    def test_layout(self, kek: bytes) -> None:
        """Version byte 0x02, 12-byte nonce, 32-byte key, 16-byte tag."""
        wrapped = wrap_dek(generate_dek(), kek)
        assert wrapped[0] == 0x02
        assert len(wrapped) == WRAPPED_LENGTH

    def test_fresh_nonce_each_call(self, kek: bytes) -> None:
        dek = generate_dek()
        assert wrap_dek(dek, kek) != wrap_dek(dek, kek)

    def test_wrong_kek_fails(self, kek: bytes) -> None:
        wrapped = wrap_dek(generate_dek(), kek)
        with pytest.raises(CryptographicError):
            unwrap_dek(wrapped, os.urandom(32))

    def test_tampered_blob_fails(self, kek: bytes) -> None:
        wrapped = bytearray(wrap_dek(generate_dek(), kek))
        wrapped[-1] ^= 0x01
        with pytest.raises(CryptographicError):
            unwrap_dek(bytes(wrapped), kek)

    @pytest.mark.parametrize("position", range(WRAPPED_LENGTH))
    def test_flip_at_any_position_fails(self, kek: bytes, position: int) -> None:
        """Version byte, nonce, ciphertext and tag are all covered."""
        wrapped = bytearray(wrap_dek(generate_dek(), kek))
        wrapped[position] ^= 0x80
        with pytest.raises(CryptographicError):
            unwrap_dek(bytes(wrapped), kek)

    def test_truncated_tag_fails(self, kek: bytes) -> None:
        wrapped = wrap_dek(generate_dek(), kek)
        with pytest.raises(CryptographicError):
            unwrap_dek(wrapped[:-1], kek)

    def test_wrong_version_byte(self, kek: bytes) -> None:
        wrapped = b"\x01" + wrap_dek(generate_dek(), kek)[1:]
        with pytest.raises(CryptographicError, match="unexpected version byte"):
            unwrap_dek(wrapped, kek)

    def test_too_short(self, kek: bytes) -> None:
        with pytest.raises(CryptographicError, match="wrapped data too short"):
            unwrap_dek(b"\x02" + b"\x00" * 20, kek)


class TestIsWrapped:
    """Structural checks never raise."""

    def test_detects_wrapped(self, kek: bytes) -> None:
        wrapped = wrap_dek(generate_dek(), kek)
        assert is_wrapped(wrapped)
        assert is_wrapped_base64(base64.b64encode(wrapped).decode())

    @pytest.mark.parametrize("data", [None, b"", b"\x02", b"\x01" + b"\x00" * 60])
    def test_rejects_non_wrapped_bytes(self, data: bytes | None) -> None:
        assert not is_wrapped(data)

    @pytest.mark.parametrize("text", [None, "", "not base64!!", base64.b64encode(b"plain").decode()])
    def test_rejects_non_wrapped_text(self, text: str | None) -> None:
        assert not is_wrapped_base64(text)


class TestFieldEncryption:
    """Per-field encryption with the instance DEK."""

    def test_decrypts_to_plaintext(self) -> None:
        dek = generate_dek()
        token = encrypt_field("s3cret-password", dek)
        assert token != "s3cret-password"
        assert decrypt_field(token, dek) == "s3cret-password"

    def test_wrong_dek_fails(self) -> None:
        token = encrypt_field("value", generate_dek())
        with pytest.raises(CryptographicError):
            decrypt_field(token, generate_dek())

    def test_flip_at_any_position_fails(self) -> None:
        dek = generate_dek()
        data = base64.b64decode(encrypt_field("s3cret-password", dek))

        for position in range(len(data)):
            tampered = bytearray(data)
            tampered[position] ^= 0x80
            token = base64.b64encode(bytes(tampered)).decode()
            with pytest.raises(CryptographicError):
                decrypt_field(token, dek)

    def test_garbage_token_fails(self) -> None:
        with pytest.raises(CryptographicError):
            decrypt_field("%%%", generate_dek())


class TestLoadKek:
    """KEK sources: file first, then inline base64."""

    def test_inline_base64(self, kek: bytes) -> None:
        assert load_kek(None, base64.b64encode(kek).decode()) == kek

    def test_raw_file(self, kek: bytes, tmp_path: Path) -> None:
        path = tmp_path / "kek.bin"
        path.write_bytes(kek)
        assert load_kek(str(path), None) == kek

    def test_base64_file_wins_over_inline(self, kek: bytes, tmp_path: Path) -> None:
        path = tmp_path / "kek.txt"
        path.write_text(base64.b64encode(kek).decode() + "\n")
        other = base64.b64encode(os.urandom(32)).decode()
        assert load_kek(str(path), other) == kek

    def test_wrong_length_rejected(self) -> None:
        with pytest.raises(CryptographicError):
            load_kek(None, base64.b64encode(b"short").decode())

    def test_nothing_configured(self) -> None:
        with pytest.raises(CryptographicError):
            load_kek(None, None)


class TestKeyRing:
    """KeyRing bundles the KEK for injection."""

    def test_new_wrapped_dek_unwraps(self, kek: bytes) -> None:
        ring = KeyRing(kek)
        dek, wrapped = ring.new_wrapped_dek()
        assert ring.unwrap(wrapped) == dek

    def test_decrypt_field_with_wrapped_dek(self, kek: bytes) -> None:
        ring = KeyRing(kek)
        dek, wrapped = ring.new_wrapped_dek()
        token = encrypt_field("hunter2", dek)
        assert ring.decrypt(wrapped, token) == "hunter2"

    def test_rejects_bad_kek_length(self) -> None:
        with pytest.raises(CryptographicError):
            KeyRing(b"x" * 16)

    def test_unwrap_rejects_non_wrapped(self, kek: bytes) -> None:
        with pytest.raises(CryptographicError):
            KeyRing(kek).unwrap(base64.b64encode(b"nope").decode())
