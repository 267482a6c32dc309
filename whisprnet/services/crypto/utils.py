from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any


AES_KEY_LENGTHS: tuple[int, ...] = (16, 24, 32)


def load_aes_key(value: str) -> bytes:
    """Decode a configured AES key given as hex or base64 and check its length."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("encryption key is empty")
    try:
        key = bytes.fromhex(stripped)
    except ValueError:
        try:
            key = base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("encryption key must be base64 or hex") from exc
    if len(key) not in AES_KEY_LENGTHS:
        raise ValueError("encryption key must decode to 16, 24 or 32 bytes")
    return key


def envelope_field(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def read_envelope_field(envelope: dict[str, Any], name: str) -> bytes:
    # KeyError, TypeError and binascii.Error all mean a malformed envelope.
    return base64.b64decode(envelope[name].encode("ascii"), validate=True)


def ciphertext_checksum(cipher_text: bytes) -> str:
    return hashlib.sha256(cipher_text).hexdigest()


def canonical_aad(fields: dict[str, Any]) -> bytes:
    # Associated data must serialize identically on encrypt and decrypt.
    return json.dumps(fields, separators=(",", ":"), sort_keys=True).encode("utf-8")
