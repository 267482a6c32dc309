from __future__ import annotations

import hashlib
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from whisprnet.core.config import get_settings
from whisprnet.services.crypto.utils import (
    canonical_aad,
    ciphertext_checksum,
    envelope_field,
    load_aes_key,
    read_envelope_field,
)


_ENVELOPE_VERSION = 1


class CredentialDecryptError(ValueError):
    """Stored credential envelope could not be decrypted."""


def _resolve_key() -> bytes:
    # Fall back to a key derived from the JWT secret so dev setups work without extra config.
    settings = get_settings()
    if settings.credentials_encryption_key:
        return load_aes_key(settings.credentials_encryption_key)
    return hashlib.sha256(f"credentials:{settings.jwt_secret}".encode("utf-8")).digest()


def _aad(organization_id: str, provider: str, purpose: str) -> bytes:
    return canonical_aad(
        {
            "organization_id": organization_id,
            "provider": provider,
            "purpose": purpose,
            "version": _ENVELOPE_VERSION,
        }
    )


def encrypt_json(
    value: dict[str, Any],
    *,
    organization_id: str,
    provider: str,
    purpose: str = "credentials",
) -> dict[str, Any]:
    # Bind the ciphertext to its owner so rows cannot be swapped between organizations.
    nonce = os.urandom(12)
    cipher_text = AESGCM(_resolve_key()).encrypt(
        nonce,
        json.dumps(value, sort_keys=True).encode("utf-8"),
        _aad(organization_id, provider, purpose),
    )
    return {
        "v": _ENVELOPE_VERSION,
        "nonce": envelope_field(nonce),
        "cipher_text": envelope_field(cipher_text),
        "checksum_sha256": ciphertext_checksum(cipher_text),
    }


def decrypt_json(
    envelope: dict[str, Any],
    *,
    organization_id: str,
    provider: str,
    purpose: str = "credentials",
) -> dict[str, Any]:
    try:
        nonce = read_envelope_field(envelope, "nonce")
        cipher_text = read_envelope_field(envelope, "cipher_text")
    except (KeyError, TypeError, ValueError) as exc:
        raise CredentialDecryptError("credential envelope is malformed") from exc
    if ciphertext_checksum(cipher_text) != envelope.get("checksum_sha256"):
        raise CredentialDecryptError("checksum mismatch")
    try:
        plaintext = AESGCM(_resolve_key()).decrypt(
            nonce,
            cipher_text,
            _aad(organization_id, provider, purpose),
        )
    except InvalidTag as exc:
        raise CredentialDecryptError("credential envelope failed authentication") from exc
    return json.loads(plaintext.decode("utf-8"))


def encrypt_secret(secret: str, *, organization_id: str, provider: str) -> dict[str, Any]:
    return encrypt_json(
        {"secret": secret},
        organization_id=organization_id,
        provider=provider,
        purpose="webhook_secret",
    )


def decrypt_secret(envelope: dict[str, Any], *, organization_id: str, provider: str) -> str:
    return str(
        decrypt_json(
            envelope,
            organization_id=organization_id,
            provider=provider,
            purpose="webhook_secret",
        )["secret"]
    )
