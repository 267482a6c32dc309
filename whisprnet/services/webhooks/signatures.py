from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
from typing import Mapping


@dataclass(frozen=True)
class ParsedSignature:
    algorithm: str
    digest_hex: str


@dataclass(frozen=True)
class VerificationResult:
    # Carry a stable reason code so operators can diagnose failures without seeing secrets.
    ok: bool
    reason: str
    payload_sha256: str


def normalize_headers(headers: Mapping[str, str] | Mapping[str, object]) -> dict[str, str]:
    # Lower-case keys and strip values for strict parsing.
    normalized: dict[str, str] = {}
    for raw_key, raw_value in headers.items():
        key = str(raw_key).strip().lower()
        if not key:
            continue
        normalized[key] = str(raw_value).strip()
    return normalized


def parse_signature(header_value: str) -> ParsedSignature:
    # Parse `sha256=<hex>` strictly so malformed values are rejected deterministically.
    algorithm, separator, digest = header_value.strip().partition("=")
    if separator != "=":
        raise ValueError("invalid_signature_format")
    normalized_algorithm = algorithm.strip().lower()
    digest_hex = digest.strip().lower()
    if normalized_algorithm != "sha256" or len(digest_hex) != 64:
        raise ValueError("invalid_signature_format")
    try:
        int(digest_hex, 16)
    except ValueError as exc:
        raise ValueError("invalid_signature_format") from exc
    return ParsedSignature(algorithm=normalized_algorithm, digest_hex=digest_hex)


def compute_hmac_sha256_hex(secret: str, raw_body: bytes) -> str:
    # Sign the raw bytes only; re-serialized JSON would not match the provider's digest.
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def compute_signature(raw_body: bytes, secret: str) -> str:
    # Header value in the form providers send it.
    return f"sha256={compute_hmac_sha256_hex(secret, raw_body)}"


def payload_sha256(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def verify_signature(signature_header: str | None, raw_body: bytes, secret: str | None) -> VerificationResult:
    payload_digest = payload_sha256(raw_body)
    if not secret:
        return VerificationResult(ok=False, reason="secret_missing", payload_sha256=payload_digest)
    if not signature_header:
        return VerificationResult(ok=False, reason="missing_signature", payload_sha256=payload_digest)
    try:
        parsed = parse_signature(signature_header)
    except ValueError:
        return VerificationResult(ok=False, reason="invalid_signature_format", payload_sha256=payload_digest)
    expected_hex = compute_hmac_sha256_hex(secret, raw_body)
    # Constant-time comparison over bytes of equal length.
    if not hmac.compare_digest(expected_hex.encode("ascii"), parsed.digest_hex.encode("ascii")):
        return VerificationResult(ok=False, reason="signature_mismatch", payload_sha256=payload_digest)
    return VerificationResult(ok=True, reason="verified", payload_sha256=payload_digest)
