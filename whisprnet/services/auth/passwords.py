from __future__ import annotations

import asyncio
from functools import lru_cache

import bcrypt

from whisprnet.core.config import get_settings
from whisprnet.core.errors import MalformedPayloadError


# bcrypt only looks at the first 72 bytes; longer inputs are rejected instead of truncated.
_BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    encoded = password.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise MalformedPayloadError("Password must be at most 72 bytes")
    return encoded


def validate_password(password: str) -> None:
    settings = get_settings()
    if len(password) < settings.password_min_length:
        raise MalformedPayloadError(
            f"Password must be at least {settings.password_min_length} characters"
        )
    _encode(password)


def hash_password_sync(password: str) -> str:
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def check_password_sync(password: str, hashed: str) -> bool:
    try:
        encoded = _encode(password)
    except MalformedPayloadError:
        return False
    return bcrypt.checkpw(encoded, hashed.encode("utf-8"))


@lru_cache
def _dummy_hash() -> str:
    # Compared against when the account does not exist so response timing stays flat.
    return hash_password_sync("whisprnet-dummy-password")


async def hash_password(password: str) -> str:
    # bcrypt is CPU bound; keep it off the event loop.
    return await asyncio.to_thread(hash_password_sync, password)


async def verify_password(password: str, hashed: str | None) -> bool:
    if hashed is None:
        await asyncio.to_thread(check_password_sync, password, _dummy_hash())
        return False
    return await asyncio.to_thread(check_password_sync, password, hashed)
