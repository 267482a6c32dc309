from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

import httpx

from whisprnet.core.config import get_settings
from whisprnet.core.errors import MalformedPayloadError, TransientError
from whisprnet.services.resilience import retry_async
from whisprnet.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

PROVIDERS: tuple[str, ...] = ("github", "slack")
# Credential fields each provider requires before a config can be saved.
REQUIRED_CREDENTIALS: dict[str, tuple[str, ...]] = {
    "github": ("access_token",),
    "slack": ("bot_token", "channel"),
}
OPTIONAL_CREDENTIALS: dict[str, tuple[str, ...]] = {
    "github": ("client_id", "client_secret", "app_id", "private_key"),
    "slack": (),
}
DEFAULT_GITHUB_EVENTS: list[str] = ["push", "pull_request", "issues", "issue_comment"]


@dataclass(frozen=True)
class VerificationOutcome:
    # Result of a live credential check against the provider.
    ok: bool
    error: str | None = None
    external_account: str | None = None
    external_account_id: str | None = None


def validate_credentials(provider: str, credentials: dict[str, Any], *, partial: bool = False) -> dict[str, str]:
    # Keep only known credential keys so arbitrary blobs never get encrypted and stored.
    if provider not in PROVIDERS:
        raise MalformedPayloadError(f"Unsupported provider: {provider}")
    allowed = set(REQUIRED_CREDENTIALS[provider]) | set(OPTIONAL_CREDENTIALS[provider])
    unknown = sorted(set(credentials) - allowed)
    if unknown:
        raise MalformedPayloadError(f"Unknown credential fields: {', '.join(unknown)}")
    cleaned = {key: str(value) for key, value in credentials.items() if value not in (None, "")}
    if not partial:
        missing = [key for key in REQUIRED_CREDENTIALS[provider] if key not in cleaned]
        if missing:
            raise MalformedPayloadError(f"Missing credential fields: {', '.join(missing)}")
    return cleaned


def _timeout_s() -> float:
    return get_settings().ext_call_timeout_ms / 1000.0


async def _request(
    method: str,
    url: str,
    *,
    integration: str,
    headers: dict[str, str],
    json_body: dict[str, Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.Response:
    # One retried outbound call; 5xx responses raise so retry_async can see them.
    start = time.monotonic()

    async def _call() -> httpx.Response:
        async with httpx.AsyncClient(timeout=_timeout_s(), transport=transport) as client:
            response = await client.request(method, url, headers=headers, json=json_body)
        if response.status_code >= 500 or response.status_code == 429:
            response.raise_for_status()
        return response

    try:
        response = await retry_async(_call)
    except (httpx.HTTPError, TimeoutError) as exc:
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        logger.warning("provider_call_failed integration=%s error=%s", integration, exc.__class__.__name__)
        raise TransientError(f"{integration} is unavailable; retry later") from exc
    record_external_call(
        integration=integration,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=response.status_code < 400,
    )
    return response


async def verify_github(
    credentials: dict[str, str], *, transport: httpx.AsyncBaseTransport | None = None
) -> VerificationOutcome:
    settings = get_settings()
    response = await _request(
        "GET",
        f"{settings.github_api_base_url.rstrip('/')}/user",
        integration="github.verify",
        headers={
            "Authorization": f"Bearer {credentials['access_token']}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        },
        transport=transport,
    )
    if response.status_code in (401, 403):
        return VerificationOutcome(ok=False, error="GitHub rejected the access token")
    if response.status_code >= 400:
        return VerificationOutcome(ok=False, error=f"GitHub returned HTTP {response.status_code}")
    body = response.json()
    return VerificationOutcome(
        ok=True,
        external_account=body.get("login"),
        external_account_id=str(body["id"]) if body.get("id") is not None else None,
    )


async def verify_slack(
    credentials: dict[str, str], *, transport: httpx.AsyncBaseTransport | None = None
) -> VerificationOutcome:
    settings = get_settings()
    response = await _request(
        "POST",
        f"{settings.slack_api_base_url.rstrip('/')}/auth.test",
        integration="slack.verify",
        headers={"Authorization": f"Bearer {credentials['bot_token']}"},
        transport=transport,
    )
    body = response.json() if response.status_code < 400 else {}
    # Slack reports auth failures as HTTP 200 with ok=false.
    if not body.get("ok"):
        return VerificationOutcome(ok=False, error=str(body.get("error") or "Slack rejected the bot token"))
    return VerificationOutcome(
        ok=True,
        external_account=body.get("team"),
        external_account_id=body.get("team_id"),
    )


VERIFIERS = {
    "github": verify_github,
    "slack": verify_slack,
}


async def post_slack_message(
    credentials: dict[str, str],
    *,
    text: str,
    blocks: list[dict[str, Any]] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    settings = get_settings()
    payload: dict[str, Any] = {"channel": credentials["channel"], "text": text}
    if blocks:
        payload["blocks"] = blocks
    response = await _request(
        "POST",
        f"{settings.slack_api_base_url.rstrip('/')}/chat.postMessage",
        integration="slack.post",
        headers={"Authorization": f"Bearer {credentials['bot_token']}"},
        json_body=payload,
        transport=transport,
    )
    if response.status_code >= 400:
        return False
    return bool(response.json().get("ok"))
