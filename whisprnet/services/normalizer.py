"""Provider payload -> canonical event mapping.

Everything here is a pure function of its arguments: no clock reads, no I/O, no
registry mutation at call time. The receiver passes the receipt time and digest in,
and event ids are derived from (provider, delivery id) so normalizing the same
delivery twice yields the same event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import math
from typing import Any, Callable
from uuid import NAMESPACE_URL, uuid5

from whisprnet.core.errors import MalformedPayloadError, UnsupportedEventTypeError
from whisprnet.domain.events import CanonicalEvent


@dataclass(frozen=True)
class NormalizedFields:
    event_type: str
    actor: str
    channel: str
    action: str | None = None
    occurred_at: datetime | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


Normalizer = Callable[[dict[str, Any]], NormalizedFields]


def event_id_for(provider: str, delivery_id: str) -> str:
    return uuid5(NAMESPACE_URL, f"whisprnet:{provider}:{delivery_id}").hex


def parse_timestamp(value: Any) -> datetime | None:
    # Accept ISO-8601 strings (with Z or offsets) and epoch seconds; always return UTC.
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Out-of-range or non-finite epochs fall back to the receipt time.
        try:
            seconds = float(value)
            if not math.isfinite(seconds):
                return None
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        return None


def _object(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise MalformedPayloadError(f"Payload is missing the '{key}' object")
    return value


def _string(container: dict[str, Any], key: str, *, context: str) -> str:
    value = container.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedPayloadError(f"Payload is missing '{context}.{key}'")
    return value


def _optional_string(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _text_length(container: dict[str, Any], key: str) -> int:
    value = container.get(key)
    if value is None:
        return 0
    if not isinstance(value, str):
        raise MalformedPayloadError(f"Payload field '{key}' must be a string")
    return len(value)


def _labels(issue: dict[str, Any]) -> list[str]:
    labels = issue.get("labels")
    if labels is None:
        return []
    if not isinstance(labels, list):
        raise MalformedPayloadError("Payload field 'issue.labels' must be a list")
    names = [label.get("name") for label in labels if isinstance(label, dict)]
    return [name for name in names if isinstance(name, str) and name]


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    return 0


def _github_common(payload: dict[str, Any]) -> tuple[str, str]:
    repository = _object(payload, "repository")
    sender = _object(payload, "sender")
    return (
        _string(sender, "login", context="sender"),
        _string(repository, "full_name", context="repository"),
    )


def _github_push(payload: dict[str, Any]) -> NormalizedFields:
    actor, channel = _github_common(payload)
    commits = payload.get("commits") or []
    if not isinstance(commits, list):
        raise MalformedPayloadError("Payload field 'commits' must be a list")
    head_commit = payload.get("head_commit") if isinstance(payload.get("head_commit"), dict) else {}
    occurred_at = parse_timestamp(head_commit.get("timestamp"))
    if occurred_at is None:
        repository = payload["repository"]
        occurred_at = parse_timestamp(repository.get("pushed_at"))
    return NormalizedFields(
        event_type="push",
        actor=actor,
        channel=channel,
        occurred_at=occurred_at,
        attributes={
            "ref": _optional_string(payload.get("ref")),
            "commit_count": len(commits) if commits else _int(payload.get("size")),
            "distinct_commit_count": sum(
                1 for commit in commits if isinstance(commit, dict) and commit.get("distinct", True)
            ),
            "forced": bool(payload.get("forced", False)),
            "created": bool(payload.get("created", False)),
            "deleted": bool(payload.get("deleted", False)),
        },
    )


def _github_pull_request(payload: dict[str, Any]) -> NormalizedFields:
    actor, channel = _github_common(payload)
    pull_request = _object(payload, "pull_request")
    return NormalizedFields(
        event_type="pull_request",
        action=_optional_string(payload.get("action")),
        actor=actor,
        channel=channel,
        occurred_at=parse_timestamp(pull_request.get("updated_at") or pull_request.get("created_at")),
        attributes={
            "number": _int(pull_request.get("number") or payload.get("number")),
            "additions": _int(pull_request.get("additions")),
            "deletions": _int(pull_request.get("deletions")),
            "changed_files": _int(pull_request.get("changed_files")),
            "merged": bool(pull_request.get("merged", False)),
            "draft": bool(pull_request.get("draft", False)),
        },
    )


def _github_review(payload: dict[str, Any]) -> NormalizedFields:
    actor, channel = _github_common(payload)
    review = _object(payload, "review")
    pull_request = _object(payload, "pull_request")
    return NormalizedFields(
        event_type="review",
        action=_optional_string(payload.get("action")),
        actor=actor,
        channel=channel,
        occurred_at=parse_timestamp(review.get("submitted_at")),
        attributes={
            "number": _int(pull_request.get("number")),
            "state": str(review.get("state") or "").lower() or None,
        },
    )


def _github_review_comment(payload: dict[str, Any]) -> NormalizedFields:
    actor, channel = _github_common(payload)
    comment = _object(payload, "comment")
    pull_request = _object(payload, "pull_request")
    return NormalizedFields(
        event_type="comment",
        action=_optional_string(payload.get("action")),
        actor=actor,
        channel=channel,
        occurred_at=parse_timestamp(comment.get("created_at")),
        attributes={
            "number": _int(pull_request.get("number")),
            "context": "review",
            "body_length": _text_length(comment, "body"),
        },
    )


def _github_issue(payload: dict[str, Any]) -> NormalizedFields:
    actor, channel = _github_common(payload)
    issue = _object(payload, "issue")
    return NormalizedFields(
        event_type="issue",
        action=_optional_string(payload.get("action")),
        actor=actor,
        channel=channel,
        occurred_at=parse_timestamp(issue.get("updated_at") or issue.get("created_at")),
        attributes={
            "number": _int(issue.get("number")),
            "labels": _labels(issue),
        },
    )


def _github_issue_comment(payload: dict[str, Any]) -> NormalizedFields:
    actor, channel = _github_common(payload)
    comment = _object(payload, "comment")
    issue = _object(payload, "issue")
    return NormalizedFields(
        event_type="comment",
        action=_optional_string(payload.get("action")),
        actor=actor,
        channel=channel,
        occurred_at=parse_timestamp(comment.get("created_at")),
        attributes={
            "number": _int(issue.get("number")),
            "context": "pull_request" if "pull_request" in issue else "issue",
            "body_length": _text_length(comment, "body"),
        },
    )


NORMALIZERS: dict[str, dict[str, Normalizer]] = {
    "github": {
        "push": _github_push,
        "pull_request": _github_pull_request,
        "pull_request_review": _github_review,
        "pull_request_review_comment": _github_review_comment,
        "issues": _github_issue,
        "issue_comment": _github_issue_comment,
    },
}


def is_supported(provider: str, event_type: str) -> bool:
    return event_type in NORMALIZERS.get(provider, {})


def normalize(
    provider: str,
    event_type: str,
    payload: dict[str, Any],
    *,
    organization_id: str,
    delivery_id: str,
    payload_sha256: str,
    received_at: datetime,
) -> CanonicalEvent:
    normalizer = NORMALIZERS.get(provider, {}).get(event_type)
    if normalizer is None:
        raise UnsupportedEventTypeError(f"{provider}:{event_type} is not supported")
    if not isinstance(payload, dict):
        raise MalformedPayloadError("Payload must be a JSON object")
    fields = normalizer(payload)
    return CanonicalEvent(
        id=event_id_for(provider, delivery_id),
        organization_id=organization_id,
        provider=provider,
        event_type=fields.event_type,
        action=fields.action,
        actor=fields.actor,
        channel=fields.channel,
        occurred_at=fields.occurred_at or received_at,
        received_at=received_at,
        delivery_id=delivery_id,
        payload_sha256=payload_sha256,
        attributes=fields.attributes,
    )
