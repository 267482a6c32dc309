from __future__ import annotations

from datetime import datetime, timezone

import pytest

from whisprnet.core.errors import MalformedPayloadError, UnsupportedEventTypeError
from whisprnet.services.normalizer import event_id_for, is_supported, normalize, parse_timestamp
from whisprnet.tests.utils.webhooks import pull_request_payload, push_payload


RECEIVED_AT = datetime(2026, 3, 4, 23, 11, tzinfo=timezone.utc)


def _normalize(event_type: str, payload: dict, *, delivery_id: str = "d-1"):
    return normalize(
        "github",
        event_type,
        payload,
        organization_id="org-1",
        delivery_id=delivery_id,
        payload_sha256="0" * 64,
        received_at=RECEIVED_AT,
    )


def test_push_is_normalized() -> None:
    event = _normalize("push", push_payload(commits=5))
    assert event.provider == "github"
    assert event.event_type == "push"
    assert event.actor == "octocat"
    assert event.channel == "acme/api"
    assert event.organization_id == "org-1"
    assert event.occurred_at == datetime(2026, 3, 4, 23, 10, tzinfo=timezone.utc)
    assert event.received_at == RECEIVED_AT
    assert event.attributes["commit_count"] == 5
    assert event.attributes["forced"] is False
    assert event.attributes["ref"] == "refs/heads/main"


def test_normalize_is_deterministic_per_delivery() -> None:
    # The same delivery always maps to the same event id; another delivery does not.
    first = _normalize("push", push_payload(), delivery_id="d-42")
    second = _normalize("push", push_payload(), delivery_id="d-42")
    other = _normalize("push", push_payload(), delivery_id="d-43")
    assert first == second
    assert first.id == event_id_for("github", "d-42")
    assert other.id != first.id


def test_pull_request_fields() -> None:
    event = _normalize("pull_request", pull_request_payload(number=9, additions=700, deletions=200))
    assert event.event_type == "pull_request"
    assert event.action == "opened"
    assert event.attributes["number"] == 9
    assert event.attributes["additions"] == 700
    assert event.attributes["deletions"] == 200


def test_review_comment_maps_to_comment() -> None:
    payload = {
        "action": "created",
        "comment": {"body": "nit", "created_at": "2026-03-04T10:00:00Z"},
        "pull_request": {"number": 3},
        "repository": {"full_name": "acme/api"},
        "sender": {"login": "hubot"},
    }
    event = _normalize("pull_request_review_comment", payload)
    assert event.event_type == "comment"
    assert event.attributes == {"number": 3, "context": "review", "body_length": 3}


def test_occurred_at_falls_back_to_received_at() -> None:
    payload = push_payload()
    payload["head_commit"] = None
    payload["repository"].pop("pushed_at")
    event = _normalize("push", payload)
    assert event.occurred_at == RECEIVED_AT


@pytest.mark.parametrize(
    "mutate",
    [
        lambda payload: payload.pop("sender"),
        lambda payload: payload.pop("repository"),
        lambda payload: payload["sender"].pop("login"),
        lambda payload: payload.__setitem__("commits", "not-a-list"),
    ],
)
def test_malformed_push_is_rejected(mutate) -> None:
    payload = push_payload()
    mutate(payload)
    with pytest.raises(MalformedPayloadError):
        _normalize("push", payload)


def test_unsupported_event_type() -> None:
    assert is_supported("github", "push") is True
    assert is_supported("github", "deployment_status") is False
    with pytest.raises(UnsupportedEventTypeError):
        _normalize("deployment_status", {})


def test_parse_timestamp_variants() -> None:
    expected = datetime(2026, 3, 4, 23, 10, tzinfo=timezone.utc)
    assert parse_timestamp("2026-03-04T23:10:00Z") == expected
    assert parse_timestamp("2026-03-05T00:10:00+01:00") == expected
    assert parse_timestamp(int(expected.timestamp())) == expected
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None
    assert parse_timestamp(True) is None


@pytest.mark.parametrize("value", [1e20, -1e20, float("nan"), float("inf"), 10**400, "99999-01-01T00:00:00Z"])
def test_unrepresentable_timestamps_parse_to_none(value) -> None:
    assert parse_timestamp(value) is None


def test_overflowing_commit_timestamp_falls_back_to_received_at() -> None:
    payload = push_payload()
    payload["head_commit"]["timestamp"] = 1e20
    payload["repository"]["pushed_at"] = float("nan")
    event = _normalize("push", payload)
    assert event.occurred_at == RECEIVED_AT


def _issue_comment_payload(**comment) -> dict:
    return {
        "action": "created",
        "comment": {"created_at": "2026-03-04T10:00:00Z", **comment},
        "issue": {"number": 11},
        "repository": {"full_name": "acme/api"},
        "sender": {"login": "hubot"},
    }


def test_comment_body_must_be_text() -> None:
    assert _normalize("issue_comment", _issue_comment_payload(body=None)).attributes["body_length"] == 0
    with pytest.raises(MalformedPayloadError):
        _normalize("issue_comment", _issue_comment_payload(body=42))


@pytest.mark.parametrize("labels", [7, "bug", {"name": "bug"}])
def test_issue_labels_must_be_a_list(labels) -> None:
    payload = {
        "action": "opened",
        "issue": {"number": 5, "labels": labels},
        "repository": {"full_name": "acme/api"},
        "sender": {"login": "hubot"},
    }
    with pytest.raises(MalformedPayloadError):
        _normalize("issues", payload)


def test_issue_labels_skip_unnamed_entries() -> None:
    payload = {
        "action": 3,
        "issue": {"number": 5, "labels": [{"name": "bug"}, {"name": 9}, "triage", {}]},
        "repository": {"full_name": "acme/api"},
        "sender": {"login": "hubot"},
    }
    event = _normalize("issues", payload)
    assert event.attributes["labels"] == ["bug"]
    assert event.action is None
