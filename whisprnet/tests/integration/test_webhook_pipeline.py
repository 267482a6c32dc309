from __future__ import annotations

import pytest
from sqlalchemy import select

from whisprnet.domain.models import AuditEvent, Event, Insight, WebhookDelivery
from whisprnet.services.normalizer import event_id_for
from whisprnet.tests.utils.accounts import seed_organization
from whisprnet.tests.utils.webhooks import (
    encode_body,
    pull_request_payload,
    push_payload,
    seed_github_integration,
    signed_headers,
)


WEBHOOK_PATH = "/v1/integrations/github/events"


async def _insights(database) -> list[Insight]:
    async with database.session() as session:
        return list((await session.execute(select(Insight))).scalars().all())


async def _ledger(database) -> dict[str, str]:
    async with database.session() as session:
        rows = (await session.execute(select(WebhookDelivery))).scalars().all()
        return {row.delivery_id: row.status for row in rows}


@pytest.mark.asyncio
async def test_after_hours_push_produces_one_insight(app, client, database) -> None:
    # Five commits pushed at 23:10 on a Wednesday cross the after-hours threshold once.
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1")
    body = encode_body(push_payload(commits=5))
    response = await client.post(
        WEBHOOK_PATH,
        params={"organization": "org-1"},
        content=body,
        headers=signed_headers(body, event_type="push", delivery_id="d-42"),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data == {"status": "accepted", "delivery_id": "d-42", "event_id": event_id_for("github", "d-42")}

    await app.state.event_queue.drain()
    insights = await _insights(database)
    assert len(insights) == 1
    insight = insights[0]
    assert insight.organization_id == "org-1"
    assert insight.rule == "after_hours_push_burst"
    assert insight.category == "warning"
    assert insight.priority == "medium"
    assert insight.channel == "acme/api"
    assert insight.delivered is False
    assert insight.suggested_actions
    assert await _ledger(database) == {"d-42": "processed"}


@pytest.mark.asyncio
async def test_replayed_delivery_is_acknowledged_once(app, client, database) -> None:
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1")
    body = encode_body(push_payload(commits=5))
    headers = signed_headers(body, event_type="push", delivery_id="d-42")
    first = await client.post(WEBHOOK_PATH, params={"organization": "org-1"}, content=body, headers=headers)
    await app.state.event_queue.drain()
    replay = await client.post(WEBHOOK_PATH, params={"organization": "org-1"}, content=body, headers=headers)
    await app.state.event_queue.drain()
    assert first.json()["data"]["status"] == "accepted"
    assert replay.status_code == 200
    assert replay.json()["data"]["status"] == "duplicate"
    assert len(await _insights(database)) == 1
    async with database.session() as session:
        assert len((await session.execute(select(Event))).scalars().all()) == 1


@pytest.mark.asyncio
async def test_rejections_look_identical(client, database) -> None:
    # Wrong secret, unknown organization and unverified integration all return the same 401.
    await seed_organization(database, organization_id="org-1")
    await seed_organization(database, organization_id="org-2")
    await seed_github_integration(database, "org-1")
    await seed_github_integration(database, "org-2", verified=False)
    body = encode_body(push_payload())
    attempts = [
        ("org-1", signed_headers(body, event_type="push", delivery_id="d-1", secret="not-the-secret-at-all")),
        ("org-404", signed_headers(body, event_type="push", delivery_id="d-2")),
        ("org-2", signed_headers(body, event_type="push", delivery_id="d-3")),
    ]
    payloads = []
    for organization_id, headers in attempts:
        response = await client.post(
            WEBHOOK_PATH, params={"organization": organization_id}, content=body, headers=headers
        )
        assert response.status_code == 401
        error = response.json()["error"]
        payloads.append((error["code"], error["message"]))
    assert len(set(payloads)) == 1
    assert payloads[0][0] == "WEBHOOK_SIGNATURE_INVALID"
    assert await _ledger(database) == {}

    # Operators still see why each one failed.
    async with database.session() as session:
        rows = (await session.execute(select(AuditEvent).order_by(AuditEvent.id))).scalars().all()
    expected = ("webhooks.rejected", "provider", "failure")
    assert [(row.event_type, row.actor_type, row.outcome) for row in rows] == [expected] * 3
    assert [(row.organization_id, row.resource_id, row.metadata_json["reason"]) for row in rows] == [
        ("org-1", "d-1", "signature_mismatch"),
        (None, "d-2", "integration_missing"),
        ("org-2", "d-3", "integration_unverified"),
    ]


@pytest.mark.asyncio
async def test_tampered_body_is_rejected(client, database) -> None:
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1")
    body = encode_body(push_payload(commits=1))
    headers = signed_headers(body, event_type="push", delivery_id="d-7")
    tampered = encode_body(push_payload(commits=9))
    response = await client.post(WEBHOOK_PATH, params={"organization": "org-1"}, content=tampered, headers=headers)
    assert response.status_code == 401
    assert await _ledger(database) == {}


@pytest.mark.asyncio
async def test_organization_header_is_accepted(client, database) -> None:
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1")
    body = encode_body(push_payload(commits=1))
    headers = signed_headers(body, event_type="push", delivery_id="d-8")
    headers["X-WhisprNet-Organization"] = "org-1"
    response = await client.post(WEBHOOK_PATH, content=body, headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "accepted"


@pytest.mark.asyncio
async def test_malformed_payload_is_rejected(client, database) -> None:
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1")
    payload = push_payload()
    payload.pop("sender")
    body = encode_body(payload)
    response = await client.post(
        WEBHOOK_PATH,
        params={"organization": "org-1"},
        content=body,
        headers=signed_headers(body, event_type="push", delivery_id="d-9"),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BAD_REQUEST"
    not_json = b"{not json"
    response = await client.post(
        WEBHOOK_PATH,
        params={"organization": "org-1"},
        content=not_json,
        headers=signed_headers(not_json, event_type="push", delivery_id="d-10"),
    )
    assert response.status_code == 400
    assert await _ledger(database) == {}


@pytest.mark.asyncio
async def test_unsupported_and_unsubscribed_events_are_ignored(app, client, database) -> None:
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1", subscribed_events=["push"])
    body = encode_body({"zen": "Keep it logically awesome.", "hook_id": 1})
    ping = await client.post(
        WEBHOOK_PATH,
        params={"organization": "org-1"},
        content=body,
        headers=signed_headers(body, event_type="ping", delivery_id="d-ping"),
    )
    pr_body = encode_body(pull_request_payload(additions=5000))
    pull_request = await client.post(
        WEBHOOK_PATH,
        params={"organization": "org-1"},
        content=pr_body,
        headers=signed_headers(pr_body, event_type="pull_request", delivery_id="d-pr"),
    )
    await app.state.event_queue.drain()
    assert ping.status_code == 200
    assert ping.json()["data"]["status"] == "ignored"
    assert pull_request.json()["data"]["status"] == "ignored"
    assert await _ledger(database) == {"d-ping": "ignored", "d-pr": "ignored"}
    assert await _insights(database) == []


@pytest.mark.asyncio
async def test_large_pull_request_suggestion(app, client, database) -> None:
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1")
    for delivery_id, action in (("d-open", "opened"), ("d-sync", "synchronize")):
        body = encode_body(pull_request_payload(number=12, action=action, additions=900, deletions=100))
        response = await client.post(
            WEBHOOK_PATH,
            params={"organization": "org-1"},
            content=body,
            headers=signed_headers(body, event_type="pull_request", delivery_id=delivery_id),
        )
        assert response.status_code == 200
    await app.state.event_queue.drain()
    insights = await _insights(database)
    assert [insight.rule for insight in insights] == ["large_pull_request"]
    assert insights[0].category == "suggestion"


@pytest.mark.asyncio
async def test_unversioned_path_returns_bare_payload(client, database) -> None:
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1")
    body = encode_body(push_payload(commits=1))
    response = await client.post(
        "/integrations/github/events",
        params={"organization": "org-1"},
        content=body,
        headers=signed_headers(body, event_type="push", delivery_id="d-11"),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"
    rejected = await client.post(
        "/integrations/github/events",
        params={"organization": "org-1"},
        content=body,
        headers=signed_headers(body, event_type="push", delivery_id="d-12", secret="wrong-secret-value"),
    )
    assert rejected.status_code == 401
    assert rejected.json() == {"detail": "Webhook could not be authenticated"}


@pytest.mark.asyncio
async def test_out_of_range_timestamp_is_accepted(app, client, database) -> None:
    await seed_organization(database, organization_id="org-1")
    await seed_github_integration(database, "org-1")
    payload = push_payload(commits=1)
    payload["head_commit"]["timestamp"] = 1e20
    body = encode_body(payload)
    response = await client.post(
        WEBHOOK_PATH,
        params={"organization": "org-1"},
        content=body,
        headers=signed_headers(body, event_type="push", delivery_id="d-far"),
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "accepted"
    await app.state.event_queue.drain()
    assert await _ledger(database) == {"d-far": "processed"}
