from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.core.errors import TransientError
from whisprnet.domain.models import Insight
from whisprnet.services.crypto.credentials import CredentialDecryptError
from whisprnet.services.delivery.tracker import mark_delivered
from whisprnet.services.integrations.providers import post_slack_message
from whisprnet.services.integrations.store import decrypt_credentials, find_verified_config
from whisprnet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SLACK_CHANNEL = "slack"
_PRIORITY_EMOJI = {
    "low": ":large_blue_circle:",
    "medium": ":large_yellow_circle:",
    "high": ":large_orange_circle:",
    "critical": ":red_circle:",
}


def build_blocks(insight: Insight) -> list[dict[str, Any]]:
    header = f"{_PRIORITY_EMOJI.get(insight.priority, '')} *{insight.category.title()}* in `{insight.channel}`"
    blocks: list[dict[str, Any]] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": f"{header.strip()}\n{insight.message}"}},
    ]
    if insight.suggested_actions:
        actions = "\n".join(f"• {action}" for action in insight.suggested_actions)
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": actions}]})
    return blocks


async def deliver_to_slack(
    db: AsyncSession,
    *,
    organization_id: str,
    insights: Sequence[Insight],
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    """Post new insights to the organization's Slack channel.

    Only organizations with a verified Slack integration are delivered to. Each
    successful post goes through the delivery tracker so a retried job never
    double-records. Returns the number of insights newly recorded as delivered.
    """
    if not insights:
        return 0
    config = await find_verified_config(db, organization_id, SLACK_CHANNEL)
    if config is None:
        return 0
    try:
        credentials = decrypt_credentials(config)
    except CredentialDecryptError:
        logger.warning("slack_delivery.credentials_unreadable organization_id=%s", organization_id)
        return 0
    # Capture plain values before any commit in the tracker touches ORM state.
    pending = [(insight.id, insight.message, build_blocks(insight)) for insight in insights]
    delivered = 0
    for insight_id, message, blocks in pending:
        try:
            posted = await post_slack_message(credentials, text=message, blocks=blocks, transport=transport)
        except TransientError:
            increment_counter("slack_delivery_failures_total")
            logger.warning(
                "slack_delivery.unavailable organization_id=%s insight_id=%s", organization_id, insight_id
            )
            continue
        if not posted:
            increment_counter("slack_delivery_failures_total")
            logger.warning("slack_delivery.rejected organization_id=%s insight_id=%s", organization_id, insight_id)
            continue
        outcome = await mark_delivered(
            db, organization_id=organization_id, insight_id=insight_id, channel=SLACK_CHANNEL
        )
        if not outcome.already_delivered:
            delivered += 1
    if delivered:
        increment_counter("slack_deliveries_total", delivered)
    return delivered
