from __future__ import annotations

from datetime import datetime
import hashlib
import logging
from typing import Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from whisprnet.core.config import get_settings
from whisprnet.core.errors import RuleFailure
from whisprnet.domain.events import CanonicalEvent, InsightDraft
from whisprnet.domain.models import Insight, Organization
from whisprnet.persistence.guards import tenant_predicate
from whisprnet.persistence.repos.events import list_window_events
from whisprnet.services.insights.locks import WindowLockRegistry
from whisprnet.services.insights.rules import (
    ClassificationRule,
    RuleContext,
    RuleRegistry,
    default_registry,
    window_bucket,
)
from whisprnet.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def fingerprint(rule_name: str, discriminator: str) -> str:
    return hashlib.sha256(f"{rule_name}:{discriminator}".encode("utf-8")).hexdigest()


def _load_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("classifier.timezone_unknown timezone=%s", name)
        return ZoneInfo("UTC")


class InsightClassifier:
    """Runs every registered rule against one canonical event and records new insights.

    Rules are isolated from each other: an exception inside one rule is logged as a
    ``RuleFailure`` and counted, and the remaining rules still run. Storage errors are
    not rule failures and propagate so the pipeline can retry the event.
    """

    def __init__(
        self,
        registry: RuleRegistry | None = None,
        locks: WindowLockRegistry | None = None,
    ) -> None:
        self.registry = registry or default_registry()
        self.locks = locks or WindowLockRegistry()

    async def classify(self, db: AsyncSession, event: CanonicalEvent) -> list[Insight]:
        context = await self._context(db, event)
        created: list[Insight] = []
        for rule in self.registry:
            if not rule.applies_to(event):
                continue
            if rule.window is None:
                draft = self._evaluate(rule, [event], context)
                insight = await self._persist(db, event, rule, draft, created) if draft else None
            else:
                async with self.locks.hold(event.organization_id, event.channel, rule.name):
                    window_events = await list_window_events(
                        db,
                        organization_id=event.organization_id,
                        channel=event.channel,
                        event_types=rule.event_types or None,
                        start=event.occurred_at - rule.window,
                        end=event.occurred_at,
                    )
                    draft = self._evaluate(rule, window_events, context)
                    insight = await self._persist(db, event, rule, draft, created) if draft else None
            if insight is not None:
                created.append(insight)
        return created

    async def _context(self, db: AsyncSession, event: CanonicalEvent) -> RuleContext:
        settings = get_settings()
        result = await db.execute(
            select(Organization.timezone).where(Organization.id == event.organization_id)
        )
        return RuleContext(
            trigger=event,
            timezone=_load_zone(result.scalar_one_or_none()),
            work_hours_start=settings.work_hours_start,
            work_hours_end=settings.work_hours_end,
        )

    def _evaluate(
        self,
        rule: ClassificationRule,
        events: Sequence[CanonicalEvent],
        context: RuleContext,
    ) -> InsightDraft | None:
        try:
            return rule.evaluate(events, context)
        except Exception as exc:  # noqa: BLE001 - one broken rule must not block the others
            failure = RuleFailure(rule.name, exc)
            increment_counter("classifier_rule_failures_total")
            logger.warning(
                "classifier.rule_failure rule=%s event_id=%s error=%s",
                failure.rule_name,
                context.trigger.id,
                failure.message,
                exc_info=exc,
            )
            return None

    def _window_start(self, rule: ClassificationRule, draft: InsightDraft, event: CanonicalEvent) -> datetime:
        if draft.window_start is not None:
            return draft.window_start
        if rule.window is None:
            return event.occurred_at
        return window_bucket(event.occurred_at, rule.window)

    async def _persist(
        self,
        db: AsyncSession,
        event: CanonicalEvent,
        rule: ClassificationRule,
        draft: InsightDraft,
        created: list[Insight],
    ) -> Insight | None:
        key_fingerprint = fingerprint(draft.rule, draft.discriminator)
        window_start = self._window_start(rule, draft, event)
        existing = await db.execute(
            select(Insight.id).where(
                tenant_predicate(Insight, event.organization_id),
                Insight.channel == event.channel,
                Insight.fingerprint == key_fingerprint,
                Insight.window_start == window_start,
            )
        )
        if existing.scalar_one_or_none() is not None:
            return None
        insight = Insight(
            organization_id=event.organization_id,
            channel=event.channel,
            message=draft.message,
            priority=draft.priority,
            category=draft.category,
            suggested_actions=list(draft.suggested_actions),
            delivered=False,
            rule=draft.rule,
            fingerprint=key_fingerprint,
            window_start=window_start,
            source_event_id=event.id,
        )
        db.add(insight)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent evaluation recorded the same natural key first.
            await db.rollback()
            for previous in created:
                await db.refresh(previous)
            logger.info(
                "classifier.insight_duplicate organization_id=%s rule=%s fingerprint=%s",
                event.organization_id,
                draft.rule,
                key_fingerprint,
            )
            return None
        increment_counter("insights_created_total")
        logger.info(
            "classifier.insight_created organization_id=%s insight_id=%s rule=%s channel=%s",
            event.organization_id,
            insight.id,
            draft.rule,
            event.channel,
        )
        return insight
