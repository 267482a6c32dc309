from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, Sequence
from zoneinfo import ZoneInfo

from whisprnet.core.config import get_settings
from whisprnet.domain.events import CanonicalEvent, InsightDraft


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class RuleContext:
    trigger: CanonicalEvent
    timezone: ZoneInfo
    work_hours_start: int
    work_hours_end: int

    def local_time(self, event: CanonicalEvent) -> datetime:
        return event.occurred_at.astimezone(self.timezone)

    def is_after_hours(self, event: CanonicalEvent) -> bool:
        hour = self.local_time(event).hour
        return hour < self.work_hours_start or hour >= self.work_hours_end

    def is_weekend(self, event: CanonicalEvent) -> bool:
        return self.local_time(event).weekday() >= 5


def window_bucket(moment: datetime, window: timedelta) -> datetime:
    # Floor to a fixed grid so every evaluation inside one bucket shares a natural key.
    size = int(window.total_seconds())
    offset = int((moment - _EPOCH).total_seconds())
    return _EPOCH + timedelta(seconds=offset - offset % size)


class ClassificationRule(ABC):
    """One independent heuristic.

    ``window is None`` marks a per-event rule that only ever sees the triggering
    event. Windowed rules receive every event of the same organization and channel
    whose timestamp falls inside ``[trigger - window, trigger]``, filtered to
    ``event_types``.
    """

    name: str = ""
    window: timedelta | None = None
    event_types: tuple[str, ...] = ()

    def applies_to(self, event: CanonicalEvent) -> bool:
        return not self.event_types or event.event_type in self.event_types

    @abstractmethod
    def evaluate(self, events: Sequence[CanonicalEvent], context: RuleContext) -> InsightDraft | None:
        raise NotImplementedError


class AfterHoursPushBurstRule(ClassificationRule):
    name = "after_hours_push_burst"
    event_types = ("push",)
    actions = (
        "Check in with the contributor about workload and deadlines",
        "Review whether this work could be scheduled inside working hours",
        "Consider redistributing upcoming tasks across the team",
    )

    def __init__(self, *, threshold: int, window: timedelta) -> None:
        self.threshold = threshold
        self.window = window

    def evaluate(self, events: Sequence[CanonicalEvent], context: RuleContext) -> InsightDraft | None:
        trigger = context.trigger
        if not context.is_after_hours(trigger):
            return None
        commits = sum(
            int(event.attributes.get("commit_count") or 0)
            for event in events
            if event.actor == trigger.actor and context.is_after_hours(event)
        )
        if commits < self.threshold:
            return None
        minutes = int(self.window.total_seconds() // 60)
        return InsightDraft(
            rule=self.name,
            message=(
                f"{trigger.actor} pushed {commits} commits to {trigger.channel} outside working "
                f"hours within {minutes} minutes."
            ),
            discriminator=trigger.actor,
            priority="medium",
            category="warning",
            suggested_actions=self.actions,
        )


class ForcePushRule(ClassificationRule):
    name = "force_push"
    event_types = ("push",)
    actions = (
        "Confirm the history rewrite was intentional",
        "Verify no collaborator work was lost on the affected branch",
        "Consider enabling branch protection for shared branches",
    )

    def evaluate(self, events: Sequence[CanonicalEvent], context: RuleContext) -> InsightDraft | None:
        trigger = context.trigger
        if not trigger.attributes.get("forced"):
            return None
        ref = trigger.attributes.get("ref") or "a branch"
        return InsightDraft(
            rule=self.name,
            message=f"{trigger.actor} force-pushed {ref} in {trigger.channel}.",
            discriminator=trigger.id,
            priority="high",
            category="alert",
            suggested_actions=self.actions,
        )


class LargePullRequestRule(ClassificationRule):
    name = "large_pull_request"
    event_types = ("pull_request",)
    actions = (
        "Suggest splitting the change into smaller pull requests",
        "Assign more than one reviewer",
    )
    _actions_considered = frozenset({"opened", "ready_for_review", "reopened", "synchronize"})

    def __init__(self, *, max_lines: int) -> None:
        self.max_lines = max_lines

    def evaluate(self, events: Sequence[CanonicalEvent], context: RuleContext) -> InsightDraft | None:
        trigger = context.trigger
        if trigger.action not in self._actions_considered:
            return None
        changed = int(trigger.attributes.get("additions") or 0) + int(trigger.attributes.get("deletions") or 0)
        if changed <= self.max_lines:
            return None
        number = trigger.attributes.get("number")
        return InsightDraft(
            rule=self.name,
            message=f"Pull request #{number} in {trigger.channel} changes {changed} lines.",
            # One suggestion per pull request, however often it is updated.
            discriminator=f"pr:{number}",
            priority="low",
            category="suggestion",
            suggested_actions=self.actions,
            window_start=_EPOCH,
        )


class ReviewCommentSurgeRule(ClassificationRule):
    name = "review_comment_surge"
    event_types = ("comment", "review")
    actions = (
        "Look at whether the discussion needs a synchronous conversation",
        "Check that review feedback is staying constructive",
    )

    def __init__(self, *, threshold: int, window: timedelta) -> None:
        self.threshold = threshold
        self.window = window

    def evaluate(self, events: Sequence[CanonicalEvent], context: RuleContext) -> InsightDraft | None:
        trigger = context.trigger
        count = sum(1 for event in events if event.actor == trigger.actor)
        if count < self.threshold:
            return None
        return InsightDraft(
            rule=self.name,
            message=f"{trigger.actor} left {count} review comments in {trigger.channel} in a short period.",
            discriminator=trigger.actor,
            priority="low",
            category="insight",
            suggested_actions=self.actions,
        )


class WeekendActivityRule(ClassificationRule):
    name = "weekend_activity"
    event_types = ("push", "pull_request", "review", "comment", "issue")
    actions = (
        "Encourage the contributor to take time off",
        "Check whether a deadline is driving weekend work",
    )

    def __init__(self, *, threshold: int, window: timedelta) -> None:
        self.threshold = threshold
        self.window = window

    def evaluate(self, events: Sequence[CanonicalEvent], context: RuleContext) -> InsightDraft | None:
        trigger = context.trigger
        if not context.is_weekend(trigger):
            return None
        count = sum(1 for event in events if event.actor == trigger.actor and context.is_weekend(event))
        if count < self.threshold:
            return None
        return InsightDraft(
            rule=self.name,
            message=f"{trigger.actor} has {count} weekend events in {trigger.channel}.",
            discriminator=trigger.actor,
            priority="low",
            category="warning",
            suggested_actions=self.actions,
        )


class RuleRegistry:
    """Ordered collection of rules; evaluation order is registration order."""

    def __init__(self, rules: Sequence[ClassificationRule] = ()) -> None:
        self._rules: list[ClassificationRule] = []
        for rule in rules:
            self.register(rule)

    def register(self, rule: ClassificationRule) -> None:
        if not rule.name:
            raise ValueError("rules must have a name")
        if any(existing.name == rule.name for existing in self._rules):
            raise ValueError(f"rule {rule.name} is already registered")
        self._rules.append(rule)

    def __iter__(self) -> Iterator[ClassificationRule]:
        return iter(list(self._rules))

    def __len__(self) -> int:
        return len(self._rules)

    def longest_window(self) -> timedelta:
        windows = [rule.window for rule in self._rules if rule.window is not None]
        return max(windows, default=timedelta(0))

    def by_event_type(self) -> dict[str, list[str]]:
        mapping: dict[str, list[str]] = defaultdict(list)
        for rule in self._rules:
            for event_type in rule.event_types or ("*",):
                mapping[event_type].append(rule.name)
        return dict(mapping)


def default_registry() -> RuleRegistry:
    settings = get_settings()
    return RuleRegistry(
        [
            AfterHoursPushBurstRule(
                threshold=settings.after_hours_push_threshold,
                window=timedelta(minutes=settings.after_hours_window_minutes),
            ),
            ForcePushRule(),
            LargePullRequestRule(max_lines=settings.large_pull_request_lines),
            ReviewCommentSurgeRule(
                threshold=settings.comment_surge_threshold,
                window=timedelta(minutes=settings.comment_surge_window_minutes),
            ),
            WeekendActivityRule(
                threshold=settings.weekend_activity_threshold,
                window=timedelta(minutes=settings.weekend_activity_window_minutes),
            ),
        ]
    )
