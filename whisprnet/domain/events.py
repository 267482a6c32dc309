from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


Priority = Literal["low", "medium", "high", "critical"]
Category = Literal["insight", "warning", "suggestion", "alert"]

PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "critical")
CATEGORIES: tuple[str, ...] = ("insight", "warning", "suggestion", "alert")


class CanonicalEvent(BaseModel):
    # Provider-agnostic fact; this is also the pipeline job payload.
    model_config = ConfigDict(frozen=True)

    id: str
    organization_id: str
    provider: str
    event_type: str
    action: str | None = None
    actor: str
    channel: str
    occurred_at: datetime
    received_at: datetime
    delivery_id: str
    payload_sha256: str
    attributes: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class InsightDraft:
    # Rule output before persistence; the classifier adds the natural key.
    rule: str
    message: str
    discriminator: str
    priority: Priority = "medium"
    category: Category = "insight"
    suggested_actions: tuple[str, ...] = field(default_factory=tuple)
    # Rules may pin the natural-key window; otherwise the classifier derives it.
    window_start: datetime | None = None
