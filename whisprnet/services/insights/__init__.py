from __future__ import annotations

# Re-export classifier services for centralized imports.

from whisprnet.services.insights.classifier import InsightClassifier, fingerprint
from whisprnet.services.insights.locks import WindowLockRegistry
from whisprnet.services.insights.rules import (
    ClassificationRule,
    RuleContext,
    RuleRegistry,
    default_registry,
    window_bucket,
)

__all__ = [
    "ClassificationRule",
    "InsightClassifier",
    "RuleContext",
    "RuleRegistry",
    "WindowLockRegistry",
    "default_registry",
    "fingerprint",
    "window_bucket",
]
