from __future__ import annotations

# Re-export webhook ingestion for centralized imports.

from whisprnet.services.webhooks.receiver import REJECTION_MESSAGE, ReceiveResult, WebhookReceiver
from whisprnet.services.webhooks.signatures import compute_signature, verify_signature

__all__ = [
    "REJECTION_MESSAGE",
    "ReceiveResult",
    "WebhookReceiver",
    "compute_signature",
    "verify_signature",
]
