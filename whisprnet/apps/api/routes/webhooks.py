from __future__ import annotations

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel

from whisprnet.apps.api.openapi import WEBHOOK_ERROR_RESPONSES
from whisprnet.apps.api.response import SuccessEnvelope, success_response
from whisprnet.core.config import get_settings


router = APIRouter(prefix="/integrations", tags=["webhooks"], responses=WEBHOOK_ERROR_RESPONSES)


class WebhookAckResponse(BaseModel):
    # accepted | duplicate | ignored
    status: str
    delivery_id: str
    event_id: str | None = None


# Unauthenticated by bearer token; the HMAC signature is the only credential.
@router.post("/github/events", response_model=SuccessEnvelope[WebhookAckResponse] | WebhookAckResponse)
async def receive_github_event(
    request: Request,
    organization: str | None = Query(default=None, max_length=64),
) -> dict:
    # Signature checks run over the exact bytes the provider signed.
    raw_body = await request.body()
    organization_hint = organization or request.headers.get(get_settings().webhook_organization_header)
    result = await request.app.state.receiver.receive(organization_hint, raw_body, request.headers)
    payload = WebhookAckResponse(
        status=result.status,
        delivery_id=result.delivery_id,
        event_id=result.event_id,
    )
    return success_response(request=request, data=payload)
