from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text

from whisprnet.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from whisprnet.apps.api.response import SuccessEnvelope, success_response
from whisprnet.core.errors import TransientError


router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    database: str
    # "ok" in queue mode, "not_used" when the pipeline runs in-process.
    redis: str
    queue_depth: int | None


async def redis_reachable(redis_url: str) -> bool:
    client = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except (RedisError, OSError):
        return False
    finally:
        await client.aclose()


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/health/ready", response_model=SuccessEnvelope[ReadinessResponse] | ReadinessResponse)
async def readiness(request: Request) -> dict:
    # Ready means the database (and Redis in queue mode) answer; queue depth is informational only.
    try:
        async with request.app.state.database.session() as db:
            await db.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001 - readiness reports any storage failure as unavailable
        raise TransientError("Database unavailable") from exc
    settings = request.app.state.settings
    redis_state = "not_used"
    if settings.pipeline_execution_mode == "queue":
        if not await redis_reachable(settings.redis_url):
            raise TransientError("Queue backend unavailable")
        redis_state = "ok"
    depth = await request.app.state.event_queue.depth()
    return success_response(
        request=request,
        data=ReadinessResponse(status="ok", database="ok", redis=redis_state, queue_depth=depth),
    )
