from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import AsyncIterator
from uuid import uuid4

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from whisprnet.apps.api.errors import (
    http_exception_handler,
    organization_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    whispr_error_handler,
)
from whisprnet.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from whisprnet.apps.api.routes.admin import router as admin_router
from whisprnet.apps.api.routes.auth import router as auth_router
from whisprnet.apps.api.routes.health import router as health_router
from whisprnet.apps.api.routes.insights import router as insights_router
from whisprnet.apps.api.routes.integrations import router as integrations_router
from whisprnet.apps.api.routes.organizations import router as organizations_router
from whisprnet.apps.api.routes.users import router as users_router
from whisprnet.apps.api.routes.webhooks import router as webhooks_router
from whisprnet.core.config import Settings, get_settings
from whisprnet.core.errors import WhisprError
from whisprnet.core.logging import configure_logging
from whisprnet.persistence.db import Database
from whisprnet.persistence.guards import OrganizationPredicateError
from whisprnet.services.insights import InsightClassifier
from whisprnet.services.pipeline.processor import EventProcessor, MaintenanceLoop
from whisprnet.services.pipeline.queue import ArqEventQueue, EventQueue, LocalEventQueue
from whisprnet.services.telemetry import record_request
from whisprnet.services.webhooks import WebhookReceiver


_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/health/ready",
    "/v1/auth/register",
    "/v1/auth/login",
    "/v1/auth/admin/login",
    "/v1/auth/refresh",
    "/v1/integrations/github/events",
}


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    event_queue: EventQueue | None = None,
    classifier: InsightClassifier | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the API with its own storage handle and pipeline producer.

    Tests pass a SQLite ``Database`` and, optionally, an ``httpx.MockTransport`` for
    provider calls; deployments pass nothing and get Postgres plus the arq queue.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    owns_database = database is None
    database = database or Database(settings=settings)
    classifier = classifier or InsightClassifier()
    processor = EventProcessor(database, classifier, http_transport=http_transport)
    if event_queue is None:
        if settings.pipeline_execution_mode == "local":
            event_queue = LocalEventQueue(processor.process)
        else:
            event_queue = ArqEventQueue(settings.redis_url, queue_name=settings.pipeline_queue_name)
    # Without an arq worker the API process owns the requeue sweep and retention purge.
    maintenance: MaintenanceLoop | None = None
    if isinstance(event_queue, LocalEventQueue):
        maintenance = MaintenanceLoop(
            database, classifier, event_queue, interval_s=settings.pipeline_maintenance_interval_s
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(event_queue, LocalEventQueue):
            await event_queue.start()
        if maintenance is not None:
            maintenance.start()
        try:
            yield
        finally:
            if maintenance is not None:
                await maintenance.stop()
            if isinstance(event_queue, LocalEventQueue):
                await event_queue.stop()
            elif isinstance(event_queue, ArqEventQueue):
                await event_queue.close()
            if owns_database:
                await database.dispose()

    app = FastAPI(title="WhisprNet API", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.classifier = classifier
    app.state.processor = processor
    app.state.event_queue = event_queue
    app.state.maintenance = maintenance
    app.state.receiver = WebhookReceiver(database, event_queue)
    app.state.http_transport = http_transport

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(WhisprError)
    async def _whispr_error_handler(request: Request, exc: WhisprError):
        return await whispr_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(OrganizationPredicateError)
    async def _organization_predicate_exception_handler(request: Request, exc: OrganizationPredicateError):
        return await organization_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    for router in (
        health_router,
        auth_router,
        organizations_router,
        users_router,
        integrations_router,
        insights_router,
        webhooks_router,
        admin_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Providers are configured with the bare path; it stays outside the published schema.
    app.include_router(webhooks_router, include_in_schema=False)
    app.include_router(health_router, include_in_schema=False)

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="WhisprNet API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth into every operation that is not public.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="WhisprNet API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
