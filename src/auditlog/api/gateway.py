"""API Gateway - FastAPI read endpoints over an audit logger."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from auditlog.api.middleware import AuditMiddleware
from auditlog.api.schemas import CountResponse, ErrorResponse, HealthResponse
from auditlog.audit.logger import AuditLogger
from auditlog.audit.schemas import AuditStats, PaginatedResult
from auditlog.common.exceptions import AdapterError, AuditLogException, InvalidFilterError

logger = logging.getLogger(__name__)

LIST_PARAMS = {
    "actions": "actions",
    "resources": "resources",
    "levels": "levels",
    "actor_ids": "actor_ids",
    "actorIds": "actor_ids",
}


def filter_from_query(request: Request) -> Dict[str, Any]:
    """Collect filter criteria from query parameters.

    List criteria may be repeated (``?actions=create&actions=delete``) or
    comma-separated (``?actions=create,delete``).
    """
    params = request.query_params
    criteria: Dict[str, Any] = {}
    for key in params.keys():
        if key in LIST_PARAMS:
            values = []
            for raw in params.getlist(key):
                values.extend(v.strip() for v in raw.split(",") if v.strip())
            criteria[LIST_PARAMS[key]] = values
        else:
            criteria[key] = params.get(key)
    return criteria


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def create_audit_router(prefix: str = "/audit") -> APIRouter:
    """Router exposing query, count, stats and health for ``app.state.audit_logger``."""
    router = APIRouter(prefix=prefix, tags=["audit"])

    @router.get("/events", response_model=PaginatedResult, summary="Query audit events")
    def list_events(request: Request) -> PaginatedResult:
        return get_audit_logger(request).query(filter_from_query(request))

    @router.get("/events/count", response_model=CountResponse, summary="Count audit events")
    def count_events(request: Request) -> CountResponse:
        return CountResponse(count=get_audit_logger(request).count(filter_from_query(request)))

    @router.get("/stats", response_model=AuditStats, summary="Aggregate audit statistics")
    def stats(
        request: Request,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> AuditStats:
        return get_audit_logger(request).get_stats(start_date, end_date)

    @router.get("/health", response_model=HealthResponse, summary="Storage adapter health")
    def health(request: Request):
        audit_logger = get_audit_logger(request)
        healthy = audit_logger.health_check()
        body = HealthResponse(
            status="healthy" if healthy else "unhealthy",
            adapter=audit_logger.adapter.name,
            pending=audit_logger.pending_count,
        )
        if not healthy:
            return JSONResponse(status_code=503, content=body.model_dump())
        return body

    return router


def _error_response(request: Request, status_code: int, exc: AuditLogException) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(ErrorResponse(
            error=exc.code,
            message=exc.message,
            details=exc.details,
            request_id=getattr(request.state, "request_id", None),
        )),
    )


def create_app(
    audit_logger: AuditLogger,
    audit_requests: bool = True,
    shutdown_on_exit: bool = True,
    **middleware_options: Any,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        audit_logger: Logger served by the read endpoints
        audit_requests: Install ``AuditMiddleware`` on the app
        shutdown_on_exit: Shut the logger down when the app stops
        **middleware_options: Extra ``AuditMiddleware`` arguments
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info(f"Audit API starting with adapter {audit_logger.adapter.name}")
        yield
        if shutdown_on_exit:
            logger.info("Audit API shutting down...")
            audit_logger.shutdown()

    app = FastAPI(
        title="Audit Log API",
        description="Query and statistics endpoints for audit events.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.audit_logger = audit_logger
    app.include_router(create_audit_router())

    # =========================================================================
    # EXCEPTION HANDLERS
    # =========================================================================

    @app.exception_handler(InvalidFilterError)
    async def invalid_filter_handler(request: Request, exc: InvalidFilterError) -> JSONResponse:
        logger.warning(f"Rejected audit query: {exc.message}")
        return _error_response(request, 422, exc)

    @app.exception_handler(AdapterError)
    async def adapter_error_handler(request: Request, exc: AdapterError) -> JSONResponse:
        logger.error(f"Audit storage error during {exc.operation}: {exc.message}")
        return _error_response(request, 500, exc)

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    if audit_requests:
        app.add_middleware(AuditMiddleware, audit_logger=audit_logger, **middleware_options)

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add request ID to each request for tracing."""
        request_id = request.headers.get("x-request-id") or f"req_{uuid4().hex[:12]}"
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health")
    async def health_check() -> dict:
        return {"status": "healthy", "service": "auditlog"}

    return app
