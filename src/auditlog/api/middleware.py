"""HTTP request auditing middleware for FastAPI/Starlette applications."""

import inspect
import logging
import re
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from auditlog.audit.context import create_audit_context
from auditlog.audit.logger import AuditLogger
from auditlog.audit.schemas import ActorType, AuditAction, AuditLevel
from auditlog.common.constants import HTTPConstants

logger = logging.getLogger(__name__)

ActorResolver = Callable[[Request], Any]
ResourceResolver = Callable[[Request], Any]

METHOD_ACTIONS = {
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
    "GET": AuditAction.READ,
}


def action_for_method(method: str) -> AuditAction:
    return METHOD_ACTIONS.get(method.upper(), AuditAction.OTHER)


def level_for_status(status_code: int) -> AuditLevel:
    if status_code >= 500:
        return AuditLevel.ERROR
    if status_code >= 400:
        return AuditLevel.WARN
    return AuditLevel.INFO


def matches_route(path: str, pattern: str) -> bool:
    """Glob-style route match.

    ``**`` spans path segments and ``*`` stays within one; a pattern
    without wildcards matches the path itself or anything below it.
    """
    if pattern == "**":
        return True
    if "*" in pattern:
        regex = re.escape(pattern).replace(r"\*\*", ".*").replace(r"\*", "[^/]*")
        return re.fullmatch(regex, path) is not None
    return path == pattern or path.startswith(pattern.rstrip("/") + "/")


def resource_from_path(path: str) -> Tuple[str, Optional[str]]:
    """Derive ``(resource, resource_id)`` from a REST-style path.

    A leading ``api`` segment and a version segment such as ``v1`` are
    skipped: ``/api/v1/notes/42`` gives ``("notes", "42")``.
    """
    segments = [s for s in path.split("/") if s]
    if segments and segments[0] == "api":
        segments = segments[1:]
    if segments and re.fullmatch(r"v\d+", segments[0]):
        segments = segments[1:]
    if not segments:
        return "http", None
    return segments[0], segments[1] if len(segments) > 1 else None


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class AuditMiddleware(BaseHTTPMiddleware):
    """Records one audit event per matching HTTP request.

    Failures while building or submitting the event are logged and never
    affect the response.
    """

    def __init__(
        self,
        app,
        audit_logger: AuditLogger,
        methods: Iterable[str] = HTTPConstants.AUDITED_METHODS,
        include_routes: Iterable[str] = ("**",),
        exclude_routes: Iterable[str] = HTTPConstants.EXCLUDED_PATHS,
        actor_resolver: Optional[ActorResolver] = None,
        resource_resolver: Optional[ResourceResolver] = None,
        log_success: bool = True,
        log_errors: bool = True,
    ):
        super().__init__(app)
        self.audit_logger = audit_logger
        self.methods = {m.upper() for m in methods}
        self.include_routes = list(include_routes)
        self.exclude_routes = list(exclude_routes)
        self.actor_resolver = actor_resolver
        self.resource_resolver = resource_resolver
        self.log_success = log_success
        self.log_errors = log_errors

    def should_audit(self, request: Request) -> bool:
        path = request.url.path
        if request.method.upper() not in self.methods:
            return False
        if any(matches_route(path, p) for p in self.exclude_routes):
            return False
        return any(matches_route(path, p) for p in self.include_routes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.should_audit(request):
            return await call_next(request)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            if self.log_errors:
                await self._record(request, 500, start)
            raise

        status = response.status_code
        if (status >= 400 and self.log_errors) or (status < 400 and self.log_success):
            await self._record(request, status, start)
        return response

    async def _resolve_actor(self, request: Request) -> Tuple[str, ActorType]:
        if self.actor_resolver is None:
            return "anonymous", ActorType.ANONYMOUS
        actor = await _maybe_await(self.actor_resolver(request))
        if not actor:
            return "anonymous", ActorType.ANONYMOUS
        actor_id, actor_type = actor
        return str(actor_id), ActorType(actor_type)

    async def _resolve_resource(self, request: Request) -> Tuple[str, Optional[str]]:
        if self.resource_resolver is None:
            return resource_from_path(request.url.path)
        resource = await _maybe_await(self.resource_resolver(request))
        if isinstance(resource, str):
            return resource, None
        return resource

    async def _record(self, request: Request, status: int, start: float) -> None:
        try:
            duration_ms = round((time.perf_counter() - start) * 1000, 3)
            path = request.url.path
            actor_id, actor_type = await self._resolve_actor(request)
            resource, resource_id = await self._resolve_resource(request)

            context = create_audit_context(
                headers=dict(request.headers),
                method=request.method,
                url=str(request.url),
                ip_address=request.client.host if request.client else None,
                status_code=status,
                duration_ms=duration_ms,
                request_id=getattr(request.state, "request_id", None) or request.headers.get("x-request-id"),
            )
            metadata: Dict[str, Any] = {
                "method": request.method,
                "pathname": path,
                "status": status,
                "duration_ms": duration_ms,
            }

            await run_in_threadpool(self.audit_logger.log, {
                "action": action_for_method(request.method),
                "resource": resource,
                "resource_id": resource_id,
                "actor_id": actor_id,
                "actor_type": actor_type,
                "level": level_for_status(status),
                "success": status < 400,
                "description": f"{request.method} {path} - {status}",
                "context": context,
                "metadata": metadata,
            })
        except Exception as e:
            logger.error(f"Audit middleware error: {e}")
