"""API - read endpoints and request auditing middleware.

Endpoints:
    GET /audit/events
    GET /audit/events/count
    GET /audit/stats
    GET /audit/health
"""

from auditlog.api.gateway import create_app, create_audit_router
from auditlog.api.middleware import AuditMiddleware
from auditlog.api.schemas import CountResponse, ErrorResponse, HealthResponse

__all__ = [
    "create_app",
    "create_audit_router",
    "AuditMiddleware",
    "CountResponse",
    "ErrorResponse",
    "HealthResponse",
]
