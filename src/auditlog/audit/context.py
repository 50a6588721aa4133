"""Request-context helpers for building ``AuditContext`` values."""

import ipaddress
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from auditlog.audit.schemas import AuditContext
from auditlog.common.constants import HTTPConstants


def _lower_headers(headers: Optional[Mapping[str, Any]]) -> dict:
    if not headers:
        return {}
    return {str(k).lower(): v for k, v in headers.items()}


def _clean_ip(candidate: str) -> Optional[str]:
    candidate = candidate.strip().strip('"')
    if candidate.lower().startswith("for="):
        candidate = candidate[4:].strip('"')
    if candidate.startswith("["):
        # [v6]:port
        candidate = candidate[1:].split("]", 1)[0]
    elif candidate.count(":") == 1:
        # v4:port
        candidate = candidate.split(":", 1)[0]
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def extract_ip_address(
    headers: Optional[Mapping[str, Any]],
    fallback: Optional[str] = None,
) -> Optional[str]:
    """Find the originating client IP among common proxy headers.

    The first valid address in the first populated header wins. For
    ``Forwarded`` the ``for=`` parameter is read.
    """
    lowered = _lower_headers(headers)
    for name in HTTPConstants.IP_HEADERS:
        value = lowered.get(name)
        if not value:
            continue
        for part in str(value).split(","):
            if name == "forwarded":
                params = [p.strip() for p in part.split(";")]
                part = next((p for p in params if p.lower().startswith("for=")), "")
            ip = _clean_ip(part)
            if ip:
                return ip
    if fallback:
        return _clean_ip(fallback)
    return None


def create_audit_context(
    headers: Optional[Mapping[str, Any]] = None,
    method: Optional[str] = None,
    url: Optional[str] = None,
    ip_address: Optional[str] = None,
    **extra: Any,
) -> AuditContext:
    """Build an ``AuditContext`` from the pieces of an HTTP request.

    Args:
        headers: Request headers (any case)
        method: HTTP method
        url: Full URL or path; only the path is kept as the endpoint
        ip_address: Socket peer address, used when no proxy header is set
        **extra: Additional ``AuditContext`` fields (status_code, custom, ...)
    """
    lowered = _lower_headers(headers)
    endpoint = urlsplit(url).path or None if url else None
    values = {
        "ip_address": extract_ip_address(lowered, fallback=ip_address),
        "user_agent": lowered.get("user-agent"),
        "referrer": lowered.get("referer") or lowered.get("referrer"),
        "request_id": lowered.get("x-request-id"),
        "method": method,
        "endpoint": endpoint,
    }
    values.update(extra)
    return AuditContext(**{k: v for k, v in values.items() if v is not None})
