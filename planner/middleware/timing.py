"""
Request timing middleware.

Every response carries X-Request-ID and X-Request-Duration-Ms. A caller may
supply its own X-Request-ID (e.g. from the gateway); anything that does not
look like an id is replaced. One access log line is written per API request,
at a level chosen by outcome:

    5xx or slower than SLOW_REQUEST_MS  → WARNING / ERROR
    4xx on a mutation                    → INFO (rejected transitions are worth seeing)
    everything else                      → DEBUG
"""

import logging
import re
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_SKIP_LOG = frozenset({"/api/v1/health/live", "/api/v1/health/ready"})
_MUTATIONS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

DEFAULT_SLOW_REQUEST_MS = 1000


def _incoming_request_id() -> str:
    supplied = request.headers.get("X-Request-ID", "")
    if _REQUEST_ID_RE.match(supplied):
        return supplied
    return uuid.uuid4().hex[:12]


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""
    slow_ms = app.config.get("SLOW_REQUEST_MS", DEFAULT_SLOW_REQUEST_MS)

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = _incoming_request_id()

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = g.request_id

        if request.path in _SKIP_LOG:
            return response

        status = response.status_code
        extra = {
            "method": request.method,
            "path": request.path,
            "status": status,
            "duration_ms": duration_ms,
            "actor_id": getattr(g, "jwt_user_id", None),
            "actor_role": getattr(g, "jwt_role", None),
        }
        if status >= 500:
            logger.error("%s %s -> %d", request.method, request.path, status, extra=extra)
        elif duration_ms > slow_ms:
            logger.warning("Slow request %s %s -> %d", request.method, request.path, status, extra=extra)
        elif status >= 400 and request.method in _MUTATIONS:
            logger.info("%s %s -> %d", request.method, request.path, status, extra=extra)
        else:
            logger.debug("%s %s -> %d", request.method, request.path, status, extra=extra)
        return response
