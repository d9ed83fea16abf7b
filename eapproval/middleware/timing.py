"""
Per-request timing and correlation ids.

Every response carries ``X-Request-ID`` (echoed from the client or freshly
generated) and ``X-Request-Duration-Ms``.  One log line per request is
emitted at DEBUG, raised to WARNING when slower than SLOW_REQUEST_MS and to
ERROR on a 5xx.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/api/v1/health"})


def _tenant_from_request():
    tid = request.args.get("tenant_id", type=int)
    if tid is not None or not request.is_json:
        return tid
    body = request.get_json(silent=True)
    raw = body.get("tenant_id") if isinstance(body, dict) else None
    return raw if isinstance(raw, int) else None


def _level_for(status_code, elapsed_ms, slow_ms):
    if status_code >= 500:
        return logging.ERROR
    if elapsed_ms > slow_ms:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    slow_ms = app.config.get("SLOW_REQUEST_MS", 1000)

    @app.before_request
    def _begin():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.started = time.perf_counter()

    @app.after_request
    def _finish(response):
        started = g.get("started")
        if started is None:
            return response
        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.path not in _QUIET_PATHS:
            logger.log(
                _level_for(response.status_code, elapsed_ms, slow_ms),
                "%s %s -> %d in %.0fms",
                request.method, request.path, response.status_code, elapsed_ms,
                extra={
                    "request_id": g.request_id,
                    "tenant_id": _tenant_from_request(),
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": elapsed_ms,
                    "remote_addr": request.remote_addr,
                },
            )
        return response
