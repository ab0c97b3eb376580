"""Middlewares personalizados para el API de ruteo."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from leadrouter.core.config import settings
from leadrouter.core.logging import get_logger, resolve_log_level

logger = get_logger("leadrouter.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Registra información básica de cada request entrante."""

    def __init__(self, app, *, skip_prefixes: tuple[str, ...] | None = None, level: str | None = None):
        super().__init__(app)
        self._skip_prefixes = (
            skip_prefixes if skip_prefixes is not None else settings.request_log_skip_prefixes
        )
        self._level = resolve_log_level(level or settings.request_log_level)

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid4().hex
        path = request.url.path
        quiet = path.startswith(self._skip_prefixes)
        start = time.perf_counter()
        client_ip = request.headers.get("x-forwarded-for")
        if client_ip:
            client_ip = client_ip.split(",")[0].strip()
        elif request.client:
            client_ip = request.client.host

        if not quiet:
            logger.log(
                self._level,
                "request.started",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": path,
                    "client_ip": client_ip,
                },
            )

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request.failed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": path,
                    "duration_ms": round(duration_ms, 2),
                    "client_ip": client_ip,
                },
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["x-request-id"] = request_id

        if not quiet:
            logger.log(
                self._level,
                "request.completed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )

        return response
