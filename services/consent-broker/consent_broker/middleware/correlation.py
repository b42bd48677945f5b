from __future__ import annotations
import logging
import time
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from consent_broker.core.correlation import set_correlation_id, get_correlation_id

log = logging.getLogger("access")

# Only the broker's own surfaces are access-logged; health and metrics stay quiet
_LOGGED_PREFIXES = ("/consent-create", "/token", "/consents", "/client/callback", "/debug")

class CorrelationMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        inbound = request.headers.get("X-Request-ID")
        cid = set_correlation_id(inbound)
        request.state.correlation_id = cid

        start = time.perf_counter()
        response: Response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)

        if request.url.path.startswith(_LOGGED_PREFIXES):
            log.info(
                "%s %s", request.method, request.url.path,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
        response.headers["X-Request-ID"] = get_correlation_id(cid) or cid
        response.headers.setdefault("Cache-Control", "no-store")
        return response
