from __future__ import annotations

import time
from typing import Iterable

from fastapi import APIRouter, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import PlainTextResponse

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Business counters
consents_created_total = Counter(
    "consents_created_total",
    "Total number of consents pushed to the authorization server",
    labelnames=("consent_type",),
)
par_failures_total = Counter(
    "par_failures_total",
    "Total number of failed pushed authorization requests",
    labelnames=("consent_type",),
)
consent_callbacks_total = Counter(
    "consent_callbacks_total",
    "Redirect callbacks reconciled, by resulting status",
    labelnames=("status",),
)
token_requests_total = Counter(
    "token_requests_total",
    "Token endpoint calls by grant type and outcome",
    labelnames=("grant_type", "outcome"),
)
token_cache_hits_total = Counter(
    "token_cache_hits_total",
    "Access tokens served from the consent token cache"
)

# Outbound latency to the authorization / resource servers, labeled by call kind
upstream_latency_seconds = Histogram(
    "upstream_latency_seconds",
    "Open Finance upstream call latency in seconds",
    labelnames=("call", "status_code"),
)

# Request latency histogram (seconds), labeled by route template and status code
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("route", "status_code"),
)

def inc_consents_created(consent_type: str) -> None:
    consents_created_total.labels(consent_type=consent_type).inc()

def inc_par_failures(consent_type: str) -> None:
    par_failures_total.labels(consent_type=consent_type).inc()

def inc_consent_callbacks(status: str) -> None:
    consent_callbacks_total.labels(status=status).inc()

def inc_token_requests(grant_type: str, outcome: str) -> None:
    token_requests_total.labels(grant_type=grant_type, outcome=outcome).inc()

def inc_token_cache_hits() -> None:
    token_cache_hits_total.inc()

def observe_upstream(call: str, status_code: str, duration: float) -> None:
    upstream_latency_seconds.labels(call=call, status_code=status_code).observe(duration)

# Middleware for request timing
class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, exclude_routes: Iterable[str] | None = None):
        super().__init__(app)
        self.exclude_routes = set(exclude_routes or [])

    async def dispatch(self, request: Request, call_next):
        raw_path = request.url.path
        if raw_path in self.exclude_routes:
            return await call_next(request)

        start = time.perf_counter()
        try:
            response: Response = await call_next(request)
            status_code = str(response.status_code)
        except Exception:
            # Count exceptions as 500 for latency observation, then re-raise
            duration = time.perf_counter() - start
            self._observe(request, "500", duration)
            raise

        self._observe(request, status_code, time.perf_counter() - start)
        return response

    def _observe(self, request: Request, status_code: str, duration: float) -> None:
        route_tmpl = self._resolve_route_template(request)
        request_latency_seconds.labels(route=route_tmpl, status_code=status_code).observe(duration)

    @staticmethod
    def _resolve_route_template(request: Request) -> str:
        # Prefer the route path template (low-cardinality), fallback to raw path when unknown (404)
        route = request.scope.get("route")
        if route and getattr(route, "path", None):
            return route.path
        return request.url.path

router = APIRouter()

@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint():
    data = generate_latest()
    return PlainTextResponse(content=data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)
