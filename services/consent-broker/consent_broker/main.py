from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from consent_broker.api.deps import get_consent_repository
from consent_broker.api.routers import (
    accounts,
    auth_debug,
    consents_callback,
    consents_create,
    consents_get,
    health,
    tokens,
)
from consent_broker.core.config import settings
from consent_broker.core.errors import (
    ConsentBrokerError,
    broker_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from consent_broker.core.logging import setup_logging
from consent_broker.core.metrics import MetricsMiddleware, router as metrics_router
from consent_broker.middleware.correlation import CorrelationMiddleware


def create_app() -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, version="0.1.0")

    @app.on_event("startup")
    async def on_startup():
        # builds the engine and runs create_all when a DATABASE_URL is set
        get_consent_repository()

    # Middleware: install correlation header propagation (adds X-Request-ID)
    app.add_middleware(CorrelationMiddleware)
    # Middleware: metrics timing AFTER correlation
    app.add_middleware(MetricsMiddleware, exclude_routes=settings.METRICS_EXCLUDE_ROUTES)

    # Exception handlers (uniform error JSON)
    app.add_exception_handler(ConsentBrokerError, broker_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Routers
    app.include_router(health.router)
    app.include_router(consents_create.router)
    app.include_router(accounts.router)
    app.include_router(consents_get.router)
    app.include_router(consents_callback.router)
    app.include_router(tokens.router)
    app.include_router(auth_debug.router)

    # Conditionally expose /metrics
    if settings.METRICS_ENABLED:
        app.include_router(metrics_router)

    @app.get("/")
    def root():
        return {"service": settings.APP_NAME, "env": settings.APP_ENV}

    return app


setup_logging(settings.LOG_LEVEL)
app = create_app()
