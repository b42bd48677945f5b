from __future__ import annotations
import logging
from typing import Any, Dict, Optional
from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi import status as http
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from consent_broker.core.correlation import get_correlation_id

log = logging.getLogger("errors")

# Map our short string details -> human messages
_MESSAGES = {
    "not_found": "The requested resource was not found.",
    "idempotency_conflict": "The Idempotency-Key conflicts with a prior request.",
    "consent_not_found": "No consent exists with this identifier.",
    "consent_not_authorized": "The consent has no authorization code yet.",
    "consent_store_unavailable": "Consent store unavailable.",
    "token_acquisition_failed": "Unable to obtain an access token for the consent.",
    "pii_encryption_failed": "Failed to encrypt personally identifiable information.",
    "signing_key_unavailable": "The request signing key is not configured.",
    "transport_certificate_unavailable": "The mutual TLS transport certificate could not be loaded.",
}


class ConsentBrokerError(Exception):
    """Base for every error the broker surfaces to callers."""

    status_code: int = http.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "server_error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or _MESSAGES.get(self.code, self.code))
        self.message = message or _MESSAGES.get(self.code, self.code)


class ConsentValidationError(ConsentBrokerError):
    status_code = http.HTTP_400_BAD_REQUEST
    code = "validation_error"


class UpstreamError(ConsentBrokerError):
    """Non-2xx (or unreachable) PAR / token endpoint. Body is passed through as-is."""

    status_code = http.HTTP_502_BAD_GATEWAY
    code = "upstream_error"

    def __init__(self, status_code: int, body: Any, message: Optional[str] = None) -> None:
        super().__init__(message or f"Upstream responded with {status_code}")
        self.status_code = status_code
        self.body = body


class PersistenceError(ConsentBrokerError):
    code = "persistence_error"


class ReconciliationError(ConsentBrokerError):
    status_code = http.HTTP_400_BAD_REQUEST
    code = "reconciliation_error"


class TokenAcquisitionFailed(ConsentBrokerError):
    status_code = http.HTTP_502_BAD_GATEWAY
    code = "token_acquisition_failed"


class ConsentNotFound(ConsentBrokerError):
    status_code = http.HTTP_404_NOT_FOUND
    code = "consent_not_found"


class ConsentNotAuthorized(ConsentBrokerError):
    status_code = http.HTTP_409_CONFLICT
    code = "consent_not_authorized"


class ConsentStoreUnavailable(ConsentBrokerError):
    status_code = http.HTTP_503_SERVICE_UNAVAILABLE
    code = "consent_store_unavailable"


class PIIEncryptionError(ConsentBrokerError):
    code = "pii_encryption_failed"


class SigningKeyError(ConsentBrokerError):
    code = "signing_key_unavailable"


class TransportCertificateError(ConsentBrokerError):
    code = "transport_certificate_unavailable"


def _normalize_detail(detail: Any) -> str:
    if isinstance(detail, dict) and "detail" in detail:
        return str(detail["detail"])
    return str(detail)

def _build_error(code: str, status_code: int, message: Optional[str] = None) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "http_status": status_code,
            "message": message or _MESSAGES.get(code, code),
            "correlation_id": get_correlation_id(),
        }
    }

async def broker_exception_handler(request: Request, exc: ConsentBrokerError):
    if isinstance(exc, UpstreamError):
        # Passthrough: the caller sees exactly what the authorization server returned
        content = exc.body if exc.body is not None else {"error": exc.message}
        return JSONResponse(status_code=exc.status_code, content=content)
    if exc.status_code >= 500:
        log.error("%s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_build_error(exc.code, exc.status_code, exc.message))

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = _normalize_detail(exc.detail)
    payload = _build_error(code, exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    payload = {
        "error": {
            "code": "validation_error",
            "http_status": http.HTTP_422_UNPROCESSABLE_ENTITY,
            "message": "One or more fields failed validation.",
            "correlation_id": get_correlation_id(),
            "details": exc.errors(),
        }
    }
    return JSONResponse(status_code=http.HTTP_422_UNPROCESSABLE_ENTITY, content=jsonable_encoder(payload))

async def unhandled_exception_handler(request: Request, exc: Exception):
    # Avoid leaking internals; logs will carry the stacktrace
    log.exception("unhandled_error", exc_info=exc)
    payload = _build_error("server_error", http.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected error occurred.")
    return JSONResponse(status_code=http.HTTP_500_INTERNAL_SERVER_ERROR, content=payload)
