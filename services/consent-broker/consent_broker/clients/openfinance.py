"""HTTP client for the Open Finance authorization and resource servers."""
from __future__ import annotations

import logging
import ssl
import time
from typing import Any, Dict, Optional, Tuple, Union

import httpx

from consent_broker.core.correlation import new_interaction_id
from consent_broker.core.errors import UpstreamError
from consent_broker.core.logging import summarize_payload
from consent_broker.core.metrics import observe_upstream

log = logging.getLogger("openfinance")


def _body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class OpenFinanceClient:
    """Thin async wrapper over the PAR, token and resource endpoints.

    Every call opens its own connection with an explicit timeout; the upstream
    is a third-party sandbox with no SLA. Non-2xx answers become UpstreamError
    carrying the upstream status and body unchanged.
    """

    def __init__(
        self,
        *,
        par_endpoint: str,
        token_endpoint: str,
        resource_server: str,
        timeout: float = 20.0,
        tls_context: Optional[ssl.SSLContext] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._par_endpoint = par_endpoint
        self._token_endpoint = token_endpoint
        self._resource_server = resource_server.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        # Mutual TLS when a transport certificate is configured
        self._verify: Union[bool, ssl.SSLContext] = tls_context if tls_context is not None else True

    async def _send(self, call: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, verify=self._verify, transport=self._transport) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            observe_upstream(call, "transport_error", time.perf_counter() - start)
            log.error("Upstream call failed: %s", e, extra={"endpoint": url})
            raise UpstreamError(502, {"error": str(e) or e.__class__.__name__}) from e
        observe_upstream(call, str(response.status_code), time.perf_counter() - start)
        return response

    async def push_authorization_request(self, form: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        interaction_id = new_interaction_id()
        response = await self._send(
            "par",
            "POST",
            self._par_endpoint,
            data=form,
            headers={"x-fapi-interaction-id": interaction_id},
        )
        body = _body(response)
        if response.is_error:
            log.error(
                "PAR request rejected",
                extra={
                    "endpoint": self._par_endpoint,
                    "interaction_id": interaction_id,
                    "status_code": response.status_code,
                    "upstream": summarize_payload(body),
                },
            )
            raise UpstreamError(response.status_code, body)
        if not isinstance(body, dict) or not body.get("request_uri"):
            raise UpstreamError(502, {"error": "PAR response did not include a request_uri", "upstream": body})
        return response.status_code, body

    async def token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        response = await self._send("token", "POST", self._token_endpoint, data=form)
        body = _body(response)
        if response.is_error:
            log.error(
                "Token request rejected",
                extra={
                    "endpoint": self._token_endpoint,
                    "grant_type": form.get("grant_type"),
                    "status_code": response.status_code,
                    "upstream": summarize_payload(body),
                },
            )
            raise UpstreamError(response.status_code, body)
        if not isinstance(body, dict):
            raise UpstreamError(502, {"error": "Token endpoint returned a non-JSON body"})
        return body

    async def get_resource(self, path: str, access_token: str) -> Any:
        url = path if path.startswith("http") else f"{self._resource_server}{path}"
        response = await self._send(
            "resource",
            "GET",
            url,
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {access_token}",
                "x-fapi-interaction-id": new_interaction_id(),
            },
        )
        body = _body(response)
        if response.is_error:
            raise UpstreamError(response.status_code, body)
        return body
