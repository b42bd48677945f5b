"""Access tokens for authorized consents.

The token cache lives in the consent record (`metadata.token_cache`) so any
replica can reuse a token obtained by another one. A cached token is only
handed out while it has more than SAFETY_WINDOW left before expiry.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from consent_broker.clients.openfinance import OpenFinanceClient
from consent_broker.core.errors import (
    ConsentNotAuthorized,
    ConsentNotFound,
    ConsentStoreUnavailable,
    TokenAcquisitionFailed,
    UpstreamError,
)
from consent_broker.core.logging import preview
from consent_broker.core.metrics import inc_token_cache_hits, inc_token_requests
from consent_broker.security.client_assertion import ClientAuthenticator
from consent_broker.services.consent_store import ConsentStore

log = logging.getLogger("token-lifecycle")

SAFETY_WINDOW = timedelta(seconds=60)


def _parse_instant(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def coerce_token_cache(metadata: Any) -> Optional[Dict[str, Any]]:
    raw = metadata.get("token_cache") if isinstance(metadata, dict) else None
    if not isinstance(raw, dict):
        return None
    return {
        "access_token": raw.get("access_token"),
        "refresh_token": raw.get("refresh_token"),
        "expires_at": raw.get("expires_at"),
        "obtained_at": raw.get("obtained_at"),
    }


def usable_access_token(cache: Optional[Dict[str, Any]], now: datetime) -> Optional[str]:
    if not cache or not cache.get("access_token"):
        return None
    expires_at = _parse_instant(cache.get("expires_at"))
    if expires_at is None or expires_at - SAFETY_WINDOW <= now:
        return None
    return cache["access_token"]


def expiry_from(expires_in: Any, now: datetime) -> Optional[str]:
    try:
        seconds = float(expires_in)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return (now + timedelta(seconds=seconds)).isoformat()


class TokenLifecycleManager:
    def __init__(
        self,
        *,
        store: ConsentStore,
        client: OpenFinanceClient,
        authenticator: ClientAuthenticator,
        redirect_uri: str,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._client = client
        self._authenticator = authenticator
        self._redirect_uri = redirect_uri
        self._now = clock

    async def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        # fresh assertion per call
        grant_type = form["grant_type"]
        try:
            body = await self._client.token_request({**form, **self._authenticator.assertion_form()})
        except UpstreamError:
            inc_token_requests(grant_type, "error")
            raise
        inc_token_requests(grant_type, "ok")
        return body

    async def exchange_authorization_code(self, code: str, code_verifier: str) -> Dict[str, Any]:
        """Raw authorization_code grant; upstream errors propagate unchanged."""
        log.info("Exchanging authorization code", extra={"grant_type": "authorization_code"})
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": self._redirect_uri,
        })

    async def refresh(self, refresh_token: str) -> Dict[str, Any]:
        log.info("Refreshing access token", extra={"grant_type": "refresh_token"})
        return await self._token_request({"grant_type": "refresh_token", "refresh_token": refresh_token})

    async def get_usable_access_token(self, consent_id: str) -> str:
        if not self._store.enabled:
            raise ConsentStoreUnavailable()
        record = await self._store.get(consent_id)
        if record is None:
            raise ConsentNotFound()
        return await self._token_for(record)

    async def get_latest_usable_access_token(self) -> str:
        _, token = await self.resolve(None)
        return token

    async def resolve(self, consent_id: Optional[str]) -> tuple:
        """(consent_id, access_token) for a given consent, or the latest authorized one."""
        if consent_id:
            return consent_id, await self.get_usable_access_token(consent_id)
        if not self._store.enabled:
            raise ConsentStoreUnavailable()
        record = await self._store.latest_authorized()
        if record is None:
            raise ConsentNotFound("No authorized consent available.")
        return record["consent_id"], await self._token_for(record)

    async def _token_for(self, record: Dict[str, Any]) -> str:
        consent_id = record["consent_id"]
        if not record.get("auth_code") or not record.get("code_verifier"):
            raise ConsentNotAuthorized()

        now = self._now()
        cache = coerce_token_cache(record.get("metadata"))
        cached = usable_access_token(cache, now)
        if cached:
            inc_token_cache_hits()
            log.debug("Using cached access token", extra={"consent_id": consent_id})
            return cached

        previous_refresh = (cache or {}).get("refresh_token")
        try:
            if previous_refresh:
                grant_type = "refresh_token"
                body = await self.refresh(previous_refresh)
            else:
                grant_type = "authorization_code"
                body = await self.exchange_authorization_code(record["auth_code"], record["code_verifier"])
        except UpstreamError as e:
            log.error(
                "Token acquisition failed", extra={"consent_id": consent_id, "status_code": e.status_code}
            )
            raise TokenAcquisitionFailed() from e

        access_token = body.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            log.error("Token response without access_token", extra={"consent_id": consent_id, "grant_type": grant_type})
            raise TokenAcquisitionFailed(f"{grant_type} grant did not return an access token.")

        new_cache = {
            "access_token": access_token,
            # keep the previous refresh token unless the server rotated it
            "refresh_token": body.get("refresh_token") or (previous_refresh if grant_type == "refresh_token" else None),
            "expires_at": expiry_from(body.get("expires_in"), now),
            "obtained_at": now.isoformat(),
        }
        await self._store.update_token_cache(consent_id, new_cache)
        log.info(
            "Access token obtained (%s)", preview(access_token),
            extra={"consent_id": consent_id, "grant_type": grant_type},
        )
        return access_token
