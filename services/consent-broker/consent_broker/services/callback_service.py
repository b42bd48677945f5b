from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from consent_broker.api.schemas.consents import ConsentStatus
from consent_broker.core.errors import PersistenceError, ReconciliationError
from consent_broker.core.metrics import inc_consent_callbacks
from consent_broker.security.state import consent_id_from_state, decode_state
from consent_broker.services.auth_code_buffer import AuthCodeBuffer
from consent_broker.services.consent_store import ConsentStore

log = logging.getLogger("consent-callback")


@dataclass
class CallbackOutcome:
    consent_id: Optional[str]
    persisted: bool
    status: str


def flatten_query(query: Mapping[str, Any]) -> Dict[str, str]:
    """Multi-valued params collapse to one comma-joined string."""
    flat: Dict[str, str] = {}
    for key, value in query.items():
        if isinstance(value, (list, tuple)):
            flat[key] = ",".join(str(v) for v in value)
        elif value is not None:
            flat[key] = str(value)
    return flat


def callback_status(code: Optional[str], error: Optional[str]) -> ConsentStatus:
    if error:
        return ConsentStatus.CALLBACK_ERROR
    if code:
        return ConsentStatus.AUTHORIZATION_CODE_RECEIVED
    return ConsentStatus.CALLBACK_RECEIVED


def _first(value: Any) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return value or None


class CallbackReconciler:
    """Matches an authorization-server redirect to the consent that started it."""

    def __init__(self, store: ConsentStore, buffer: Optional[AuthCodeBuffer] = None) -> None:
        self._store = store
        self._buffer = buffer

    def _resolve_state(self, state: Optional[str]) -> tuple:
        payload = decode_state(state)
        consent_id = consent_id_from_state(payload)
        if not consent_id:
            raise ReconciliationError("consent_id missing in state")
        return payload, consent_id

    async def reconcile(self, query: Mapping[str, Any]) -> CallbackOutcome:
        code = _first(query.get("code"))
        state = _first(query.get("state"))
        issuer = _first(query.get("iss"))
        error = _first(query.get("error"))
        error_description = _first(query.get("error_description"))

        status = callback_status(code, error)
        inc_consent_callbacks(status.value)

        try:
            state_payload, consent_id = self._resolve_state(state)
        except ReconciliationError as e:
            log.warning("Skipping callback persistence: %s", e.message, extra={"status": status.value})
            return CallbackOutcome(consent_id=None, persisted=False, status=status.value)

        persisted = await self._store.upsert(
            consent_id,
            {
                "auth_code": code,
                "issuer": issuer,
                "state_payload": state_payload,
                "callback_query": flatten_query(query),
                "callback_error": (
                    {"error": error, "error_description": error_description}
                    if error or error_description else None
                ),
                "callback_received_at": datetime.now(timezone.utc),
                "status": status.value,
            },
            context="consent_callback",
        )
        log.info(
            "OAuth redirect captured",
            extra={"consent_id": consent_id, "status": status.value, "context": "persisted" if persisted else "local"},
        )

        if code and self._buffer is not None:
            verifier = await self._verifier_for(consent_id, state_payload)
            if verifier:
                self._buffer.add({
                    "code": code,
                    "code_verifier": verifier,
                    "consent_id": consent_id,
                    "state": state,
                    "redirect_query": flatten_query(query),
                })

        return CallbackOutcome(consent_id=consent_id, persisted=persisted, status=status.value)

    async def _verifier_for(self, consent_id: str, state_payload: Dict[str, Any]) -> Optional[str]:
        # stored verifier wins over whatever came back in state
        try:
            record = await self._store.get(consent_id)
        except PersistenceError as e:
            log.warning("Stored verifier unavailable: %s", e, extra={"consent_id": consent_id})
            record = None
        if record and record.get("code_verifier"):
            return record["code_verifier"]
        verifier = state_payload.get("code_verifier")
        return verifier if isinstance(verifier, str) and verifier else None
