# consent_broker/services/consent_service.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode
from uuid import uuid4

from fastapi import HTTPException, status

from consent_broker.api.schemas.consents import (
    ConsentCreateResponse,
    ConsentStatus,
    ConsentType,
    DATA_PERMISSIONS,
)
from consent_broker.clients.openfinance import OpenFinanceClient
from consent_broker.core.config import Settings
from consent_broker.core.errors import ConsentValidationError, UpstreamError
from consent_broker.core.logging import preview
from consent_broker.core.metrics import inc_consents_created, inc_par_failures
from consent_broker.security.client_assertion import ClientAuthenticator
from consent_broker.security.pii_cipher import PIICipher
from consent_broker.security.pkce import PKCEPair, generate_pkce_pair
from consent_broker.security.request_signer import RequestSigner
from consent_broker.security.state import encode_state
from consent_broker.services.consent_store import ConsentStore
from consent_broker.utils.idempotency import IdempotencyStore, body_fingerprint

log = logging.getLogger("consent-create")

AMOUNT_PATTERN = re.compile(r"(0|[1-9][0-9]*)\.[0-9]{2}")
SERVICE_INITIATION_CONSENT = "urn:openfinanceuae:service-initiation-consent:v1.2"
ACCOUNT_ACCESS_CONSENT = "urn:openfinanceuae:account-access-consent:v1.2"
VRP_PERMISSIONS = ["ReadAccountsBasic", "ReadAccountsDetail", "ReadBalances"]
MAX_AGE_SECONDS = 3600

_SCOPES = {
    ConsentType.SINGLE_PAYMENT: "payments openid",
    ConsentType.VARIABLE_ON_DEMAND_PAYMENT: "payments accounts openid",
    ConsentType.DATA_SHARING: "accounts openid",
}


def validate_amount(value: Any, field: str) -> str:
    """Two decimals, no separators, strictly positive: "100.00" ok, "0.00" / "100" not."""
    if not isinstance(value, str) or not value.strip() or not AMOUNT_PATTERN.fullmatch(value):
        raise ConsentValidationError(f"Invalid {field}")
    try:
        if Decimal(value) <= 0:
            raise ConsentValidationError(f"Invalid {field}")
    except InvalidOperation as e:
        raise ConsentValidationError(f"Invalid {field}") from e
    return value


def validate_permissions(value: Any) -> List[str]:
    if (
        not isinstance(value, list)
        or not value
        or not all(isinstance(p, str) and p in DATA_PERMISSIONS for p in value)
    ):
        raise ConsentValidationError("Invalid data_permissions")
    return list(value)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError("not a string")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_validity_window(valid_from: Optional[str], valid_until: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
    try:
        start = _parse_iso(valid_from)
        end = _parse_iso(valid_until)
    except ValueError as e:
        raise ConsentValidationError("valid_from and valid_until must be valid ISO date strings") from e
    if start and end and start >= end:
        raise ConsentValidationError("valid_until must be later than valid_from")
    return start, end


def iso_z(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_creditor_pii(settings: Settings) -> Dict[str, Any]:
    name = settings.CREDITOR_NAME
    return {
        "Initiation": {
            "Creditor": [
                {
                    "CreditorAgent": {
                        "SchemeName": "BICFI",
                        "Identification": settings.CREDITOR_AGENT_ID,
                        "Name": name,
                        "PostalAddress": [{"AddressType": "Business", "Country": settings.CREDITOR_COUNTRY}],
                    },
                    "Creditor": {"Name": name},
                    "CreditorAccount": {
                        "SchemeName": "AccountNumber",
                        "Identification": settings.CREDITOR_ACCOUNT_ID,
                        "Name": {"en": name},
                    },
                }
            ]
        },
        "Risk": {
            "DebtorIndicators": {"UserName": {"en": "xx"}},
            "CreditorIndicators": {
                "AccountType": "Retail",
                "IsCreditorConfirmed": True,
                "IsCreditorPrePopulated": True,
                "TradingName": name,
            },
        },
    }


@dataclass
class ConsentCreated:
    response: ConsentCreateResponse
    upstream_status: int


class ConsentSubmitter:
    """Builds, signs and pushes consent authorization requests (PAR)."""

    def __init__(
        self,
        *,
        settings: Settings,
        signer: RequestSigner,
        authenticator: ClientAuthenticator,
        pii_cipher: PIICipher,
        client: OpenFinanceClient,
        store: ConsentStore,
        pkce_factory: Callable[[], PKCEPair] = generate_pkce_pair,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings
        self._signer = signer
        self._authenticator = authenticator
        self._pii = pii_cipher
        self._client = client
        self._store = store
        self._pkce_factory = pkce_factory
        self._now = clock

    def _amount(self, value: str) -> Dict[str, str]:
        return {"Amount": value, "Currency": self._settings.CONSENT_CURRENCY}

    def _default_expiry(self, now: datetime) -> datetime:
        return now + timedelta(days=self._settings.CONSENT_DEFAULT_VALIDITY_DAYS)

    async def create_single_payment(self, payment_amount: Any, bank_label: Optional[str] = None) -> ConsentCreated:
        amount = validate_amount(payment_amount, "payment_amount")
        log.info("Single instant payment consent requested",
                 extra={"consent_type": ConsentType.SINGLE_PAYMENT.value, "bank": bank_label or "unspecified"})

        encrypted_pii = await self._pii.encrypt(build_creditor_pii(self._settings))
        now = self._now()
        # tomorrow, 23:00 UTC
        expiration = (now + timedelta(days=1)).replace(hour=23, minute=0, second=0, microsecond=0)
        consent_id = str(uuid4())
        details = [{
            "type": SERVICE_INITIATION_CONSENT,
            "consent": {
                "ConsentId": consent_id,
                "IsSingleAuthorization": True,
                "ExpirationDateTime": iso_z(expiration),
                "PersonalIdentifiableInformation": encrypted_pii,
                "ControlParameters": {
                    "ConsentSchedule": {
                        "SinglePayment": {"Type": "SingleInstantPayment", "Amount": self._amount(amount)},
                    },
                },
                "PaymentPurposeCode": "ACM",
            },
        }]
        return await self._submit(
            consent_type=ConsentType.SINGLE_PAYMENT,
            consent_id=consent_id,
            authorization_details=details,
            bank_label=bank_label,
            metadata={"payment_amount": amount},
        )

    async def create_variable_on_demand(self, max_payment_amount: Any, bank_label: Optional[str] = None) -> ConsentCreated:
        amount = validate_amount(max_payment_amount, "max_payment_amount")
        log.info("VRP consent requested",
                 extra={"consent_type": ConsentType.VARIABLE_ON_DEMAND_PAYMENT.value, "bank": bank_label or "unspecified"})

        encrypted_pii = await self._pii.encrypt(build_creditor_pii(self._settings))
        now = self._now()
        consent_id = str(uuid4())
        details = [{
            "type": SERVICE_INITIATION_CONSENT,
            "consent": {
                "ConsentId": consent_id,
                "IsSingleAuthorization": True,
                "ExpirationDateTime": iso_z(self._default_expiry(now)),
                "Permissions": list(VRP_PERMISSIONS),
                "ControlParameters": {
                    "IsDelegatedAuthentication": False,
                    "ConsentSchedule": {
                        "MultiPayment": {
                            "PeriodicSchedule": {
                                "Type": "VariableOnDemand",
                                "PeriodType": "Day",
                                "PeriodStartDate": now.date().isoformat(),
                                "Controls": {"MaximumIndividualAmount": self._amount(amount)},
                            },
                        },
                    },
                },
                "PersonalIdentifiableInformation": encrypted_pii,
                "PaymentPurposeCode": "ACM",
            },
        }]
        return await self._submit(
            consent_type=ConsentType.VARIABLE_ON_DEMAND_PAYMENT,
            consent_id=consent_id,
            authorization_details=details,
            bank_label=bank_label,
            metadata={"max_payment_amount": amount},
        )

    async def create_data_sharing(
        self,
        data_permissions: Any,
        valid_from: Optional[str] = None,
        valid_until: Optional[str] = None,
        bank_label: Optional[str] = None,
    ) -> ConsentCreated:
        permissions = validate_permissions(data_permissions)
        start, end = parse_validity_window(valid_from, valid_until)
        log.info("Data sharing consent requested",
                 extra={"consent_type": ConsentType.DATA_SHARING.value, "bank": bank_label or "unspecified"})

        now = self._now()
        consent_id = str(uuid4())
        consent: Dict[str, Any] = {
            "ExpirationDateTime": iso_z(end or self._default_expiry(now)),
            "ConsentId": consent_id,
            "Permissions": permissions,
            "OpenFinanceBilling": {"UserType": "Retail", "Purpose": "AccountAggregation"},
        }
        if self._settings.OF_BASE_CONSENT_ID:
            consent["BaseConsentId"] = self._settings.OF_BASE_CONSENT_ID
        if start:
            consent["TransactionFromDateTime"] = iso_z(start)
        if end:
            consent["TransactionToDateTime"] = iso_z(end)

        return await self._submit(
            consent_type=ConsentType.DATA_SHARING,
            consent_id=consent_id,
            authorization_details=[{"type": ACCOUNT_ACCESS_CONSENT, "consent": consent}],
            bank_label=bank_label,
            metadata={
                "permissions": permissions,
                "valid_from": iso_z(start) if start else None,
                "valid_until": iso_z(end) if end else None,
            },
        )

    async def _submit(
        self,
        *,
        consent_type: ConsentType,
        consent_id: str,
        authorization_details: List[Dict[str, Any]],
        bank_label: Optional[str],
        metadata: Dict[str, Any],
    ) -> ConsentCreated:
        settings = self._settings
        pkce = self._pkce_factory()
        scope = _SCOPES[consent_type]
        request = {
            "scope": scope,
            "redirect_uri": settings.OF_REDIRECT_URI,
            "client_id": settings.OF_CLIENT_ID,
            "nonce": str(uuid4()),
            "state": encode_state(consent_id, pkce.verifier),
            "response_type": "code",
            "code_challenge_method": "S256",
            "code_challenge": pkce.challenge,
            "max_age": MAX_AGE_SECONDS,
            "authorization_details": authorization_details,
        }
        log.debug("PKCE material ready (verifier %s)", preview(pkce.verifier), extra={"consent_id": consent_id})

        form = {
            "client_id": settings.OF_CLIENT_ID,
            "request": self._signer.sign(request),
            **self._authenticator.assertion_form(),
        }
        log.info("Sending PAR request",
                 extra={"consent_id": consent_id, "consent_type": consent_type.value, "endpoint": settings.OF_PAR_ENDPOINT})
        try:
            upstream_status, par = await self._client.push_authorization_request(form)
        except UpstreamError as e:
            inc_par_failures(consent_type.value)
            log.error("Consent PAR failed",
                      extra={"consent_id": consent_id, "consent_type": consent_type.value, "status_code": e.status_code})
            raise

        query = urlencode({
            "client_id": settings.OF_CLIENT_ID,
            "response_type": "code",
            "scope": "openid",
            "request_uri": par["request_uri"],
        })
        redirect = f"{settings.OF_AUTH_ENDPOINT}?{query}"

        persisted = await self._store.upsert(
            consent_id,
            {
                "consent_type": consent_type.value,
                "redirect_url": redirect,
                "code_verifier": pkce.verifier,
                "bank_label": bank_label,
                "status": ConsentStatus.REDIRECT_READY.value,
                "source": settings.CONSENT_SOURCE,
                "metadata": {
                    "scope": scope,
                    "request_uri": par["request_uri"],
                    "par_expires_in": par.get("expires_in"),
                    **{k: v for k, v in metadata.items() if v is not None},
                },
            },
            context="consent_creation",
        )
        inc_consents_created(consent_type.value)
        log.info("Consent ready",
                 extra={"consent_id": consent_id, "consent_type": consent_type.value,
                        "bank": bank_label or "unspecified", "status": "persisted" if persisted else "not_persisted"})

        return ConsentCreated(
            response=ConsentCreateResponse(redirect=redirect, consent_id=consent_id, code_verifier=pkce.verifier),
            upstream_status=upstream_status,
        )


async def create_consent_idempotently(
    idempotency: Optional[IdempotencyStore],
    *,
    idempotency_key: Optional[str],
    route: str,
    body: Dict[str, Any],
    create: Callable[[], Awaitable[ConsentCreated]],
) -> Tuple[ConsentCreated, bool]:
    """
    Run `create` at most once per Idempotency-Key.

    Returns:
        (result, is_replay)
        - is_replay=True -> caller should add Idempotency-Replayed: true
    """
    if not idempotency or not idempotency_key:
        return await create(), False

    body_sha = body_fingerprint(route, body)

    existing = None
    try:
        existing = await idempotency.read_entry(idempotency_key)
    except Exception as e:
        logging.warning("Idempotency read failed (continuing without strict idempotency): %s", e)

    if existing:
        if existing.get("body_sha256") == body_sha:
            stored = existing.get("response")
            if stored:
                return ConsentCreated(
                    response=ConsentCreateResponse(**stored),
                    upstream_status=int(existing.get("status_code", 200)),
                ), True
            # same body still in flight elsewhere
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="idempotency_conflict")
        # same key, different body -> conflict
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="idempotency_conflict")

    locked = False
    try:
        locked = await idempotency.try_lock(idempotency_key, body_sha)
    except Exception as e:
        logging.warning("Idempotency lock failed (continuing): %s", e)

    try:
        result = await create()
    except Exception:
        if locked:
            try:
                await idempotency.release(idempotency_key)
            except Exception as e:
                logging.warning("Idempotency release failed: %s", e)
        raise

    try:
        await idempotency.store_final(
            idempotency_key,
            body_sha,
            response_dict=result.response.model_dump(mode="json"),
            status_code=result.upstream_status,
        )
    except Exception as e:
        logging.warning("Idempotency store failed (continuing): %s", e)

    return result, False
