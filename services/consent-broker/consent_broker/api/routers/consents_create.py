from __future__ import annotations
from typing import Optional
from fastapi import APIRouter, Depends, Header, Response, status

from consent_broker.api.deps import get_consent_submitter, get_idempotency_store
from consent_broker.api.schemas.consents import (
    ConsentCreateResponse,
    DataSharingConsentRequest,
    SinglePaymentConsentRequest,
    VariableOnDemandConsentRequest,
)
from consent_broker.services.consent_service import (
    ConsentCreated,
    ConsentSubmitter,
    create_consent_idempotently,
)
from consent_broker.utils.idempotency import IdempotencyStore

router = APIRouter(prefix="/consent-create", tags=["consent-create"])

COMMON_HEADERS = {
    "X-Request-ID": {
        "description": "Correlation ID for tracing.",
        "schema": {"type": "string"},
    },
}

CREATE_RESPONSES = {
    200: {"description": "Consent pushed; redirect the user", "headers": {**COMMON_HEADERS, "Idempotency-Replayed": {"description": "True if replayed", "schema": {"type": "boolean"}}}},
    400: {"description": "Invalid consent input", "headers": COMMON_HEADERS},
    409: {"description": "Conflict (idempotency)", "headers": COMMON_HEADERS},
}


def _respond(response: Response, result: ConsentCreated, is_replay: bool) -> ConsentCreateResponse:
    # mirror the authorization server's success status
    response.status_code = result.upstream_status
    if is_replay:
        response.headers["Idempotency-Replayed"] = "true"
    return result.response


@router.post(
    "/single-payment",
    summary="Create a single instant payment consent",
    response_model=ConsentCreateResponse,
    responses=CREATE_RESPONSES,
)
async def create_single_payment(
    payload: SinglePaymentConsentRequest,
    response: Response,
    submitter: ConsentSubmitter = Depends(get_consent_submitter),
    idempotency: Optional[IdempotencyStore] = Depends(get_idempotency_store),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    result, is_replay = await create_consent_idempotently(
        idempotency,
        idempotency_key=idempotency_key,
        route="single-payment",
        body=payload.model_dump(),
        create=lambda: submitter.create_single_payment(payload.payment_amount, payload.bank_label),
    )
    return _respond(response, result, is_replay)


@router.post(
    "/variable-on-demand-payments",
    summary="Create a variable on-demand payment consent",
    response_model=ConsentCreateResponse,
    responses=CREATE_RESPONSES,
)
async def create_variable_on_demand(
    payload: VariableOnDemandConsentRequest,
    response: Response,
    submitter: ConsentSubmitter = Depends(get_consent_submitter),
    idempotency: Optional[IdempotencyStore] = Depends(get_idempotency_store),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    result, is_replay = await create_consent_idempotently(
        idempotency,
        idempotency_key=idempotency_key,
        route="variable-on-demand-payments",
        body=payload.model_dump(),
        create=lambda: submitter.create_variable_on_demand(payload.max_payment_amount, payload.bank_label),
    )
    return _respond(response, result, is_replay)


@router.post(
    "/bank-data",
    summary="Create a data sharing (account access) consent",
    response_model=ConsentCreateResponse,
    responses=CREATE_RESPONSES,
)
async def create_bank_data(
    payload: DataSharingConsentRequest,
    response: Response,
    submitter: ConsentSubmitter = Depends(get_consent_submitter),
    idempotency: Optional[IdempotencyStore] = Depends(get_idempotency_store),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    result, is_replay = await create_consent_idempotently(
        idempotency,
        idempotency_key=idempotency_key,
        route="bank-data",
        body=payload.model_dump(),
        create=lambda: submitter.create_data_sharing(
            payload.data_permissions,
            payload.valid_from,
            payload.valid_until,
            payload.bank_label,
        ),
    )
    return _respond(response, result, is_replay)
