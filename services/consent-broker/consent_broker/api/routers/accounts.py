from __future__ import annotations
from fastapi import APIRouter, Depends

from consent_broker.api.deps import get_account_information
from consent_broker.api.schemas.consents import AccountBalancesResponse
from consent_broker.services.resource_service import AccountInformationService

router = APIRouter(prefix="/consents", tags=["account-information"])


# registered before the templated route so "latest" is not taken for an id
@router.get("/latest/accounts/balances", response_model=AccountBalancesResponse, summary="Balances for the latest authorized consent")
async def latest_balances(service: AccountInformationService = Depends(get_account_information)):
    return AccountBalancesResponse(**await service.balances(None))


@router.get("/{consent_id}/accounts/balances", response_model=AccountBalancesResponse, summary="Balances for a consent")
async def consent_balances(consent_id: str, service: AccountInformationService = Depends(get_account_information)):
    return AccountBalancesResponse(**await service.balances(consent_id))
