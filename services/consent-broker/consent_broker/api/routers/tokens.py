from __future__ import annotations
from fastapi import APIRouter, Depends

from consent_broker.api.deps import get_token_manager
from consent_broker.api.schemas.consents import AuthorizationCodeExchangeRequest
from consent_broker.services.token_service import TokenLifecycleManager

router = APIRouter(prefix="/token", tags=["token"])


@router.post("/authorization-code", summary="Exchange an authorization code (upstream passthrough)")
async def exchange_authorization_code(
    payload: AuthorizationCodeExchangeRequest,
    tokens: TokenLifecycleManager = Depends(get_token_manager),
):
    return await tokens.exchange_authorization_code(payload.code, payload.code_verifier)
