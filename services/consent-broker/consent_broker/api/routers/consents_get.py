from __future__ import annotations
from typing import Any, Dict
from fastapi import APIRouter, Depends

from consent_broker.api.deps import get_consent_store
from consent_broker.api.schemas.consents import ConsentSnapshotResponse
from consent_broker.core.errors import ConsentNotFound, ConsentStoreUnavailable
from consent_broker.core.logging import preview
from consent_broker.services.consent_store import ConsentStore

router = APIRouter(prefix="/consents", tags=["consents"])


def snapshot(record: Dict[str, Any]) -> Dict[str, Any]:
    """Record as returned to callers: no merge bookkeeping, tokens previewed."""
    consent = {k: v for k, v in record.items() if k != "field_versions"}
    metadata = dict(consent.get("metadata") or {})
    cache = metadata.get("token_cache")
    if isinstance(cache, dict):
        metadata["token_cache"] = {
            **cache,
            "access_token": preview(cache.get("access_token")),
            "refresh_token": preview(cache.get("refresh_token")),
        }
    consent["metadata"] = metadata
    return consent


@router.get("/{consent_id}", response_model=ConsentSnapshotResponse, summary="Get consent snapshot")
async def get_consent_detail(consent_id: str, store: ConsentStore = Depends(get_consent_store)):
    if not store.enabled:
        raise ConsentStoreUnavailable()
    record = await store.get(consent_id)
    if not record:
        raise ConsentNotFound()
    return ConsentSnapshotResponse(consent=snapshot(record))
