from fastapi import APIRouter, Depends

from consent_broker.api.deps import get_consent_store
from consent_broker.services.consent_store import ConsentStore

router = APIRouter(tags=["health"])


@router.get("/health")
def health(store: ConsentStore = Depends(get_consent_store)):
    return {"status": "ok", "store_enabled": store.enabled}
