from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from consent_broker.clients.openfinance import OpenFinanceClient
from consent_broker.services.token_service import TokenLifecycleManager

log = logging.getLogger("account-information")

ACCOUNTS_PATH = "/open-finance/account-information/v1.2/accounts"


def account_ids(payload: Any) -> List[str]:
    data = payload.get("Data") if isinstance(payload, dict) else None
    accounts = data.get("Account") if isinstance(data, dict) else None
    if not isinstance(accounts, list):
        return []
    ids = []
    for account in accounts:
        account_id = account.get("AccountId") if isinstance(account, dict) else None
        if isinstance(account_id, str) and account_id:
            ids.append(account_id)
    return ids


class AccountInformationService:
    """Lists accounts for a consent and pulls balances with a bounded fan-out."""

    def __init__(self, *, tokens: TokenLifecycleManager, client: OpenFinanceClient, fanout_limit: int = 4) -> None:
        self._tokens = tokens
        self._client = client
        self._fanout_limit = max(1, fanout_limit)

    async def balances(self, consent_id: Optional[str] = None) -> Dict[str, Any]:
        resolved_id, access_token = await self._tokens.resolve(consent_id)
        accounts = await self._client.get_resource(ACCOUNTS_PATH, access_token)
        ids = account_ids(accounts)
        log.info("Fetching balances", extra={"consent_id": resolved_id, "context": f"{len(ids)} accounts"})

        semaphore = asyncio.Semaphore(self._fanout_limit)

        async def fetch(account_id: str) -> Any:
            async with semaphore:
                return await self._client.get_resource(f"{ACCOUNTS_PATH}/{account_id}/balances", access_token)

        payloads = await asyncio.gather(*(fetch(account_id) for account_id in ids))
        return {"consent_id": resolved_id, "accounts": dict(zip(ids, payloads))}
