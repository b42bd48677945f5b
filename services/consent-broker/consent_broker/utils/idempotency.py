from __future__ import annotations
import hashlib
import json
from typing import Any, Dict, Optional
from redis.asyncio import Redis

IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60  # 24h
_LOCK_TTL_SECONDS = 60                  # short lock while the PAR call is in flight

def body_fingerprint(route: str, data: Dict[str, Any]) -> str:
    # Stable JSON -> SHA256 so the same logical payload always hashes the same
    s = json.dumps({"route": route, "body": data}, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)
    return hashlib.sha256(s.encode("utf-8")).hexdigest()

class IdempotencyStore:
    def __init__(self, redis: Redis, *, namespace: str = "consent-create") -> None:
        self._redis = redis
        self._namespace = namespace

    def _key(self, idem_key: str) -> str:
        return f"idem:{self._namespace}:{idem_key}"

    async def read_entry(self, idem_key: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.get(self._key(idem_key))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    async def try_lock(self, idem_key: str, body_sha: str) -> bool:
        # SET NX to claim the key briefly while we create the consent
        value = json.dumps({"state": "LOCK", "body_sha256": body_sha})
        return bool(await self._redis.set(self._key(idem_key), value, nx=True, ex=_LOCK_TTL_SECONDS))

    async def release(self, idem_key: str) -> None:
        await self._redis.delete(self._key(idem_key))

    async def store_final(self, idem_key: str, body_sha: str, response_dict: Dict[str, Any], status_code: int) -> None:
        value = json.dumps({
            "state": "FINAL",
            "body_sha256": body_sha,
            "response": response_dict,
            "status_code": status_code,
        })
        await self._redis.set(self._key(idem_key), value, ex=IDEMPOTENCY_TTL_SECONDS)
