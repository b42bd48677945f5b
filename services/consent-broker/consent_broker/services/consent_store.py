"""Async facade over the consent repository.

Writes are merged per field, serialized per consent_id inside this process,
and run in a worker thread so the event loop never blocks on the database.
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from anyio import to_thread

from consent_broker.core.errors import PersistenceError
from consent_broker.repositories.consents import ConsentRepository

log = logging.getLogger("consent-store")


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    def hold(self, key: str) -> "_Held":
        return _Held(self, key)

    def __len__(self) -> int:
        return len(self._locks)


class _Held:
    def __init__(self, owner: KeyedLocks, key: str) -> None:
        self._owner = owner
        self._key = key

    async def __aenter__(self) -> None:
        owner = self._owner
        lock = owner._locks.setdefault(self._key, asyncio.Lock())
        owner._users[self._key] += 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_user()
            raise

    async def __aexit__(self, *exc: Any) -> None:
        self._owner._locks[self._key].release()
        self._release_user()

    def _release_user(self) -> None:
        owner = self._owner
        owner._users[self._key] -= 1
        if owner._users[self._key] <= 0:
            owner._users.pop(self._key, None)
            owner._locks.pop(self._key, None)


class ConsentStore:
    def __init__(
        self,
        repository: ConsentRepository,
        *,
        token_cache_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self._repo = repository
        self._locks = KeyedLocks()
        self._token_cache_attempts = max(1, token_cache_attempts)
        self._backoff = retry_backoff_seconds

    @property
    def enabled(self) -> bool:
        return self._repo.enabled()

    async def _write(self, consent_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        written_at = datetime.now(timezone.utc)
        async with self._locks.hold(consent_id):
            return await to_thread.run_sync(
                lambda: self._repo.upsert(consent_id, fields, written_at=written_at)
            )

    async def upsert(self, consent_id: str, fields: Dict[str, Any], *, context: str) -> bool:
        """Soft-failing merge write. Returns False when nothing was persisted."""
        if not consent_id:
            return False
        if not self.enabled:
            log.debug("Consent store disabled; skipping write", extra={"consent_id": consent_id, "context": context})
            return False
        try:
            await self._write(consent_id, fields)
        except PersistenceError as e:
            log.error(
                "Failed to persist consent event: %s", e,
                extra={"consent_id": consent_id, "context": context},
            )
            return False
        log.debug(
            "Consent event persisted",
            extra={"consent_id": consent_id, "context": context, "status": fields.get("status")},
        )
        return True

    async def update_token_cache(self, consent_id: str, cache: Dict[str, Any]) -> bool:
        """Token cache writes are retried; losing one forces a needless re-authentication."""
        if not self.enabled:
            return False
        for attempt in range(1, self._token_cache_attempts + 1):
            try:
                await self._write(consent_id, {"metadata": {"token_cache": cache}})
                return True
            except PersistenceError as e:
                log.warning(
                    "Token cache write failed (attempt %d/%d): %s", attempt, self._token_cache_attempts, e,
                    extra={"consent_id": consent_id, "context": "token_cache"},
                )
                if attempt < self._token_cache_attempts:
                    await asyncio.sleep(self._backoff * attempt)
        log.warning(
            "Token cache not persisted; next call will re-authenticate",
            extra={"consent_id": consent_id, "context": "token_cache"},
        )
        return False

    async def get(self, consent_id: str) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        return await to_thread.run_sync(lambda: self._repo.get(consent_id))

    async def latest_authorized(self) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        return await to_thread.run_sync(self._repo.latest_authorized)
