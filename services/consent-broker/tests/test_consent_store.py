import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from consent_broker.core.errors import PersistenceError
from consent_broker.models.consent import ConsentRecord
from consent_broker.repositories.consents import DisabledConsentRepository, SqlConsentRepository
from consent_broker.services.consent_store import ConsentStore, KeyedLocks


def _row_count(repository) -> int:
    with repository._session_factory() as db:
        return db.execute(select(func.count()).select_from(ConsentRecord)).scalar_one()


async def test_upsert_is_idempotent_on_consent_id(store, repository) -> None:
    fields = {"consent_type": "data-sharing", "status": "redirect_ready", "code_verifier": "v1"}

    assert await store.upsert("c1", fields, context="test") is True
    assert await store.upsert("c1", fields, context="test") is True

    assert _row_count(repository) == 1
    record = await store.get("c1")
    assert record["status"] == "redirect_ready"
    assert record["code_verifier"] == "v1"


async def test_partial_writes_merge_and_leave_other_fields(store) -> None:
    await store.upsert("c1", {"status": "redirect_ready", "bank_label": "Bank A", "metadata": {"scope": "accounts openid"}}, context="test")
    await store.upsert("c1", {"status": "authorization_code_received", "auth_code": "abc", "metadata": {"token_cache": {"access_token": "t"}}}, context="test")

    record = await store.get("c1")
    assert record["bank_label"] == "Bank A"
    assert record["auth_code"] == "abc"
    assert record["metadata"] == {"scope": "accounts openid", "token_cache": {"access_token": "t"}}
    assert set(record["field_versions"]) >= {"status", "auth_code", "metadata.scope", "metadata.token_cache"}


async def test_code_verifier_is_write_once(store) -> None:
    await store.upsert("c1", {"code_verifier": "original"}, context="test")
    await store.upsert("c1", {"code_verifier": "attacker"}, context="test")

    assert (await store.get("c1"))["code_verifier"] == "original"


def test_stale_write_does_not_overwrite_newer_field(repository) -> None:
    newer = datetime(2026, 1, 2, tzinfo=timezone.utc)
    older = newer - timedelta(minutes=5)

    repository.upsert("c1", {"status": "authorization_code_received", "metadata": {"k": "new"}}, written_at=newer)
    record = repository.upsert("c1", {"status": "redirect_ready", "bank_label": "late", "metadata": {"k": "old"}}, written_at=older)

    assert record["status"] == "authorization_code_received"
    assert record["metadata"]["k"] == "new"
    # fields never written before are still accepted
    assert record["bank_label"] == "late"
    assert record["updated_at"] == newer.isoformat()


def test_unknown_field_is_rejected(repository) -> None:
    with pytest.raises(ValueError):
        repository.upsert("c1", {"favourite_colour": "blue"}, written_at=datetime.now(timezone.utc))


async def test_latest_authorized_prefers_most_recent_callback(store) -> None:
    await store.upsert("old", {"auth_code": "a", "callback_received_at": datetime(2026, 1, 1, tzinfo=timezone.utc)}, context="test")
    await store.upsert("new", {"auth_code": "b", "callback_received_at": datetime(2026, 1, 3, tzinfo=timezone.utc)}, context="test")
    await store.upsert("pending", {"status": "redirect_ready"}, context="test")

    latest = await store.latest_authorized()
    assert latest["consent_id"] == "new"


async def test_disabled_store_is_a_no_op() -> None:
    store = ConsentStore(DisabledConsentRepository())

    assert store.enabled is False
    assert await store.upsert("c1", {"status": "redirect_ready"}, context="test") is False
    assert await store.update_token_cache("c1", {"access_token": "t"}) is False
    assert await store.get("c1") is None
    assert await store.latest_authorized() is None


class FlakyRepository:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def enabled(self) -> bool:
        return True

    def upsert(self, consent_id, fields, *, written_at):
        self.calls += 1
        if self.calls <= self.failures:
            raise PersistenceError("database is locked")
        return {"consent_id": consent_id, **fields}

    def get(self, consent_id):
        return None

    def latest_authorized(self):
        return None


async def test_token_cache_write_is_retried() -> None:
    repo = FlakyRepository(failures=2)
    store = ConsentStore(repo, token_cache_attempts=3, retry_backoff_seconds=0)

    assert await store.update_token_cache("c1", {"access_token": "t"}) is True
    assert repo.calls == 3


async def test_token_cache_write_gives_up_after_attempts() -> None:
    repo = FlakyRepository(failures=10)
    store = ConsentStore(repo, token_cache_attempts=3, retry_backoff_seconds=0)

    assert await store.update_token_cache("c1", {"access_token": "t"}) is False
    assert repo.calls == 3


async def test_creation_write_failure_is_soft() -> None:
    store = ConsentStore(FlakyRepository(failures=1))

    assert await store.upsert("c1", {"status": "redirect_ready"}, context="test") is False


async def test_keyed_locks_serialize_per_key_and_clean_up() -> None:
    locks = KeyedLocks()
    order = []

    async def worker(name: str, delay: float) -> None:
        async with locks.hold("c1"):
            order.append(f"{name}-in")
            await asyncio.sleep(delay)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a", 0.02), worker("b", 0))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0


class RacingRepository(SqlConsentRepository):
    def __init__(self) -> None:
        super().__init__(session_factory=None)
        self.attempts = 0

    def _upsert_once(self, consent_id, fields, written_at):
        self.attempts += 1
        raise IntegrityError("INSERT INTO consent_sessions", {}, Exception("UNIQUE constraint failed"))


async def test_repeated_insert_race_is_a_soft_failure() -> None:
    repo = RacingRepository()
    store = ConsentStore(repo, token_cache_attempts=1, retry_backoff_seconds=0)

    with pytest.raises(PersistenceError):
        repo.upsert("c1", {"status": "redirect_ready"}, written_at=datetime.now(timezone.utc))
    assert repo.attempts == 2

    assert await store.upsert("c1", {"status": "redirect_ready"}, context="test") is False
    assert await store.update_token_cache("c1", {"access_token": "t"}) is False
