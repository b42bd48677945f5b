from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from consent_broker.core.errors import PersistenceError
from consent_broker.models.consent import ConsentRecord

log = logging.getLogger("consent-repository")

# public field name -> mapped attribute
WRITABLE_FIELDS = {
    "consent_type": "consent_type",
    "bank_label": "bank_label",
    "redirect_url": "redirect_url",
    "code_verifier": "code_verifier",
    "status": "status",
    "source": "source",
    "auth_code": "auth_code",
    "issuer": "issuer",
    "state_payload": "state_payload",
    "callback_query": "callback_query",
    "callback_error": "callback_error",
    "callback_received_at": "callback_received_at",
    "metadata": "extra_metadata",
}


class ConsentRepository(Protocol):
    def enabled(self) -> bool: ...
    def upsert(self, consent_id: str, fields: Dict[str, Any], *, written_at: datetime) -> Dict[str, Any]: ...
    def get(self, consent_id: str) -> Optional[Dict[str, Any]]: ...
    def latest_authorized(self) -> Optional[Dict[str, Any]]: ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _aware(value)
    return value.isoformat() if value else None


def _is_stale(previous: Optional[str], written_at: datetime) -> bool:
    if not previous:
        return False
    try:
        return _aware(datetime.fromisoformat(previous)) > written_at
    except ValueError:
        return False


def to_dict(obj: ConsentRecord) -> Dict[str, Any]:
    return {
        "consent_id": obj.consent_id,
        "consent_type": obj.consent_type,
        "bank_label": obj.bank_label,
        "redirect_url": obj.redirect_url,
        "code_verifier": obj.code_verifier,
        "status": obj.status,
        "source": obj.source,
        "auth_code": obj.auth_code,
        "issuer": obj.issuer,
        "state_payload": obj.state_payload,
        "callback_query": obj.callback_query,
        "callback_error": obj.callback_error,
        "callback_received_at": _iso(obj.callback_received_at),
        "metadata": dict(obj.extra_metadata or {}),
        "field_versions": dict(obj.field_versions or {}),
        "created_at": _iso(obj.created_at),
        "updated_at": _iso(obj.updated_at),
    }


def merge_fields(obj: ConsentRecord, fields: Dict[str, Any], written_at: datetime) -> None:
    """Field-level last-write-wins merge of a partial write into `obj`."""
    versions = dict(obj.field_versions or {})
    stamp = written_at.isoformat()

    for name, value in fields.items():
        if name not in WRITABLE_FIELDS:
            raise ValueError(f"unknown consent field: {name}")

        if name == "metadata":
            merged = dict(obj.extra_metadata or {})
            for key, sub_value in (value or {}).items():
                version_key = f"metadata.{key}"
                if _is_stale(versions.get(version_key), written_at):
                    continue
                merged[key] = sub_value
                versions[version_key] = stamp
            obj.extra_metadata = merged
            continue

        if name == "code_verifier" and obj.code_verifier and value != obj.code_verifier:
            log.warning("Ignoring attempt to replace code_verifier", extra={"consent_id": obj.consent_id})
            continue

        if _is_stale(versions.get(name), written_at):
            log.info("Skipping stale write", extra={"consent_id": obj.consent_id, "context": name})
            continue

        setattr(obj, WRITABLE_FIELDS[name], value)
        versions[name] = stamp

    obj.field_versions = versions
    current = _aware(obj.updated_at)
    obj.updated_at = written_at if current is None or written_at > current else current


class SqlConsentRepository:
    """SQLAlchemy-backed consent store; one row per consent_id."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def enabled(self) -> bool:
        return True

    def upsert(self, consent_id: str, fields: Dict[str, Any], *, written_at: datetime) -> Dict[str, Any]:
        try:
            return self._upsert_once(consent_id, fields, written_at)
        except IntegrityError:
            # Another writer inserted the row first; merge into theirs
            pass
        try:
            return self._upsert_once(consent_id, fields, written_at)
        except IntegrityError as e:
            raise PersistenceError(str(e)) from e

    def _upsert_once(self, consent_id: str, fields: Dict[str, Any], written_at: datetime) -> Dict[str, Any]:
        db: Session = self._session_factory()
        try:
            obj = db.get(ConsentRecord, consent_id)
            if obj is None:
                obj = ConsentRecord(
                    consent_id=consent_id,
                    extra_metadata={},
                    field_versions={},
                    created_at=written_at,
                    updated_at=written_at,
                )
                db.add(obj)
            merge_fields(obj, fields, written_at)
            db.commit()
            db.refresh(obj)
            return to_dict(obj)
        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(str(e)) from e
        finally:
            db.close()

    def get(self, consent_id: str) -> Optional[Dict[str, Any]]:
        db: Session = self._session_factory()
        try:
            obj = db.get(ConsentRecord, consent_id)
            return to_dict(obj) if obj else None
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
        finally:
            db.close()

    def latest_authorized(self) -> Optional[Dict[str, Any]]:
        stmt = (
            select(ConsentRecord)
            .where(ConsentRecord.auth_code.is_not(None))
            .order_by(
                ConsentRecord.callback_received_at.desc().nulls_last(),
                ConsentRecord.updated_at.desc(),
            )
            .limit(1)
        )
        db: Session = self._session_factory()
        try:
            obj = db.execute(stmt).scalars().first()
            return to_dict(obj) if obj else None
        except SQLAlchemyError as e:
            raise PersistenceError(str(e)) from e
        finally:
            db.close()


class DisabledConsentRepository:
    """Stand-in used when no DATABASE_URL is configured."""

    def enabled(self) -> bool:
        return False

    def upsert(self, consent_id: str, fields: Dict[str, Any], *, written_at: datetime) -> Dict[str, Any]:
        raise PersistenceError("consent persistence is disabled")

    def get(self, consent_id: str) -> Optional[Dict[str, Any]]:
        return None

    def latest_authorized(self) -> Optional[Dict[str, Any]]:
        return None
