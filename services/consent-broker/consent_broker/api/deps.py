"""
Factory functions wiring the broker's collaborators into FastAPI dependencies.

Each factory is cached so the app shares one instance per process; tests swap
them out through `app.dependency_overrides`.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from consent_broker.cache.redis_client import build_redis
from consent_broker.clients.openfinance import OpenFinanceClient
from consent_broker.core.config import settings
from consent_broker.db.init_db import init_db
from consent_broker.db.session import build_engine, build_session_factory
from consent_broker.repositories.consents import (
    ConsentRepository,
    DisabledConsentRepository,
    SqlConsentRepository,
)
from consent_broker.security.client_assertion import ClientAuthenticator
from consent_broker.security.keys import EncryptionKeyResolver, load_signing_key, load_transport_context
from consent_broker.security.pii_cipher import PIICipher
from consent_broker.security.request_signer import RequestSigner
from consent_broker.services.auth_code_buffer import AuthCodeBuffer
from consent_broker.services.callback_service import CallbackReconciler
from consent_broker.services.consent_service import ConsentSubmitter
from consent_broker.services.consent_store import ConsentStore
from consent_broker.services.resource_service import AccountInformationService
from consent_broker.services.token_service import TokenLifecycleManager
from consent_broker.utils.idempotency import IdempotencyStore


@lru_cache()
def get_consent_repository() -> ConsentRepository:
    """SQL repository when DATABASE_URL is set, otherwise a disabled stand-in."""
    if not settings.DATABASE_URL:
        return DisabledConsentRepository()
    engine = build_engine(settings.DATABASE_URL)
    init_db(engine)
    return SqlConsentRepository(build_session_factory(engine))


@lru_cache()
def get_consent_store() -> ConsentStore:
    return ConsentStore(
        get_consent_repository(),
        token_cache_attempts=settings.TOKEN_CACHE_WRITE_ATTEMPTS,
        retry_backoff_seconds=settings.TOKEN_CACHE_RETRY_BACKOFF_SECONDS,
    )


@lru_cache()
def get_auth_code_buffer() -> AuthCodeBuffer:
    return AuthCodeBuffer(settings.AUTH_CODE_BUFFER_SIZE)


@lru_cache()
def get_openfinance_client() -> OpenFinanceClient:
    return OpenFinanceClient(
        par_endpoint=settings.OF_PAR_ENDPOINT,
        token_endpoint=settings.OF_TOKEN_ENDPOINT,
        resource_server=settings.OF_RESOURCE_SERVER,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        tls_context=load_transport_context(settings),
    )


@lru_cache()
def get_client_authenticator() -> ClientAuthenticator:
    return ClientAuthenticator(
        client_id=settings.OF_CLIENT_ID,
        audience=settings.assertion_audience,
        signing_key=load_signing_key(settings),
        ttl_seconds=settings.OF_CLIENT_ASSERTION_TTL_SECONDS,
    )


@lru_cache()
def get_request_signer() -> RequestSigner:
    return RequestSigner(load_signing_key(settings))


@lru_cache()
def get_pii_cipher() -> PIICipher:
    return PIICipher(EncryptionKeyResolver.from_settings(settings))


@lru_cache()
def get_idempotency_store() -> Optional[IdempotencyStore]:
    redis = build_redis(settings.REDIS_URL)
    return IdempotencyStore(redis) if redis is not None else None


def get_consent_submitter() -> ConsentSubmitter:
    return ConsentSubmitter(
        settings=settings,
        signer=get_request_signer(),
        authenticator=get_client_authenticator(),
        pii_cipher=get_pii_cipher(),
        client=get_openfinance_client(),
        store=get_consent_store(),
    )


def get_callback_reconciler() -> CallbackReconciler:
    return CallbackReconciler(get_consent_store(), get_auth_code_buffer())


def get_token_manager() -> TokenLifecycleManager:
    return TokenLifecycleManager(
        store=get_consent_store(),
        client=get_openfinance_client(),
        authenticator=get_client_authenticator(),
        redirect_uri=settings.OF_REDIRECT_URI,
    )


def get_account_information() -> AccountInformationService:
    return AccountInformationService(
        tokens=get_token_manager(),
        client=get_openfinance_client(),
        fanout_limit=settings.RESOURCE_FANOUT_LIMIT,
    )
