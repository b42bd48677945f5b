"""Shared fixtures: throwaway RSA keys, in-memory store, fake authorization server."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple
from urllib.parse import parse_qsl

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from consent_broker.clients.openfinance import OpenFinanceClient
from consent_broker.core.config import Settings
from consent_broker.db.init_db import init_db
from consent_broker.db.session import build_engine, build_session_factory
from consent_broker.repositories.consents import SqlConsentRepository
from consent_broker.security.client_assertion import ClientAuthenticator
from consent_broker.security.keys import EncryptionKeyResolver, SigningKey
from consent_broker.security.pii_cipher import PIICipher
from consent_broker.security.pkce import PKCEPair, derive_code_challenge
from consent_broker.security.request_signer import RequestSigner
from consent_broker.services.auth_code_buffer import AuthCodeBuffer
from consent_broker.services.consent_service import ConsentSubmitter
from consent_broker.services.consent_store import ConsentStore
from consent_broker.services.token_service import TokenLifecycleManager

PAR_ENDPOINT = "https://as.test/par"
TOKEN_ENDPOINT = "https://as.test/token"
AUTH_ENDPOINT = "https://auth.test/auth"
RESOURCE_SERVER = "https://rs.test"
CLIENT_ID = "https://rp.test/openid_relying_party/client-1"
REDIRECT_URI = "https://tpp.test/client/callback"
SIGNING_KID = "sig-kid-1"
ENCRYPTION_KID = "enc-kid-1"

FIXED_NOW = datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)


def _rsa_pair() -> Tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


@pytest.fixture(scope="session")
def signing_keys() -> Tuple[str, str]:
    return _rsa_pair()


@pytest.fixture(scope="session")
def encryption_keys() -> Tuple[str, str]:
    return _rsa_pair()


@pytest.fixture()
def broker_settings(signing_keys) -> Settings:
    return Settings(
        DATABASE_URL="sqlite://",
        REDIS_URL="",
        OF_CLIENT_ID=CLIENT_ID,
        OF_SIGNING_KEY_ID=SIGNING_KID,
        OF_SIGNING_KEY_PEM=signing_keys[0],
        OF_REDIRECT_URI=REDIRECT_URI,
        OF_AUTH_ENDPOINT=AUTH_ENDPOINT,
        OF_PAR_ENDPOINT=PAR_ENDPOINT,
        OF_TOKEN_ENDPOINT=TOKEN_ENDPOINT,
        OF_RESOURCE_SERVER=RESOURCE_SERVER,
        OF_ENCRYPTION_KEY_ID=ENCRYPTION_KID,
        OF_BASE_CONSENT_ID=None,
        METRICS_ENABLED=False,
    )


class FakeAuthorizationServer:
    """Plays the PAR, token and resource endpoints; records every request."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.par_reply: Tuple[int, Any] = (
            201,
            {"request_uri": "urn:ietf:params:oauth:request_uri:par-123", "expires_in": 90},
        )
        self.token_replies: List[Tuple[int, Any]] = []
        self.resources: Dict[str, Any] = {}
        self.fail_transport = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_transport:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == "/par":
            status, body = self.par_reply
            return httpx.Response(status, json=body)
        if request.url.path == "/token":
            if not self.token_replies:
                return httpx.Response(400, json={"error": "invalid_grant"})
            status, body = self.token_replies.pop(0)
            return httpx.Response(status, json=body)
        if request.url.path in self.resources:
            return httpx.Response(200, json=self.resources[request.url.path])
        return httpx.Response(404, json={"error": "not_found"})

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def form(request: httpx.Request) -> Dict[str, str]:
        return dict(parse_qsl(request.content.decode("utf-8")))


@pytest.fixture()
def upstream() -> FakeAuthorizationServer:
    return FakeAuthorizationServer()


@pytest.fixture()
def openfinance_client(upstream) -> OpenFinanceClient:
    return OpenFinanceClient(
        par_endpoint=PAR_ENDPOINT,
        token_endpoint=TOKEN_ENDPOINT,
        resource_server=RESOURCE_SERVER,
        timeout=5.0,
        transport=httpx.MockTransport(upstream.handler),
    )


@pytest.fixture()
def repository() -> SqlConsentRepository:
    engine = build_engine("sqlite://")
    init_db(engine)
    yield SqlConsentRepository(build_session_factory(engine))
    engine.dispose()


@pytest.fixture()
def store(repository) -> ConsentStore:
    return ConsentStore(repository, token_cache_attempts=3, retry_backoff_seconds=0)


@pytest.fixture()
def signing_key(signing_keys) -> SigningKey:
    return SigningKey(kid=SIGNING_KID, key=signing_keys[0], algorithm="PS256")


@pytest.fixture()
def authenticator(signing_key) -> ClientAuthenticator:
    return ClientAuthenticator(client_id=CLIENT_ID, audience=TOKEN_ENDPOINT, signing_key=signing_key)


@pytest.fixture()
def pii_cipher(encryption_keys) -> PIICipher:
    return PIICipher(EncryptionKeyResolver(static_key=encryption_keys[1], key_id=ENCRYPTION_KID))


@pytest.fixture()
def pkce_pair() -> PKCEPair:
    verifier = "3f6a1f0e-5a9b-4c7e-9d21-0b6f8e2a7c41" + "c0ffee00-1234-4abc-8def-0123456789ab"
    return PKCEPair(verifier=verifier, challenge=derive_code_challenge(verifier))


@pytest.fixture()
def submitter(broker_settings, signing_key, authenticator, pii_cipher, openfinance_client, store, pkce_pair):
    return ConsentSubmitter(
        settings=broker_settings,
        signer=RequestSigner(signing_key),
        authenticator=authenticator,
        pii_cipher=pii_cipher,
        client=openfinance_client,
        store=store,
        pkce_factory=lambda: pkce_pair,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture()
def token_manager(store, openfinance_client, authenticator) -> TokenLifecycleManager:
    return TokenLifecycleManager(
        store=store,
        client=openfinance_client,
        authenticator=authenticator,
        redirect_uri=REDIRECT_URI,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture()
def auth_code_buffer() -> AuthCodeBuffer:
    return AuthCodeBuffer(capacity=5)
