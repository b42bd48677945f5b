import json
import time

import httpx
import jwt
import pytest
from jose import jwe, jwk

from conftest import CLIENT_ID, ENCRYPTION_KID, SIGNING_KID, TOKEN_ENDPOINT
from consent_broker.core.errors import PIIEncryptionError, SigningKeyError
from consent_broker.security.keys import EncryptionKeyResolver, load_signing_key
from consent_broker.security.pii_cipher import PIICipher
from consent_broker.security.request_signer import REQUIRED_PARAMS, RequestSigner


def test_client_assertion_claims(authenticator, signing_keys) -> None:
    before = int(time.time())
    assertion = authenticator.issue_assertion()

    assert jwt.get_unverified_header(assertion)["kid"] == SIGNING_KID
    claims = jwt.decode(assertion, signing_keys[1], algorithms=["PS256"], audience=TOKEN_ENDPOINT)
    assert claims["iss"] == CLIENT_ID
    assert claims["sub"] == CLIENT_ID
    assert claims["exp"] - claims["iat"] == 300
    assert claims["nbf"] == claims["iat"] >= before


def test_client_assertion_is_fresh_every_time(authenticator) -> None:
    first = jwt.decode(authenticator.issue_assertion(), options={"verify_signature": False})
    second = jwt.decode(authenticator.issue_assertion(), options={"verify_signature": False})

    assert first["jti"] != second["jti"]


def test_request_signer_refuses_incomplete_requests(signing_key) -> None:
    params = {name: "x" for name in REQUIRED_PARAMS}
    params.pop("nonce")

    with pytest.raises(ValueError, match="nonce"):
        RequestSigner(signing_key).sign(params)


def test_load_signing_key_requires_configuration(broker_settings) -> None:
    broker_settings.OF_SIGNING_KEY_PEM = None
    broker_settings.OF_SIGNING_KEY_PATH = None

    with pytest.raises(SigningKeyError):
        load_signing_key(broker_settings)


def test_load_signing_key_from_file(broker_settings, signing_keys, tmp_path) -> None:
    key_file = tmp_path / "signing.pem"
    key_file.write_text(signing_keys[0])
    broker_settings.OF_SIGNING_KEY_PEM = None
    broker_settings.OF_SIGNING_KEY_PATH = str(key_file)

    key = load_signing_key(broker_settings)

    assert key.kid == SIGNING_KID
    assert key.algorithm == "PS256"


async def test_pii_cipher_output_decrypts_with_provider_key(pii_cipher, encryption_keys) -> None:
    token = await pii_cipher.encrypt({"Creditor": {"Name": "Mario International"}})

    header = jwe.get_unverified_header(token)
    assert header["alg"] == "RSA-OAEP-256"
    assert header["enc"] == "A256GCM"
    assert header["kid"] == ENCRYPTION_KID
    assert json.loads(jwe.decrypt(token, encryption_keys[0])) == {"Creditor": {"Name": "Mario International"}}


async def test_pii_cipher_without_key_source_fails() -> None:
    with pytest.raises(PIIEncryptionError):
        await PIICipher(EncryptionKeyResolver()).encrypt({"a": 1})


async def test_resolver_picks_enc_key_from_jwks_and_caches(encryption_keys) -> None:
    public = jwk.construct(encryption_keys[1], "RSA-OAEP-256").to_dict()
    jwks = {
        "keys": [
            {**public, "kid": "sig-key", "use": "sig"},
            {**public, "kid": ENCRYPTION_KID, "use": "enc"},
        ]
    }
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=jwks)

    resolver = EncryptionKeyResolver(jwks_url="https://as.test/jwks", transport=httpx.MockTransport(handler))

    key, kid = await resolver.resolve()
    await resolver.resolve()

    assert kid == ENCRYPTION_KID
    assert key["use"] == "enc"
    assert len(calls) == 1


async def test_resolver_without_enc_key_fails() -> None:
    resolver = EncryptionKeyResolver(
        jwks_url="https://as.test/jwks",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"keys": []})),
    )

    with pytest.raises(PIIEncryptionError):
        await resolver.resolve()
