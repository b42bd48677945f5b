from __future__ import annotations
import json
import ssl
import time
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional, Tuple, Union
import httpx
from consent_broker.core.config import Settings
from consent_broker.core.errors import PIIEncryptionError, SigningKeyError, TransportCertificateError

KeyLike = Union[str, Dict[str, Any]]

_JWKS_TTL = 300  # 5 minutes


class SigningKey(NamedTuple):
    kid: str
    key: str
    algorithm: str


def load_signing_key(settings: Settings) -> SigningKey:
    pem = settings.OF_SIGNING_KEY_PEM
    if not pem and settings.OF_SIGNING_KEY_PATH:
        path = Path(settings.OF_SIGNING_KEY_PATH)
        if not path.exists():
            raise SigningKeyError(f"Signing key file not found: {path}")
        pem = path.read_text()
    if not pem:
        raise SigningKeyError()
    return SigningKey(kid=settings.OF_SIGNING_KEY_ID, key=pem, algorithm=settings.OF_SIGNING_ALGORITHM)


def load_transport_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """TLS context presenting the client's transport certificate, or None when none is configured."""
    cert_path = settings.OF_TRANSPORT_CERT_PATH
    key_path = settings.OF_TRANSPORT_KEY_PATH
    ca_bundle = settings.OF_TRANSPORT_CA_BUNDLE
    if not (cert_path or key_path or ca_bundle):
        return None
    if key_path and not cert_path:
        raise TransportCertificateError("OF_TRANSPORT_KEY_PATH is set without OF_TRANSPORT_CERT_PATH.")

    for path in (cert_path, key_path, ca_bundle):
        if path and not Path(path).exists():
            raise TransportCertificateError(f"Transport certificate file not found: {path}")

    try:
        context = ssl.create_default_context(cafile=ca_bundle)
        if cert_path:
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    except ssl.SSLError as e:
        raise TransportCertificateError(f"Transport certificate rejected: {e}") from e
    return context


def _read_key_file(path: str) -> KeyLike:
    text = Path(path).read_text()
    stripped = text.strip()
    # JWK files are JSON, everything else is treated as PEM
    if stripped.startswith("{"):
        return json.loads(stripped)
    return text


class EncryptionKeyResolver:
    """Resolves the provider's public encryption key, from a file or the provider JWKS."""

    def __init__(
        self,
        *,
        static_key: Optional[KeyLike] = None,
        key_id: Optional[str] = None,
        jwks_url: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._static_key = static_key
        self._key_id = key_id
        self._jwks_url = jwks_url
        self._timeout = timeout
        self._transport = transport
        self._cached: Optional[Tuple[KeyLike, Optional[str]]] = None
        self._cached_exp: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EncryptionKeyResolver":
        static_key = _read_key_file(settings.OF_ENCRYPTION_KEY_PATH) if settings.OF_ENCRYPTION_KEY_PATH else None
        return cls(
            static_key=static_key,
            key_id=settings.OF_ENCRYPTION_KEY_ID,
            jwks_url=settings.OF_ENCRYPTION_JWKS_URL,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def resolve(self) -> Tuple[KeyLike, Optional[str]]:
        if self._static_key is not None:
            kid = self._key_id
            if kid is None and isinstance(self._static_key, dict):
                kid = self._static_key.get("kid")
            return self._static_key, kid

        if not self._jwks_url:
            raise PIIEncryptionError("No encryption key or JWKS URL configured.")

        now = time.time()
        if self._cached and now < self._cached_exp:
            return self._cached

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                r = await client.get(self._jwks_url)
        except httpx.HTTPError as e:
            raise PIIEncryptionError(f"JWKS fetch failed: {e}") from e
        if r.status_code != 200:
            raise PIIEncryptionError(f"JWKS fetch returned {r.status_code}")

        jwk = self._select_encryption_key(r.json())
        self._cached = (jwk, jwk.get("kid"))
        self._cached_exp = now + _JWKS_TTL
        return self._cached

    def _select_encryption_key(self, jwks: Dict[str, Any]) -> Dict[str, Any]:
        keys = jwks.get("keys") if isinstance(jwks, dict) else None
        for candidate in keys or []:
            if not isinstance(candidate, dict) or candidate.get("use") != "enc":
                continue
            if self._key_id and candidate.get("kid") != self._key_id:
                continue
            return candidate
        raise PIIEncryptionError("No encryption key published in JWKS.")
