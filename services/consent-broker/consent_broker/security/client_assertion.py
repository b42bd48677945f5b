from __future__ import annotations
import time
from typing import Dict
from uuid import uuid4

import jwt

from consent_broker.security.keys import SigningKey

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


class ClientAuthenticator:
    """private_key_jwt client authentication. One fresh assertion per outbound call."""

    def __init__(self, *, client_id: str, audience: str, signing_key: SigningKey, ttl_seconds: int = 300) -> None:
        self.client_id = client_id
        self._audience = audience
        self._key = signing_key
        self._ttl = ttl_seconds

    def issue_assertion(self) -> str:
        now = int(time.time())
        claims = {
            "iss": self.client_id,
            "sub": self.client_id,
            "aud": self._audience,
            "jti": str(uuid4()),
            "iat": now,
            "nbf": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(claims, self._key.key, algorithm=self._key.algorithm, headers={"kid": self._key.kid})

    def assertion_form(self) -> Dict[str, str]:
        return {
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": self.issue_assertion(),
        }
