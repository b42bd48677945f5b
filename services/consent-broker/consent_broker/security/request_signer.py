from __future__ import annotations
from typing import Any, Dict

import jwt

from consent_broker.security.keys import SigningKey

REQUIRED_PARAMS = (
    "scope",
    "redirect_uri",
    "client_id",
    "nonce",
    "state",
    "response_type",
    "code_challenge",
    "code_challenge_method",
    "max_age",
    "authorization_details",
)


class RequestSigner:
    """Signs the authorization request object pushed to the PAR endpoint.

    The claims are exactly the authorization parameters; nothing is added.
    """

    def __init__(self, signing_key: SigningKey) -> None:
        self._key = signing_key

    def sign(self, params: Dict[str, Any]) -> str:
        missing = [name for name in REQUIRED_PARAMS if params.get(name) in (None, "")]
        if missing:
            raise ValueError(f"authorization request missing: {', '.join(missing)}")
        return jwt.encode(dict(params), self._key.key, algorithm=self._key.algorithm, headers={"kid": self._key.kid})
