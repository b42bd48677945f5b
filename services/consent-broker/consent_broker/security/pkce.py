from __future__ import annotations
import base64
import hashlib
from typing import NamedTuple
from uuid import uuid4


class PKCEPair(NamedTuple):
    verifier: str
    challenge: str


def derive_code_challenge(verifier: str) -> str:
    """S256 challenge: base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    encoded = base64.b64encode(digest).decode("ascii")
    return encoded.replace("+", "-").replace("/", "_").rstrip("=")


def generate_pkce_pair() -> PKCEPair:
    # Two UUID4s -> 72 chars of [0-9a-f-], inside the RFC 7636 unreserved set
    verifier = str(uuid4()) + str(uuid4())
    return PKCEPair(verifier=verifier, challenge=derive_code_challenge(verifier))
