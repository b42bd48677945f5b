"""JWE encryption of PersonalIdentifiableInformation blocks."""
from __future__ import annotations
import json
import logging
from typing import Any, Dict

from jose import jwe
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError

from consent_broker.core.errors import PIIEncryptionError
from consent_broker.security.keys import EncryptionKeyResolver

log = logging.getLogger("pii-cipher")


class PIICipher:
    """Encrypts creditor / risk data under the provider's published encryption key.

    The result is a compact JWE (RSA-OAEP-256 key wrap, A256GCM content) that is
    embedded as-is in the consent object. Any failure is raised, never swallowed:
    the consent must not be pushed with PII in clear text.
    """

    def __init__(self, key_resolver: EncryptionKeyResolver) -> None:
        self._keys = key_resolver

    async def encrypt(self, pii: Dict[str, Any]) -> str:
        key, kid = await self._keys.resolve()
        plaintext = json.dumps(pii, separators=(",", ":"), ensure_ascii=False)
        try:
            token = jwe.encrypt(
                plaintext,
                key,
                encryption=ALGORITHMS.A256GCM,
                algorithm=ALGORITHMS.RSA_OAEP_256,
                kid=kid,
            )
        except (JOSEError, ValueError, TypeError) as e:
            log.error("PII encryption failed: %s", e)
            raise PIIEncryptionError(f"PII encryption failed: {e}") from e
        return token.decode("ascii") if isinstance(token, bytes) else token
