from __future__ import annotations
import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional

log = logging.getLogger("state")

_CONSENT_ID_KEYS = ("consent_id", "consentId", "ConsentId")


def encode_state(consent_id: str, code_verifier: str) -> str:
    payload = json.dumps({"code_verifier": code_verifier, "consent_id": consent_id}, separators=(",", ":"))
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


def decode_state(value: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a bounced `state` value. Returns None when it is not base64 JSON."""
    if not isinstance(value, str) or not value:
        return None
    padded = value + "=" * (-len(value) % 4)
    try:
        # accept the URL-safe alphabet too
        raw = base64.b64decode(padded.replace("-", "+").replace("_", "/"), validate=True)
        decoded = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        log.warning("Unable to decode state payload: %s", e)
        return None
    if not isinstance(decoded, dict):
        log.warning("State payload is not a JSON object")
        return None
    return decoded


def consent_id_from_state(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if not payload:
        return None
    for key in _CONSENT_ID_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None
