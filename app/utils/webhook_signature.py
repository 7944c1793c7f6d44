# app/utils/webhook_signature.py
# HMAC-SHA256 verification for Smartflo webhooks

import hashlib
import hmac
import json
import logging
from typing import Any, List, Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
# Truncated signatures shorter than this are never accepted
MIN_SIGNATURE_LENGTH = 8
HEX_DIGITS = frozenset("0123456789abcdef")

def _candidate_bodies(raw_payload: Union[bytes, str], payload: Any = None) -> List[bytes]:
    """
    Byte strings the provider may have signed. The raw body comes first;
    re-serializations cover senders that sign their own JSON rendering.
    """
    raw = raw_payload.encode("utf-8") if isinstance(raw_payload, str) else raw_payload or b""
    candidates = [raw]

    if payload is None:
        try:
            payload = json.loads(raw.decode("utf-8")) if raw else None
        except ValueError:
            payload = None

    if payload is not None:
        for rendering in (
            json.dumps(payload, separators=(",", ":"), ensure_ascii=False),
            json.dumps(payload, indent=2, ensure_ascii=False),
            json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False),
            json.dumps(payload),
        ):
            body = rendering.encode("utf-8")
            if body not in candidates:
                candidates.append(body)
    return candidates

def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

def verify_webhook_signature(
    raw_payload: Union[bytes, str],
    signature: Optional[str],
    secret: Optional[str],
    payload: Any = None,
) -> bool:
    """
    Validate a Smartflo webhook signature.

    - No secret configured: verification is skipped and the payload is accepted.
    - A leading ``sha256=`` is stripped.
    - The HMAC is tried over the raw body and several JSON canonicalizations
      (compact, pretty, key-sorted).
    - A received signature shorter than the digest is compared against the
      same-length prefix of each candidate digest.

    Rejecting the request is the caller's decision.
    """
    if not secret:
        return True
    if not signature:
        return False

    received = signature.strip()
    if received.lower().startswith(SIGNATURE_PREFIX):
        received = received[len(SIGNATURE_PREFIX):]
    received = received.strip().lower()
    if len(received) < MIN_SIGNATURE_LENGTH:
        return False
    # Header values arrive latin-1 decoded; anything but hex can never match a digest
    if not HEX_DIGITS.issuperset(received):
        logger.debug("Webhook signature is not a hex digest")
        return False

    for body in _candidate_bodies(raw_payload, payload):
        expected = compute_signature(body, secret)
        if len(received) < len(expected):
            expected = expected[:len(received)]
        if hmac.compare_digest(expected, received):
            return True

    logger.debug(f"Webhook signature mismatch (received {len(received)} chars)")
    return False
