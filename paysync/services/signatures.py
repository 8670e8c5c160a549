"""Webhook signature verification.

Pure functions over the raw request bytes — nothing here touches the store,
so an unauthenticated payload can never be persisted.

Schemes:
- stripe:   ``stripe-signature: t=<ts>,v1=<hex>``, HMAC-SHA256 over ``"<ts>.<body>"``
- paystack: ``x-paystack-signature: <hex>``, HMAC-SHA512 over the body
- generic:  ``x-webhook-signature: [sha256=]<hex>``, HMAC-SHA256 over the body
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "paystack": "x-paystack-signature",
    "generic": "x-webhook-signature",
}

SUPPORTED_PROVIDERS = frozenset(SIGNATURE_HEADERS)

DEFAULT_TOLERANCE_SECONDS = 300


def _header(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name:
            return value or ""
    return ""


def _hex_hmac(secret: str, message: bytes, digest) -> str:
    return hmac.new(secret.encode("utf-8"), message, digest).hexdigest()


def _matches(expected: str, signature: str) -> bool:
    # Header values may carry non-ASCII bytes; compare_digest rejects those as str
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "replace"))


def _verify_stripe(payload: bytes, sig_header: str, secret: str, tolerance: int, now: float) -> bool:
    pairs = [item.split("=", 1) for item in sig_header.split(",")]
    if any(len(pair) != 2 for pair in pairs):
        return False
    timestamp = next((value.strip() for key, value in pairs if key.strip() == "t"), "")
    # One v1 entry per active secret while the provider rotates them
    signatures = [value.strip() for key, value in pairs if key.strip() == "v1" and value.strip()]
    if not timestamp or not signatures or not timestamp.isdigit():
        return False

    if abs(now - int(timestamp)) > tolerance:
        logger.warning("Stripe signature timestamp outside tolerance (%ss)", tolerance)
        return False

    expected = _hex_hmac(secret, timestamp.encode() + b"." + payload, hashlib.sha256)
    return any(_matches(expected, signature) for signature in signatures)


def verify_signature(
    provider: str,
    payload: bytes,
    headers: Mapping[str, str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """True when ``payload`` was signed by ``provider`` with ``secret``."""
    header_name = SIGNATURE_HEADERS.get(provider)
    if header_name is None:
        logger.error("No signature scheme for provider %s", provider)
        return False

    if not secret:
        logger.error("Webhook secret for %s is not configured", provider)
        return False

    signature = _header(headers, header_name).strip()
    if not signature:
        logger.warning("Webhook from %s is missing %s", provider, header_name)
        return False

    if provider == "stripe":
        valid = _verify_stripe(payload, signature, secret, tolerance, time.time() if now is None else now)
    elif provider == "paystack":
        valid = _matches(_hex_hmac(secret, payload, hashlib.sha512), signature)
    else:
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        valid = _matches(_hex_hmac(secret, payload, hashlib.sha256), signature)

    if not valid:
        logger.warning("Invalid %s webhook signature: %s...", provider, signature[:8])
    return valid


def sign_payload(provider: str, payload: bytes, secret: str, timestamp: Optional[int] = None) -> dict[str, str]:
    """Build the signature header a provider would send. Used by tests and local tooling."""
    if provider == "stripe":
        ts = str(int(time.time()) if timestamp is None else timestamp)
        sig = _hex_hmac(secret, ts.encode() + b"." + payload, hashlib.sha256)
        return {SIGNATURE_HEADERS["stripe"]: f"t={ts},v1={sig}"}
    if provider == "paystack":
        return {SIGNATURE_HEADERS["paystack"]: _hex_hmac(secret, payload, hashlib.sha512)}
    return {SIGNATURE_HEADERS["generic"]: "sha256=" + _hex_hmac(secret, payload, hashlib.sha256)}
