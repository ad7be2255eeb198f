"""Mercado Pago webhook signatures.

The ``x-signature`` header looks like ``ts=1704908010,v1=<hex>``; ``v1`` is
HMAC-SHA256 (keyed with the gateway's webhook secret) over the manifest
``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``.
"""

import hashlib
import hmac
from typing import Optional, Tuple


def parse_signature(header: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return ``(ts, v1)`` from an ``x-signature`` header, or None if malformed."""
    if not header:
        return None
    parts = {}
    for chunk in header.split(","):
        name, sep, value = chunk.strip().partition("=")
        if sep:
            parts[name.strip()] = value.strip()
    if not parts.get("ts") or not parts.get("v1"):
        return None
    return parts["ts"], parts["v1"]


def manifest(data_id: str, request_id: str, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def sign(secret: str, data_id: str, request_id: str, ts: str) -> str:
    msg = manifest(data_id, request_id, ts).encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def verify_signature(secret: str, header: Optional[str], request_id: Optional[str], data_id: str) -> bool:
    """True when ``header`` carries a valid signature for ``data_id``.

    A missing header, a missing ``x-request-id`` or an empty secret never
    verifies.
    """
    parsed = parse_signature(header)
    if not secret or not parsed or not request_id:
        return False
    ts, received = parsed
    expected = sign(secret, data_id, request_id, ts)
    return hmac.compare_digest(expected, received.lower())
