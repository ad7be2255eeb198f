"""Idempotency records for checkout submissions.

A submission carries an idempotency key that doubles as the order's external
reference and as the gateway's ``X-Idempotency-Key``. This module stores the
key with a hash of the canonical request so that:

- a finalized response is replayed verbatim on retry;
- reusing the key with a different request is refused as a conflict;
- a key whose first attempt ended without a definitive answer (timeout,
  unavailable gateway) is left open and the submission runs again.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .errors import IdempotencyConflict
from .models import IdempotencyKey


def canonical_hash(payload: dict) -> str:
    """SHA-256 over the payload serialized with sorted keys and compact separators."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create the idempotency record for ``key``.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is
        False when the record was created by this call.

    Raises:
        IdempotencyConflict: If the key exists with a different request hash.
    """
    h = canonical_hash(payload)

    try:
        # Nested savepoint: if IntegrityError occurs, only this block is rolled back.
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict("idempotency key reused with a different request", idempotency_key=key)
        return True, rec


def is_finalized(rec: IdempotencyKey) -> bool:
    return bool(rec.response_status)


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response so retries can short-circuit."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])
