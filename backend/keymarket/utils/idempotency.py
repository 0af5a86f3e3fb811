from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from keymarket.extensions import db
from keymarket.models import IdempotencyKey


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, scope: str, payload: Any) -> str:
    raw = f"{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def _reuse_conflict_response() -> tuple[str, dict, int]:
    return (
        "conflict",
        {
            "ok": False,
            "error": "IDEMPOTENCY_KEY_REUSE",
            "message": "This Idempotency-Key was already used with a different request payload.",
            "status": 409,
        },
        409,
    )


def lookup_response(user_id: str | None, scope: str, payload: Any, *, idempotency_key: str | None = None):
    """Reserve or replay a caller-supplied idempotency key.

    Returns one of:
      ("skip", None, 0)         no key supplied
      ("hit", body, status)     replay of a completed request
      ("conflict", body, 409)   same key, different payload
      ("miss", row, 0)          first use; call store_response(row, ...) when done
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        return ("skip", None, 0)
    scope_key = (scope or "").strip()[:128]
    req_hash = _hash_request(scope=scope_key, payload=payload)

    row = IdempotencyKey.query.filter_by(scope=scope_key, key=k).first()
    if row is None:
        row = IdempotencyKey(
            key=k,
            scope=scope_key,
            user_id=str(user_id)[:64] if user_id is not None else None,
            request_hash=req_hash,
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        db.session.add(row)
        try:
            db.session.commit()
            return ("miss", row, 0)
        except IntegrityError:
            db.session.rollback()
            row = IdempotencyKey.query.filter_by(scope=scope_key, key=k).first()
            if row is None:
                raise

    if (row.request_hash or "") != req_hash:
        return _reuse_conflict_response()
    if row.completed:
        return ("hit", json.loads(row.response_json), int(row.status_code or 200))
    # Reserved by an in-flight request; let the caller's own guards decide.
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Forget a reservation whose request failed, so the caller may retry it."""
    try:
        db.session.delete(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
