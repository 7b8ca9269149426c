"""
Idempotency Service — exactly-once effects for retried write requests.

Clients send ``Idempotency-Key: <opaque string>`` on mutating calls. The
first 2xx response for a key is stored for ``IDEMPOTENCY_TTL_HOURS``
(default 24). Within that window:

    same key, same route + body, same user  → stored response replayed verbatim
    same key, anything else different       → 409
    expired key                             → deleted, treated as unused

The fingerprint is SHA-256 over the route and the canonical JSON body
(sorted keys, compact separators), so key order in the body is irrelevant.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.models import db
from app.models.idempotency import IdempotencyRecord
from app.utils.helpers import as_utc

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 24

NEW = "new"
REPLAY = "replay"
CONFLICT = "conflict"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IdempotencyCheck:
    outcome: str
    record: IdempotencyRecord | None = None


def hash_request(route: str, body) -> str:
    """SHA-256 hex fingerprint of ``route`` + canonical JSON ``body``."""
    canonical = json.dumps(
        body if body is not None else {},
        sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str,
    )
    return hashlib.sha256(f"{route}\n{canonical}".encode("utf-8")).hexdigest()


def check(key: str, user_id: int | None, route: str, request_hash: str,
          now: datetime | None = None) -> IdempotencyCheck:
    """Classify a keyed request as new, a replay, or a conflicting reuse."""
    now = now or _utcnow()
    record = IdempotencyRecord.query.filter_by(key=key).first()
    if record is None:
        return IdempotencyCheck(NEW)

    if as_utc(record.expires_at) <= now:
        logger.debug("Idempotency key %s expired; treating as new", key)
        db.session.delete(record)
        db.session.commit()
        return IdempotencyCheck(NEW)

    if record.request_hash != request_hash or record.route != route or record.user_id != user_id:
        logger.warning("Idempotency key %s reused with a different request on %s", key, route,
                       extra={"user_id": user_id})
        return IdempotencyCheck(CONFLICT, record)

    logger.info("Idempotent replay for key %s on %s", key, route, extra={"user_id": user_id})
    return IdempotencyCheck(REPLAY, record)


def save(key: str, user_id: int | None, route: str, request_hash: str,
         status_code: int, response_body: str, now: datetime | None = None) -> IdempotencyRecord | None:
    """Persist a successful response under ``key``.

    Returns None when a concurrent request stored the key first.
    """
    now = now or _utcnow()
    ttl_hours = current_app.config.get("IDEMPOTENCY_TTL_HOURS", DEFAULT_TTL_HOURS)
    record = IdempotencyRecord(
        key=key,
        user_id=user_id,
        route=route,
        request_hash=request_hash,
        response_body=response_body,
        status_code=status_code,
        created_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning("Idempotency key %s was stored concurrently; keeping the first response", key)
        return None
    return record


def purge_expired(now: datetime | None = None) -> int:
    """Delete expired keys; returns the number removed."""
    now = now or _utcnow()
    removed = (
        IdempotencyRecord.query
        .filter(IdempotencyRecord.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return removed
