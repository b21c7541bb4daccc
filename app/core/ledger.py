"""Vreamio – Audit and webhook ledgers.

AuditLedger is append-only: every state change and every provisioning,
revocation and reconciliation outcome lands here, tagged with a correlation id.
WebhookLedger gates inbound payment events: a row means "already handled".
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.db import Database
from app.core.models import AuditEntry, WebhookRecord

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(data: Optional[dict[str, Any]]) -> Optional[str]:
    if data is None:
        return None
    return json.dumps(data, ensure_ascii=False, default=str)


class AuditLedger:
    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self._db = db
        self._clock = clock

    def append(
        self,
        user_id: Optional[str],
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        *,
        session: Optional[Session] = None,
    ) -> AuditEntry:
        """Write one entry. Pass ``session`` to join the caller's transaction."""
        entry = AuditEntry(
            user_id=user_id,
            event_type=str(getattr(event_type, "value", event_type)),
            event_data=_dump(data),
            correlation_id=correlation_id,
            created_at=self._clock(),
        )
        if session is not None:
            session.add(entry)
            session.flush()
            return entry
        with self._db.session() as own:
            own.add(entry)
            own.flush()
        return entry

    def query(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[AuditEntry]:
        stmt = select(AuditEntry)
        if user_id is not None:
            stmt = stmt.where(AuditEntry.user_id == user_id)
        if event_type is not None:
            stmt = stmt.where(AuditEntry.event_type == str(getattr(event_type, "value", event_type)))
        stmt = stmt.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc()).limit(limit)
        with self._db.session() as session:
            return list(session.scalars(stmt))

    def count_since(self, window: timedelta) -> int:
        cutoff = self._clock() - window
        with self._db.session() as session:
            return session.scalar(
                select(func.count()).select_from(AuditEntry).where(AuditEntry.created_at > cutoff)
            ) or 0


class WebhookLedger:
    """Idempotency gate: check, process, then mark."""

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self._db = db
        self._clock = clock

    def is_processed(self, event_id: str) -> bool:
        with self._db.session() as session:
            return session.get(WebhookRecord, event_id) is not None

    def mark_processed(self, event_id: str, event_type: str, result: Any = None) -> bool:
        """Record the event. Returns False when it was already recorded."""
        try:
            with self._db.session() as session:
                session.add(WebhookRecord(
                    event_id=event_id,
                    event_type=event_type,
                    processed_at=self._clock(),
                    result=None if result is None else json.dumps(result, default=str),
                ))
        except IntegrityError:
            logger.info("webhook.already_recorded", event_id=event_id)
            return False
        return True
