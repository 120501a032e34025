"""Audit trail sinks for protection and verification events.

Callers pass only non-sensitive metadata: purposes, reasons, row ids and
search hashes. Plaintext values, verification codes and key material never
reach an audit sink.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session

from app.models.audit import AuditEvent

logger = logging.getLogger(__name__)
_audit_logger = logging.getLogger("app.audit")


class AuditTrail(Protocol):
    def record(
        self,
        action: str,
        *,
        subject: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None: ...


class NullAuditTrail:
    """Discards events. Default when no sink is wired in."""

    def record(
        self,
        action: str,
        *,
        subject: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        return None


class LoggingAuditTrail:
    """Writes one structured line per event to the ``app.audit`` logger."""

    def record(
        self,
        action: str,
        *,
        subject: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        _audit_logger.info(
            "audit action=%s subject=%s detail=%s",
            action,
            subject or "-",
            json.dumps(detail or {}, sort_keys=True, default=str),
        )


class DatabaseAuditTrail:
    """Persists events as AuditEvent rows in their own session.

    A failed write is logged and dropped; auditing must never break the
    request that produced the event.
    """

    __slots__ = ("_engine",)

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def record(
        self,
        action: str,
        *,
        subject: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        event = AuditEvent(
            action=action,
            subject=subject,
            detail=json.dumps(detail, sort_keys=True, default=str) if detail else None,
        )
        try:
            with Session(self._engine) as session:
                session.add(event)
                session.commit()
        except Exception:
            logger.exception("Failed to persist audit event %s", action)
