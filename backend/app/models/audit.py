"""AuditEvent model — append-only log of protection and verification events."""
from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.utils.dates import utcnow


class AuditEvent(SQLModel, table=True):
    __tablename__ = "audit_events"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    action: str = Field(index=True)  # "verification_issued", "field_unprotect_failed", ...
    subject: str | None = Field(default=None, index=True)  # row id or identifier hash
    detail: str | None = Field(default=None)  # JSON, never plaintext PII or codes
    timestamp: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
