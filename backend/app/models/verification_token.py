"""VerificationToken model — single-use codes behind emailed links.

No plaintext is stored: the identifier is kept as its search hash, the code
as a SHA-256 lookup hash plus a protected copy that lets a debounced request
hand back the code it already issued.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.utils.dates import utcnow


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class VerificationToken(SQLModel, table=True):
    __tablename__ = "verification_tokens"
    # At most one row per identifier and purpose; concurrent issuers race on this.
    __table_args__ = (
        UniqueConstraint("identifier_hash", "purpose", name="uq_verification_identifier_purpose"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    identifier_hash: str = Field(index=True)  # search hash under FieldPurpose.IDENTIFIER
    purpose: str = Field(default=TokenPurpose.EMAIL_VERIFICATION.value)
    token_hash: str = Field(index=True, unique=True)  # SHA-256 hex of the code
    token_ciphertext: str  # code protected under FieldPurpose.TOKEN
    # Aware UTC on write; read back through app.utils.dates.as_utc
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    expires_at: datetime = Field(sa_type=DateTime(timezone=True))
