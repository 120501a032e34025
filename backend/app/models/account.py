"""Account model and auth request/response schemas.

Every PII column is stored as ciphertext; columns used in equality filters
have a sibling ``*_hash`` column and queries filter on that, never on the
ciphertext.
"""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from app.utils.dates import utcnow


class Account(SQLModel, table=True):
    __tablename__ = "accounts"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    email_ciphertext: str
    email_hash: str = Field(index=True, unique=True)
    name_ciphertext: str
    phone_ciphertext: str | None = Field(default=None)
    phone_hash: str | None = Field(default=None, index=True)
    password_hash: str  # Argon2id PHC string
    is_active: bool = Field(default=False)
    email_verified_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


# --- Pydantic request/response schemas ---


class SignupRequest(BaseModel):
    name: str
    email: str
    password: str
    phone: str | None = None


class SignupResponse(BaseModel):
    id: str
    message: str
    email_sent: bool


class EmailRequest(BaseModel):
    """Body for resend-verification and forgot-password."""

    email: str


class SigninRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # access token TTL in seconds


class ResetPasswordRequest(BaseModel):
    """Fields of the emailed reset link plus the new password."""

    e: str
    t: str
    h: str
    new_password: str


class AccountRead(BaseModel):
    """Decrypted view of an account, built by the service layer."""

    id: str
    name: str
    email: str
    phone: str | None
    is_active: bool
    email_verified_at: datetime | None
