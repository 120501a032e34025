from __future__ import annotations

from app.models.account import Account  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
from app.models.verification_token import VerificationToken  # noqa: F401
