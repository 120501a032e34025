"""Typed failures raised by the field protection and verification layers.

Routers translate these into generic HTTP responses. Messages on
IntegrityError and TokenExpiredOrInvalid are uninformative so
callers cannot learn anything about ciphertexts, codes or identifiers.
"""

from __future__ import annotations


class ProtectionError(Exception):
    """Base class for all field protection / link verification failures."""


class IntegrityError(ProtectionError):
    """Ciphertext was tampered with, corrupted, or read under the wrong purpose."""

    def __init__(self, message: str = "Protected value could not be read") -> None:
        super().__init__(message)


class UnsupportedKeyVersionError(IntegrityError):
    """Ciphertext names a key version this process has no key material for."""


class ValidationError(ProtectionError):
    """User-correctable input problem. Carries every unmet rule, not just the first."""

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class TokenExpiredOrInvalid(ProtectionError):
    """Verification code is unknown, expired, already used, or its link was altered."""

    def __init__(self, message: str = "Invalid or expired verification link") -> None:
        super().__init__(message)
