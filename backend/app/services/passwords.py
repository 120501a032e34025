"""Password hashing and strength policy.

Argon2id via argon2-cffi's PasswordHasher. The PHC-formatted record embeds
its own salt and cost parameters, so records hashed under an older, cheaper
policy are still verifiable and can be flagged for an upgrade on the next
successful sign-in.
"""

from __future__ import annotations

import secrets
import string
import threading
from dataclasses import dataclass, field

from argon2 import PasswordHasher, Type, extract_parameters
from argon2.exceptions import InvalidHashError, VerificationError

from app.exceptions import ValidationError

LOWERCASE = string.ascii_lowercase
UPPERCASE = string.ascii_uppercase
DIGITS = string.digits
SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "password123",
        "admin",
        "qwerty",
        "letmein",
        "welcome",
        "monkey",
        "abc123",
        "password1",
    }
)


@dataclass(frozen=True, slots=True)
class PasswordPolicy:
    min_length: int = 8
    time_cost: int = 3
    memory_cost: int = 65536  # KiB
    parallelism: int = 1


@dataclass(frozen=True, slots=True)
class PasswordStrength:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


_lock = threading.Lock()
_policy = PasswordPolicy()
_hasher = PasswordHasher(
    time_cost=_policy.time_cost,
    memory_cost=_policy.memory_cost,
    parallelism=_policy.parallelism,
    type=Type.ID,
)


def configure_policy(
    min_length: int = 8,
    time_cost: int = 3,
    memory_cost: int = 65536,
    parallelism: int = 1,
) -> None:
    """Set the password policy. Called once at app startup from settings."""
    if min_length < 4:
        raise ValueError(f"PASSWORD_MIN_LENGTH must be >= 4, got {min_length}")
    if time_cost < 1 or parallelism < 1 or memory_cost < 8 * parallelism:
        raise ValueError(
            f"Invalid Argon2 parameters: time_cost={time_cost}, "
            f"memory_cost={memory_cost}, parallelism={parallelism}"
        )
    global _policy, _hasher
    with _lock:
        _policy = PasswordPolicy(min_length, time_cost, memory_cost, parallelism)
        _hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )


def get_policy() -> PasswordPolicy:
    return _policy


def hash_password(password: str) -> str:
    """Hash ``password`` with Argon2id under the current policy."""
    if not isinstance(password, str):
        raise TypeError("Password must be a string")
    return _hasher.hash(password)


def verify_password(password: str, record: str) -> bool:
    """Check ``password`` against a stored record.

    Delegates to argon2's own verify routine. A wrong password or a record
    that is not a recognisable Argon2 hash yields False; only non-string
    arguments raise.
    """
    if not isinstance(password, str) or not isinstance(record, str):
        raise TypeError("Password and record must be strings")
    try:
        return _hasher.verify(record, password)
    except (VerificationError, InvalidHashError):
        return False


def needs_rehash(record: str) -> bool:
    """True when ``record`` was hashed below the current policy minimum.

    Unparseable records also need a rehash (they can never verify, so the
    next password set replaces them).
    """
    try:
        params = extract_parameters(record)
    except (InvalidHashError, ValueError, TypeError):
        return True
    policy = _policy
    return (
        params.type is not Type.ID
        or params.time_cost < policy.time_cost
        or params.memory_cost < policy.memory_cost
        or params.parallelism < policy.parallelism
    )


def validate_password_strength(password: str) -> PasswordStrength:
    """Evaluate every rule independently and report all that fail."""
    errors: list[str] = []
    min_length = _policy.min_length

    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters long")
    if not any(ch.islower() for ch in password):
        errors.append("Password must contain at least one lowercase letter")
    if not any(ch.isupper() for ch in password):
        errors.append("Password must contain at least one uppercase letter")
    if not any(ch.isdigit() for ch in password):
        errors.append("Password must contain at least one number")
    if not any(not ch.isalnum() and not ch.isspace() for ch in password):
        errors.append("Password must contain at least one special character")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common. Please choose a stronger password.")

    return PasswordStrength(is_valid=not errors, errors=errors)


def generate_secure_password(length: int = 16) -> str:
    """Random password that always passes validate_password_strength."""
    if length < max(_policy.min_length, 4):
        raise ValidationError(
            f"Generated passwords must be at least {max(_policy.min_length, 4)} characters"
        )
    alphabet = LOWERCASE + UPPERCASE + DIGITS + SYMBOLS
    chars = [
        secrets.choice(LOWERCASE),
        secrets.choice(UPPERCASE),
        secrets.choice(DIGITS),
        secrets.choice(SYMBOLS),
    ]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)
