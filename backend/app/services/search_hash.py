"""Deterministic search hashes (blind index) for protected fields.

Each protected column is paired with a keyed HMAC of its normalized value so
equality lookups ("does this email already exist?") run against the hash
column without decrypting any row. Only exact matches are possible.

The purpose label is mixed into every hash, so the same plaintext stored in
two different fields never yields the same hash. The flip side is accepted:
anyone reading the table can see which rows of one column share a value.
"""

from __future__ import annotations

import re
import unicodedata
from enum import Enum

from app.utils.crypto import constant_time_equals, hmac_sha256

SEARCH_HASH_LENGTH = 64  # hex-encoded SHA-256

_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_ID_SEPARATORS = re.compile(r"[\s\-]")


class FieldPurpose(str, Enum):
    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    NIN = "nin"  # national identity number
    JAMB_REG = "jamb_reg"  # exam-registration number
    MATRIC = "matric"  # matriculation number
    LOCATION = "location"
    IDENTIFIER = "identifier"  # verification-token identifier
    TOKEN = "token"  # stored verification code


_LOWERCASE = {FieldPurpose.EMAIL, FieldPurpose.IDENTIFIER}
_UPPERCASE = {FieldPurpose.JAMB_REG, FieldPurpose.MATRIC}


def normalize(value: str, purpose: FieldPurpose) -> str:
    """Canonical form of ``value`` for ``purpose``.

    This is also the form that gets encrypted, so unprotect returns exactly
    what was hashed.
    """
    normalized = unicodedata.normalize("NFC", value).strip()
    if purpose in _LOWERCASE:
        return unicodedata.normalize("NFC", normalized.casefold())
    if purpose in _UPPERCASE:
        return normalized.upper()
    if purpose is FieldPurpose.PHONE:
        return _PHONE_SEPARATORS.sub("", normalized)
    if purpose is FieldPurpose.NIN:
        return _ID_SEPARATORS.sub("", normalized)
    return normalized


def _hash_input(normalized: str, purpose: FieldPurpose) -> bytes:
    # Length-prefixed label keeps "ab"+"c" and "a"+"bc" apart.
    label = purpose.value.encode("utf-8")
    return len(label).to_bytes(2, "big") + label + b"\x00" + normalized.encode("utf-8")


def generate_search_hash(value: str, purpose: FieldPurpose, key: bytes) -> str:
    """HMAC-SHA256 over the purpose label and normalized value, hex-encoded."""
    purpose = FieldPurpose(purpose)
    return hmac_sha256(key, _hash_input(normalize(value, purpose), purpose))


def search_hash_matches(
    value: str, purpose: FieldPurpose, key: bytes, stored_hash: str
) -> bool:
    """Timing-safe check that ``value`` hashes to ``stored_hash``."""
    return constant_time_equals(generate_search_hash(value, purpose, key), stored_hash)
