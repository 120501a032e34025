"""Field protection service.

Encrypts personally-identifiable values before they are persisted and pairs
each ciphertext with a deterministic search hash for equality lookups.

Two independent channels:

* confidentiality: AES-256-GCM with a fresh nonce per call, so the same
  value encrypted twice gives unrelated ciphertexts. The field purpose and
  key version are bound in as associated data, so a ciphertext copied into
  another column (or relabelled with another version) fails to decrypt.
* search: HMAC of the normalized value under a separate key
  (see app.services.search_hash).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag

from app.exceptions import IntegrityError, UnsupportedKeyVersionError
from app.services.audit import AuditTrail, NullAuditTrail
from app.services.keyring import KeyRing
from app.services.search_hash import (
    FieldPurpose,
    generate_search_hash,
    normalize,
    search_hash_matches,
)
from app.utils.crypto import (
    NONCE_SIZE,
    TAG_SIZE,
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64url_decode,
    b64url_encode,
)

logger = logging.getLogger(__name__)

_CIPHERTEXT_RE = re.compile(r"v([1-9][0-9]{0,5})\.([A-Za-z0-9_-]+)")


@dataclass(frozen=True, slots=True)
class ProtectedValue:
    """Ciphertext + search hash pair written to a record's two columns."""

    ciphertext: str  # "v<key_version>.<b64url(nonce || ciphertext+tag)>"
    search_hash: str  # hex HMAC-SHA256 of the normalized value
    key_version: int


class ProtectionService:
    """Encrypt/decrypt sensitive fields under a field purpose.

    Stateless apart from the read-only key ring, so one instance is shared
    by every request worker.
    """

    __slots__ = ("_keys", "_audit")

    def __init__(self, keys: KeyRing, audit: AuditTrail | None = None) -> None:
        self._keys = keys
        self._audit = audit or NullAuditTrail()

    @staticmethod
    def _aad(purpose: FieldPurpose, version: int) -> bytes:
        return f"classmate-field|{purpose.value}|v{version}".encode("utf-8")

    def protect(self, value: str, purpose: FieldPurpose) -> ProtectedValue:
        """Normalize, encrypt and hash ``value`` for storage under ``purpose``."""
        if not isinstance(value, str):
            raise TypeError(f"Protected values must be str, got {type(value).__name__}")
        purpose = FieldPurpose(purpose)
        normalized = normalize(value, purpose)
        version = self._keys.current_version

        blob = aes_gcm_encrypt(
            self._keys.encryption_key(version),
            normalized.encode("utf-8"),
            aad=self._aad(purpose, version),
        )
        search_hash = generate_search_hash(normalized, purpose, self._keys.search_key)
        self._audit.record("field_protected", detail={"purpose": purpose.value})
        return ProtectedValue(
            ciphertext=f"v{version}.{b64url_encode(blob)}",
            search_hash=search_hash,
            key_version=version,
        )

    def unprotect(self, ciphertext: str, purpose: FieldPurpose) -> str:
        """Decrypt and authenticate a ciphertext produced by :meth:`protect`.

        Raises IntegrityError on any failure: malformed encoding, unknown key
        version, tampered bytes or a purpose that differs from the one used at
        encryption time. Never returns a partial or guessed plaintext.
        """
        purpose = FieldPurpose(purpose)
        try:
            version, blob = self._parse(ciphertext)
            key = self._keys.encryption_key(version)
            plaintext = aes_gcm_decrypt(key, blob, aad=self._aad(purpose, version))
            return plaintext.decode("utf-8")
        except (InvalidTag, UnsupportedKeyVersionError, ValueError) as exc:
            # Purpose only: no ciphertext or plaintext in the log line.
            logger.warning(
                "Rejected protected value for purpose %s: %s",
                purpose.value,
                type(exc).__name__,
            )
            self._audit.record(
                "field_unprotect_failed",
                detail={"purpose": purpose.value, "reason": type(exc).__name__},
            )
            raise IntegrityError() from None

    def search_hash(self, value: str, purpose: FieldPurpose) -> str:
        """Lookup hash for a query value, without encrypting anything."""
        return generate_search_hash(value, FieldPurpose(purpose), self._keys.search_key)

    def verify_protected(
        self,
        value: str,
        ciphertext: str,
        purpose: FieldPurpose,
        search_hash: str | None = None,
    ) -> bool:
        """True when ``ciphertext`` (and ``search_hash`` if given) hold ``value``.

        Fails closed: any integrity problem yields False.
        """
        purpose = FieldPurpose(purpose)
        try:
            stored = self.unprotect(ciphertext, purpose)
        except IntegrityError:
            return False
        if stored != normalize(value, purpose):
            return False
        if search_hash is not None:
            return search_hash_matches(value, purpose, self._keys.search_key, search_hash)
        return True

    def needs_reencrypt(self, ciphertext: str) -> bool:
        """True when ``ciphertext`` was written under an older key version."""
        try:
            version, _ = self._parse(ciphertext)
        except ValueError:
            return False
        return version != self._keys.current_version

    def reencrypt(self, ciphertext: str, purpose: FieldPurpose) -> ProtectedValue:
        """Decrypt under the stored key version and protect again under the current one."""
        return self.protect(self.unprotect(ciphertext, purpose), purpose)

    @staticmethod
    def _parse(ciphertext: str) -> tuple[int, bytes]:
        if not isinstance(ciphertext, str):
            raise ValueError("Ciphertext must be a string")
        match = _CIPHERTEXT_RE.fullmatch(ciphertext)
        if match is None:
            raise ValueError("Malformed protected value")
        blob = b64url_decode(match.group(2))
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise ValueError("Truncated protected value")
        return int(match.group(1)), blob
