"""Tokenized verification links.

Issues single-use codes for account activation and password reset, and
wraps them in a signed, URL-safe payload:

    <base_url>/auth/verify-email/verify?e=<b64url identifier>&t=<code>&h=<tag>

``e`` is only obfuscation (anyone can decode it); ``t`` is the unguessable
capability; ``h`` is ``<issued unix seconds>.<b64url HMAC>`` over purpose,
e, t and the issuance time, so the freshness check is made against the time
carried in the link itself rather than against the verifier's clock alone.

Token lifecycle: issued -> consumed | expired | superseded. All three end
states delete the row; nothing ever returns to issued.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import NoReturn
from urllib.parse import parse_qs, urlencode

from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlmodel import Session, select

from app.config import Settings
from app.exceptions import IntegrityError, ProtectionError, TokenExpiredOrInvalid
from app.models.verification_token import TokenPurpose, VerificationToken
from app.services.audit import AuditTrail, NullAuditTrail
from app.services.keyring import KeyRing
from app.services.protection import ProtectionService
from app.services.search_hash import FieldPurpose
from app.utils.crypto import (
    b64url_decode,
    b64url_encode,
    constant_time_equals,
    hmac_sha256_raw,
    random_code,
    sha256_hash,
)
from app.utils.dates import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_TOKEN_LENGTH = 256
_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]+")
_TAG_RE = re.compile(r"([0-9]{1,12})\.([A-Za-z0-9_-]{43})")

LINK_PATHS: dict[TokenPurpose, str] = {
    TokenPurpose.EMAIL_VERIFICATION: "/auth/verify-email/verify",
    TokenPurpose.PASSWORD_RESET: "/auth/reset-password",
}


def _unix_seconds(moment: datetime) -> int:
    return int(as_utc(moment).timestamp())


@dataclass(frozen=True, slots=True)
class LinkPayload:
    """Fields extracted from a verification URL. All None when unusable."""

    identifier: str | None = None
    token: str | None = None
    tag: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.identifier and self.token and self.tag)


class TokenizedLinkService:
    """Issue, encode and consume verification codes.

    Only ``issue_verification``, ``consume_verification`` and
    ``sweep_expired`` touch storage; the payload helpers are pure.
    """

    def __init__(
        self,
        keys: KeyRing,
        protection: ProtectionService,
        settings: Settings,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._link_key = keys.link_key
        self._protection = protection
        self._settings = settings
        self._audit = audit or NullAuditTrail()
        self._clock = clock or utcnow

    # --- policy ---

    def ttl(self, purpose: TokenPurpose) -> timedelta:
        if purpose is TokenPurpose.PASSWORD_RESET:
            return timedelta(minutes=self._settings.password_reset_ttl_minutes)
        return timedelta(hours=self._settings.verification_token_ttl_hours)

    @property
    def debounce(self) -> timedelta:
        return timedelta(minutes=self._settings.verification_debounce_minutes)

    def identifier_hash(self, identifier: str) -> str:
        return self._protection.search_hash(identifier, FieldPurpose.IDENTIFIER)

    # --- issuance ---

    def issue_verification(
        self,
        identifier: str,
        db: Session,
        purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION,
    ) -> str:
        """Return a live code for ``identifier``, minting one if needed.

        A code issued less than the debounce window ago is returned again
        instead of minting a new one. Otherwise any previous code for the
        identifier is superseded (deleted) and a fresh one stored.
        """
        purpose = TokenPurpose(purpose)
        id_hash = self.identifier_hash(identifier)
        now = as_utc(self._clock())

        existing = self._find_by_identifier(id_hash, purpose, db)
        if existing is not None:
            code = self._reusable_code(existing, now)
            if code is not None:
                self._audit.record(
                    "verification_debounced",
                    subject=id_hash,
                    detail={"purpose": purpose.value},
                )
                return code

        # Protected before any write: audit sinks may open their own
        # connection, which must not wait on this session's write lock.
        code = random_code(self._settings.verification_code_length)
        protected = self._protection.protect(code, FieldPurpose.TOKEN)
        expires_at = now + self.ttl(purpose)

        if existing is not None:
            # Expired, outside the debounce window, or unreadable: superseded.
            db.execute(
                sa_delete(VerificationToken).where(VerificationToken.id == existing.id)
            )

        row = VerificationToken(
            identifier_hash=id_hash,
            purpose=purpose.value,
            token_hash=sha256_hash(code.encode("utf-8")),
            token_ciphertext=protected.ciphertext,
            created_at=now,
            expires_at=expires_at,
        )
        db.add(row)
        try:
            db.commit()
        except DBIntegrityError:
            # Lost a race against a concurrent issuer: hand back the winner's code.
            db.rollback()
            winner = self._find_by_identifier(id_hash, purpose, db)
            if winner is not None:
                code = self._reusable_code(winner, self._clock())
                if code is not None:
                    logger.info("Verification issuance race resolved by re-read")
                    return code
            raise ProtectionError("Could not issue verification code") from None

        self._audit.record(
            "verification_issued",
            subject=id_hash,
            detail={"purpose": purpose.value, "expires_at": expires_at.isoformat()},
        )
        return code

    def _reusable_code(self, row: VerificationToken, now: datetime) -> str | None:
        now = as_utc(now)
        if as_utc(row.expires_at) <= now or now - as_utc(row.created_at) >= self.debounce:
            return None
        try:
            return self._protection.unprotect(row.token_ciphertext, FieldPurpose.TOKEN)
        except IntegrityError:
            return None

    @staticmethod
    def _find_by_identifier(
        id_hash: str, purpose: TokenPurpose, db: Session
    ) -> VerificationToken | None:
        return db.exec(
            select(VerificationToken).where(
                VerificationToken.identifier_hash == id_hash,
                VerificationToken.purpose == purpose.value,
            )
        ).first()

    # --- link payload ---

    def _tag(self, purpose: TokenPurpose, encoded_identifier: str, token: str, issued: int) -> str:
        message = f"{purpose.value}|{encoded_identifier}|{token}|{issued}".encode("utf-8")
        return b64url_encode(hmac_sha256_raw(self._link_key, message))

    def build_link_payload(
        self,
        identifier: str,
        token: str,
        purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION,
        issued_at: datetime | None = None,
    ) -> str:
        """Query string ``e=..&t=..&h=..`` for a verification link."""
        purpose = TokenPurpose(purpose)
        encoded = b64url_encode(identifier.encode("utf-8"))
        issued = _unix_seconds(issued_at or self._clock())
        tag = f"{issued}.{self._tag(purpose, encoded, token, issued)}"
        return urlencode({"e": encoded, "t": token, "h": tag})

    def build_link(
        self,
        identifier: str,
        token: str,
        purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION,
    ) -> str:
        purpose = TokenPurpose(purpose)
        base = self._settings.base_url.rstrip("/")
        payload = self.build_link_payload(identifier, token, purpose)
        return f"{base}{LINK_PATHS[purpose]}?{payload}"

    @staticmethod
    def parse_link_payload(params: Mapping[str, str] | str | None) -> LinkPayload:
        """Extract identifier, token and tag from a query string or mapping.

        Never raises: anything missing, duplicated or malformed yields an
        empty LinkPayload so the caller can answer with a generic message.
        """
        try:
            if params is None:
                return LinkPayload()
            if isinstance(params, str):
                parsed = parse_qs(params.lstrip("?"), strict_parsing=False)
                values: dict[str, str] = {}
                for key in ("e", "t", "h"):
                    items = parsed.get(key, [])
                    if len(items) != 1:
                        return LinkPayload()
                    values[key] = items[0]
            else:
                values = {key: params.get(key) for key in ("e", "t", "h")}

            encoded, token, tag = values["e"], values["t"], values["h"]
            if not all(isinstance(v, str) and v for v in (encoded, token, tag)):
                return LinkPayload()
            if len(token) > MAX_TOKEN_LENGTH or not _TOKEN_RE.fullmatch(token):
                return LinkPayload()
            if not _TAG_RE.fullmatch(tag):
                return LinkPayload()
            identifier = b64url_decode(encoded).decode("utf-8")
            if not identifier:
                return LinkPayload()
            return LinkPayload(identifier=identifier, token=token, tag=tag)
        except (ValueError, TypeError, AttributeError):
            return LinkPayload()

    def verify_link_payload(
        self,
        payload: LinkPayload,
        purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION,
    ) -> bool:
        """Check the tag and the issuance time it carries. Never raises.

        Valid when the HMAC matches (constant-time), the issuance time is not
        further in the future than the allowed clock skew, and the link is no
        older than the token lifetime for ``purpose``.
        """
        if not payload.is_complete:
            return False
        match = _TAG_RE.fullmatch(payload.tag or "")
        if match is None:
            return False
        try:
            purpose = TokenPurpose(purpose)
            issued = int(match.group(1))
            encoded = b64url_encode(payload.identifier.encode("utf-8"))
            expected = self._tag(purpose, encoded, payload.token, issued)
        except (ValueError, TypeError, AttributeError):
            return False
        if not constant_time_equals(expected, match.group(2)):
            return False

        now = _unix_seconds(self._clock())
        if issued > now + self._settings.link_clock_skew_seconds:
            return False
        return now - issued <= self.ttl(purpose).total_seconds()

    # --- consumption ---

    def consume_verification(
        self,
        payload: LinkPayload,
        db: Session,
        purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION,
    ) -> str:
        """Redeem a link. Returns the verified identifier.

        Raises TokenExpiredOrInvalid for every failure (bad tag, unknown
        code, identifier mismatch, expiry) so responses cannot be used to
        probe which identifiers or codes exist.
        """
        purpose = TokenPurpose(purpose)
        if not self.verify_link_payload(payload, purpose):
            self._reject("tag", purpose)

        row = db.exec(
            select(VerificationToken).where(
                VerificationToken.token_hash == sha256_hash(payload.token.encode("utf-8")),
                VerificationToken.purpose == purpose.value,
            )
        ).first()
        if row is None:
            self._reject("unknown", purpose)

        id_hash = self.identifier_hash(payload.identifier)
        if not constant_time_equals(row.identifier_hash, id_hash):
            self._reject("identifier_mismatch", purpose)

        expired = as_utc(row.expires_at) <= as_utc(self._clock())
        result = db.execute(
            sa_delete(VerificationToken).where(VerificationToken.id == row.id)
        )
        db.commit()
        if expired:
            self._reject("expired", purpose, subject=id_hash)
        if result.rowcount != 1:
            # Consumed concurrently by another request.
            self._reject("already_used", purpose, subject=id_hash)

        self._audit.record(
            "verification_consumed", subject=id_hash, detail={"purpose": purpose.value}
        )
        return payload.identifier

    def _reject(
        self, reason: str, purpose: TokenPurpose, subject: str | None = None
    ) -> NoReturn:
        logger.info("Rejected %s link: %s", purpose.value, reason)
        self._audit.record(
            "verification_rejected",
            subject=subject,
            detail={"purpose": purpose.value, "reason": reason},
        )
        raise TokenExpiredOrInvalid()

    def revoke(
        self,
        identifier: str,
        db: Session,
        purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION,
    ) -> int:
        """Delete any outstanding code for ``identifier``. Returns rows removed."""
        result = db.execute(
            sa_delete(VerificationToken).where(
                VerificationToken.identifier_hash == self.identifier_hash(identifier),
                VerificationToken.purpose == TokenPurpose(purpose).value,
            )
        )
        db.commit()
        return result.rowcount

    def sweep_expired(self, db: Session) -> int:
        """Remove expired rows to prevent unbounded table growth."""
        result = db.execute(
            sa_delete(VerificationToken)
            .where(VerificationToken.expires_at <= as_utc(self._clock()))
            .execution_options(synchronize_session="fetch")
        )
        db.commit()
        if result.rowcount:
            logger.info("Swept %d expired verification token(s)", result.rowcount)
        return result.rowcount
