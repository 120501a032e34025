"""Account registration, lookup and credential checks over protected columns."""
from __future__ import annotations

import logging
import re
from functools import lru_cache

from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlmodel import Session, select

from app.exceptions import ValidationError
from app.models.account import Account, AccountRead, SignupRequest
from app.services import passwords
from app.services.audit import AuditTrail, NullAuditTrail
from app.services.protection import ProtectionService
from app.services.search_hash import FieldPurpose
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_NAME_LENGTH = 200


class AccountExistsError(Exception):
    """Raised when the email's search hash is already registered."""


@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    # Verified against when the email is unknown, so both paths cost one Argon2 run.
    return passwords.hash_password("not-a-real-password")


def validate_email(email: str) -> str:
    email = email.strip()
    if not EMAIL_RE.match(email):
        raise ValidationError("Please provide a valid email address")
    return email


class AccountService:
    __slots__ = ("_protection", "_audit")

    def __init__(self, protection: ProtectionService, audit: AuditTrail | None = None) -> None:
        self._protection = protection
        self._audit = audit or NullAuditTrail()

    def find_by_email(self, email: str, db: Session) -> Account | None:
        email_hash = self._protection.search_hash(email, FieldPurpose.EMAIL)
        return db.exec(select(Account).where(Account.email_hash == email_hash)).first()

    def register(self, body: SignupRequest, db: Session) -> Account:
        """Validate and store a new, inactive account.

        Collects every input problem before raising so the user can fix them
        all in one go.
        """
        errors: list[str] = []
        if not body.name.strip():
            errors.append("Name is required")
        elif len(body.name) > MAX_NAME_LENGTH:
            errors.append(f"Name must be at most {MAX_NAME_LENGTH} characters")
        if not EMAIL_RE.match(body.email.strip()):
            errors.append("Please provide a valid email address")
        errors.extend(passwords.validate_password_strength(body.password).errors)
        if errors:
            raise ValidationError(errors)

        if self.find_by_email(body.email, db) is not None:
            raise AccountExistsError()

        email = self._protection.protect(body.email, FieldPurpose.EMAIL)
        name = self._protection.protect(body.name, FieldPurpose.NAME)
        phone = (
            self._protection.protect(body.phone, FieldPurpose.PHONE)
            if body.phone and body.phone.strip()
            else None
        )
        account = Account(
            email_ciphertext=email.ciphertext,
            email_hash=email.search_hash,
            name_ciphertext=name.ciphertext,
            phone_ciphertext=phone.ciphertext if phone else None,
            phone_hash=phone.search_hash if phone else None,
            password_hash=passwords.hash_password(body.password),
        )
        db.add(account)
        try:
            db.commit()
        except DBIntegrityError:
            # Concurrent signup with the same email won the unique index.
            db.rollback()
            raise AccountExistsError() from None
        db.refresh(account)
        self._audit.record("account_registered", subject=account.id)
        return account

    def authenticate(self, email: str, password: str, db: Session) -> Account | None:
        """Return the account when the password matches, upgrading weak hashes."""
        account = self.find_by_email(email, db)
        if account is None:
            passwords.verify_password(password, _dummy_hash())
            return None
        if not passwords.verify_password(password, account.password_hash):
            return None

        if passwords.needs_rehash(account.password_hash):
            account.password_hash = passwords.hash_password(password)
            account.updated_at = utcnow()
            db.add(account)
            db.commit()
            self._audit.record("password_rehashed", subject=account.id)
            logger.info("Upgraded password hash for account %s", account.id)
        return account

    def activate(self, email: str, db: Session) -> Account | None:
        account = self.find_by_email(email, db)
        if account is None:
            return None
        now = utcnow()
        account.is_active = True
        account.email_verified_at = account.email_verified_at or now
        account.updated_at = now
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    def set_password(self, account: Account, new_password: str, db: Session) -> None:
        result = passwords.validate_password_strength(new_password)
        if not result.is_valid:
            raise ValidationError(result.errors)
        account.password_hash = passwords.hash_password(new_password)
        account.updated_at = utcnow()
        db.add(account)
        db.commit()
        self._audit.record("password_changed", subject=account.id)

    def reencrypt_stale(self, db: Session, batch_size: int = 500) -> int:
        """Re-protect every account column written under an old key version.

        Search hashes are rewritten too, since they follow the current secret.
        Returns the number of accounts updated.
        """
        updated = 0
        offset = 0
        while True:
            batch = db.exec(
                select(Account).order_by(Account.id).offset(offset).limit(batch_size)
            ).all()
            if not batch:
                break
            for account in batch:
                if not any(
                    self._protection.needs_reencrypt(c)
                    for c in (account.email_ciphertext, account.name_ciphertext, account.phone_ciphertext)
                    if c
                ):
                    continue
                email = self._protection.reencrypt(account.email_ciphertext, FieldPurpose.EMAIL)
                account.email_ciphertext = email.ciphertext
                account.email_hash = email.search_hash
                account.name_ciphertext = self._protection.reencrypt(
                    account.name_ciphertext, FieldPurpose.NAME
                ).ciphertext
                if account.phone_ciphertext:
                    phone = self._protection.reencrypt(account.phone_ciphertext, FieldPurpose.PHONE)
                    account.phone_ciphertext = phone.ciphertext
                    account.phone_hash = phone.search_hash
                account.updated_at = utcnow()
                db.add(account)
                updated += 1
            db.commit()
            offset += batch_size
        if updated:
            logger.info("Re-encrypted protected columns for %d account(s)", updated)
        return updated

    def to_read(self, account: Account) -> AccountRead:
        """Decrypt an account's protected columns. Raises IntegrityError if any fail."""
        return AccountRead(
            id=account.id,
            name=self._protection.unprotect(account.name_ciphertext, FieldPurpose.NAME),
            email=self._protection.unprotect(account.email_ciphertext, FieldPurpose.EMAIL),
            phone=(
                self._protection.unprotect(account.phone_ciphertext, FieldPurpose.PHONE)
                if account.phone_ciphertext
                else None
            ),
            is_active=account.is_active,
            email_verified_at=account.email_verified_at,
        )
