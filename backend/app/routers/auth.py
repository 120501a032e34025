"""Auth endpoints — signup, email verification, sign-in, password reset.

Thin handlers over AccountService and TokenizedLinkService. Every failure
of a link or a protected value is answered with a generic message; only
input validation problems are reported in detail.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel import Session, select

from app.config import get_settings
from app.db import get_session
from app.dependencies import (
    get_account_service,
    get_current_account_id,
    get_link_service,
    get_mailer,
)
from app.exceptions import (
    IntegrityError,
    ProtectionError,
    TokenExpiredOrInvalid,
    ValidationError,
)
from app.models.account import (
    Account,
    AccountRead,
    EmailRequest,
    ResetPasswordRequest,
    SigninRequest,
    SignupRequest,
    SignupResponse,
    TokenResponse,
)
from app.models.verification_token import TokenPurpose
from app.services.accounts import AccountExistsError, AccountService, validate_email
from app.services.mailer import Mailer
from app.services.passwords import validate_password_strength
from app.services.session_tokens import create_access_token
from app.services.verification import TokenizedLinkService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])
links_router = APIRouter(prefix="/auth", tags=["auth"])

INVALID_LINK = "Invalid or expired verification link"
ACCEPTED = "If the address belongs to an account, an email is on its way."


def _validation_failed(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail={"errors": exc.errors})


def _send_verification(
    email: str,
    db: Session,
    links: TokenizedLinkService,
    mailer: Mailer,
) -> bool:
    code = links.issue_verification(email, db, TokenPurpose.EMAIL_VERIFICATION)
    link = links.build_link(email, code, TokenPurpose.EMAIL_VERIFICATION)
    return mailer.send_verification_link(
        email, link, get_settings().verification_token_ttl_hours
    )


# --- Endpoints ---


@router.post("/signup", response_model=SignupResponse, status_code=201)
async def signup(
    body: SignupRequest,
    db: Session = Depends(get_session),
    accounts: AccountService = Depends(get_account_service),
    links: TokenizedLinkService = Depends(get_link_service),
    mailer: Mailer = Depends(get_mailer),
) -> SignupResponse:
    """Register an inactive account and email its activation link."""
    try:
        account = accounts.register(body, db)
    except ValidationError as exc:
        raise _validation_failed(exc)
    except AccountExistsError:
        raise HTTPException(status_code=409, detail="An account with this email already exists")

    try:
        email_sent = _send_verification(body.email, db, links, mailer)
    except ProtectionError:
        logger.exception("Could not issue verification link for account %s", account.id)
        email_sent = False

    return SignupResponse(
        id=account.id,
        message="Account created. Check your email to verify your address.",
        email_sent=email_sent,
    )


@links_router.get("/verify-email/verify")
async def verify_email(
    request: Request,
    db: Session = Depends(get_session),
    accounts: AccountService = Depends(get_account_service),
    links: TokenizedLinkService = Depends(get_link_service),
) -> dict:
    """Redeem an emailed ``?e=&t=&h=`` link and activate the account."""
    payload = links.parse_link_payload(request.query_params)
    try:
        email = links.consume_verification(payload, db, TokenPurpose.EMAIL_VERIFICATION)
    except TokenExpiredOrInvalid:
        raise HTTPException(status_code=400, detail=INVALID_LINK)

    account = accounts.activate(email, db)
    if account is None:
        raise HTTPException(status_code=400, detail=INVALID_LINK)
    return {"detail": "Email verified successfully. You can now sign in."}


@router.post("/resend-verification", status_code=202)
async def resend_verification(
    body: EmailRequest,
    db: Session = Depends(get_session),
    accounts: AccountService = Depends(get_account_service),
    links: TokenizedLinkService = Depends(get_link_service),
    mailer: Mailer = Depends(get_mailer),
) -> dict:
    """Re-send the activation link. Repeated requests inside the debounce
    window resend the same code. The response never reveals whether the
    address is registered."""
    try:
        email = validate_email(body.email)
    except ValidationError as exc:
        raise _validation_failed(exc)

    account = accounts.find_by_email(email, db)
    if account is not None and not account.is_active:
        try:
            _send_verification(email, db, links, mailer)
        except ProtectionError:
            logger.exception("Could not reissue verification link for account %s", account.id)
    return {"detail": ACCEPTED}


@router.post("/signin", response_model=TokenResponse)
async def signin(
    body: SigninRequest,
    db: Session = Depends(get_session),
    accounts: AccountService = Depends(get_account_service),
) -> TokenResponse:
    """Verify credentials and issue an access token."""
    account = accounts.authenticate(body.email, body.password, db)
    if account is None:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not account.is_active:
        raise HTTPException(status_code=403, detail="Please verify your email before signing in")

    settings = get_settings()
    return TokenResponse(
        access_token=create_access_token(account.id),
        expires_in=settings.jwt_access_token_expire_minutes * 60,
    )


@router.post("/forgot-password", status_code=202)
async def forgot_password(
    body: EmailRequest,
    db: Session = Depends(get_session),
    accounts: AccountService = Depends(get_account_service),
    links: TokenizedLinkService = Depends(get_link_service),
    mailer: Mailer = Depends(get_mailer),
) -> dict:
    """Email a password reset link. Same response whether or not the account exists."""
    try:
        email = validate_email(body.email)
    except ValidationError as exc:
        raise _validation_failed(exc)

    account = accounts.find_by_email(email, db)
    if account is not None and account.is_active:
        try:
            code = links.issue_verification(email, db, TokenPurpose.PASSWORD_RESET)
            link = links.build_link(email, code, TokenPurpose.PASSWORD_RESET)
            mailer.send_password_reset_link(
                email, link, get_settings().password_reset_ttl_minutes
            )
        except ProtectionError:
            logger.exception("Could not issue reset link for account %s", account.id)
    return {"detail": ACCEPTED}


@router.post("/reset-password")
async def reset_password(
    body: ResetPasswordRequest,
    db: Session = Depends(get_session),
    accounts: AccountService = Depends(get_account_service),
    links: TokenizedLinkService = Depends(get_link_service),
) -> dict:
    """Redeem a reset link and set a new password."""
    # Check the new password first so a weak choice doesn't burn the link.
    strength = validate_password_strength(body.new_password)
    if not strength.is_valid:
        raise HTTPException(status_code=422, detail={"errors": strength.errors})

    payload = links.parse_link_payload({"e": body.e, "t": body.t, "h": body.h})
    try:
        email = links.consume_verification(payload, db, TokenPurpose.PASSWORD_RESET)
    except TokenExpiredOrInvalid:
        raise HTTPException(status_code=400, detail="Invalid or expired reset link")

    account = accounts.find_by_email(email, db)
    if account is None:
        raise HTTPException(status_code=400, detail="Invalid or expired reset link")
    accounts.set_password(account, body.new_password, db)
    return {"detail": "Password updated. You can now sign in."}


@router.get("/me", response_model=AccountRead)
async def me(
    account_id: str = Depends(get_current_account_id),
    db: Session = Depends(get_session),
    accounts: AccountService = Depends(get_account_service),
) -> AccountRead:
    """Return the signed-in account with its protected fields decrypted."""
    account = db.exec(select(Account).where(Account.id == account_id)).first()
    if account is None:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    try:
        return accounts.to_read(account)
    except IntegrityError:
        # Details are already logged by the protection service.
        raise HTTPException(status_code=500, detail="Profile data could not be read")
