"""FastAPI dependency injection for auth verification and request services."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.services.accounts import AccountService
from app.services.mailer import Mailer
from app.services.session_tokens import decode_token
from app.services.verification import TokenizedLinkService

_bearer_scheme = HTTPBearer(auto_error=True)


def get_current_account_id(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Extract and validate JWT access token from Authorization header.

    Returns the account id (sub claim) if token is valid.
    Raises HTTPException 401 if token is missing, expired, or invalid.
    """
    payload = decode_token(credentials.credentials, "access")
    account_id = payload.get("sub")
    if not account_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return account_id


def _from_state(request: Request, name: str, label: str):
    svc = getattr(request.app.state, name, None)
    if svc is None:
        raise HTTPException(status_code=503, detail=f"{label} unavailable")
    return svc


def get_link_service(request: Request) -> TokenizedLinkService:
    """Inject the TokenizedLinkService singleton from app state."""
    return _from_state(request, "link_service", "Verification service")


def get_account_service(request: Request) -> AccountService:
    return _from_state(request, "account_service", "Account service")


def get_mailer(request: Request) -> Mailer:
    return _from_state(request, "mailer", "Mailer")
