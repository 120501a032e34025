from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from app.db import get_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {type(exc).__name__}"

    keys = getattr(request.app.state, "key_ring", None)
    protection_status = "ok" if keys is not None else "unavailable"

    is_healthy = db_status == "ok" and protection_status == "ok"
    body = {
        "status": "healthy" if is_healthy else "unhealthy",
        "service": "classmate-backend",
        "version": "0.1.0",
        "checks": {
            "database": db_status,
            "protection": protection_status,
            "key_version": keys.current_version if keys is not None else None,
        },
    }
    if not is_healthy:
        return JSONResponse(status_code=503, content=body)
    return body
