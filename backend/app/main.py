from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

import app.models  # noqa: F401  (registers SQLModel tables)

from app.config import get_settings
from app.db import create_db_and_tables, engine
from app.routers import auth, health
from app.services import passwords
from app.services.accounts import AccountService
from app.services.audit import DatabaseAuditTrail, LoggingAuditTrail
from app.services.keyring import KeyRing
from app.services.mailer import Mailer
from app.services.protection import ProtectionService
from app.services.verification import TokenizedLinkService

TOKEN_SWEEP_INTERVAL_SECONDS = 3600


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Raises on a missing or short FIELD_PROTECTION_SECRET: no insecure default.
    settings = get_settings()
    create_db_and_tables()

    passwords.configure_policy(
        min_length=settings.password_min_length,
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
    )

    # Key material is derived once here and only read afterwards.
    key_ring = KeyRing.from_settings(settings)
    audit = DatabaseAuditTrail(engine) if settings.audit_sink == "db" else LoggingAuditTrail()
    protection_service = ProtectionService(key_ring, audit)

    app.state.key_ring = key_ring
    app.state.link_service = TokenizedLinkService(key_ring, protection_service, settings, audit)
    app.state.account_service = AccountService(protection_service, audit)
    app.state.mailer = Mailer(settings)

    # Periodically drop expired verification tokens
    async def _token_sweep_loop() -> None:
        while True:
            await asyncio.sleep(TOKEN_SWEEP_INTERVAL_SECONDS)
            try:
                with Session(engine) as db:
                    app.state.link_service.sweep_expired(db)
            except Exception:
                logging.getLogger(__name__).exception("Verification token sweep error")

    sweep_task = asyncio.create_task(_token_sweep_loop())

    yield

    # Shutdown: cancel token sweep
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass


app = FastAPI(
    title="ClassMate",
    description="Learning management backend with protected PII fields",
    version="0.1.0",
    lifespan=lifespan,
)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.base_url.rstrip("/"),
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(auth.links_router)
app.include_router(health.router)
