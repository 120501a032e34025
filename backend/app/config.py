from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    base_url: str = "http://localhost:3000"
    db_url: str = "sqlite:///./classmate.db"

    # Deployment-wide secret for field encryption, search hashes and link tags
    field_protection_secret: str = ""
    jwt_secret: str = ""  # Session token signing secret, never shared with clients
    key_version: int = 1

    @model_validator(mode="after")
    def _check_secrets(self) -> Settings:
        self.field_protection_secret = self.field_protection_secret.strip()
        self.jwt_secret = self.jwt_secret.strip()
        for name in ("field_protection_secret", "jwt_secret"):
            value = getattr(self, name)
            if not value:
                raise ValueError(
                    f"{name.upper()} is not set. Protected fields and verification "
                    f"links cannot be served without it. Generate one with "
                    f"`openssl rand -hex 32` and set it in .env."
                )
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{name.upper()} must be at least {MIN_SECRET_LENGTH} characters, "
                    f"got {len(value)}."
                )
        if self.key_version < 1:
            raise ValueError(f"KEY_VERSION must be >= 1, got {self.key_version}")
        return self

    jwt_access_token_expire_minutes: int = 15
    audit_sink: Literal["log", "db"] = "log"

    # Verification / reset link policy
    verification_token_ttl_hours: int = 24
    verification_debounce_minutes: int = 5
    password_reset_ttl_minutes: int = 60
    link_clock_skew_seconds: int = 60
    verification_code_length: int = 48

    # Password policy (Argon2id parameters are the minimum accepted on verify)
    password_min_length: int = 8
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536  # KiB
    argon2_parallelism: int = 1

    # SMTP (verification and reset emails)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    mail_from: str = ""


@lru_cache
def get_settings() -> Settings:
    return Settings()
