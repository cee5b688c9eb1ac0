"""Application settings, validation and logging setup."""

import logging
import os
from typing import Optional
from pathlib import Path

BASE = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Settings:
    ENV: str
    DATABASE_URL: str
    DATABASE_ECHO: bool
    JWT_SECRET: str
    JWT_ALGORITHM: str
    JWT_EXPIRE_HOURS: int
    JWT_REFRESH_EXPIRE_HOURS: int
    ALLOW_INSECURE_JWT: bool
    MFA_CODE_TTL_SECONDS: int
    RESET_CODE_TTL_SECONDS: int
    EMAIL_VERIFICATION_TTL_SECONDS: int
    SMTP_HOST: str
    SMTP_PORT: int
    SMTP_USER: str
    SMTP_PASSWORD: str
    SMTP_SENDER: str
    SMTP_USE_TLS: bool
    LOG_LEVEL: str

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite+aiosqlite:///{BASE / 'dutyhub.db'}")
        self.DATABASE_ECHO = _env_bool("DATABASE_ECHO", "false")
        self.JWT_SECRET = os.getenv("JWT_SECRET", "change_me_for_prod")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))
        self.JWT_REFRESH_EXPIRE_HOURS = int(os.getenv("JWT_REFRESH_EXPIRE_HOURS", str(24 * 7)))
        self.ALLOW_INSECURE_JWT = _env_bool("ALLOW_INSECURE_JWT", "false")
        self.MFA_CODE_TTL_SECONDS = int(os.getenv("MFA_CODE_TTL_SECONDS", "60"))
        self.RESET_CODE_TTL_SECONDS = int(os.getenv("RESET_CODE_TTL_SECONDS", "60"))
        self.EMAIL_VERIFICATION_TTL_SECONDS = int(os.getenv("EMAIL_VERIFICATION_TTL_SECONDS", "600"))
        self.SMTP_HOST = os.getenv("SMTP_HOST", "")
        self.SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
        self.SMTP_USER = os.getenv("SMTP_USER", "")
        self.SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
        self.SMTP_SENDER = os.getenv("SMTP_SENDER", "no-reply@dutyhub.local")
        self.SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", "true")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self._validate()

    def _validate(self):
        if self.ENV != "dev" and not self.ALLOW_INSECURE_JWT and self.JWT_SECRET == "change_me_for_prod":
            raise RuntimeError("JWT_SECRET must be set to a non-default value in non-dev environments")
        for name in ("MFA_CODE_TTL_SECONDS", "RESET_CODE_TTL_SECONDS", "EMAIL_VERIFICATION_TTL_SECONDS"):
            if getattr(self, name) <= 0:
                raise RuntimeError(f"{name} must be a positive number of seconds")


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic root handler unless one is already configured."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=level or settings.LOG_LEVEL,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )


settings = Settings()
