import logging

import jwt
import pytest
from sqlmodel.ext.asyncio.session import AsyncSession

from dutyhub.config import Settings, configure_logging
from dutyhub.database import get_session
from dutyhub.mailing import SMTP_NOT_CONFIGURED, LoggingMailingService, SmtpMailingService
from dutyhub.security import PasswordHasher, TokenHandler


def test_default_secret_is_rejected_outside_dev(monkeypatch):
    monkeypatch.setenv("ENV", "prod")
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.delenv("ALLOW_INSECURE_JWT", raising=False)
    with pytest.raises(RuntimeError):
        Settings()


def test_code_ttls_must_be_positive(monkeypatch):
    monkeypatch.setenv("ENV", "dev")
    monkeypatch.setenv("MFA_CODE_TTL_SECONDS", "0")
    with pytest.raises(RuntimeError):
        Settings()


def test_settings_defaults(monkeypatch):
    for name in ("ENV", "MFA_CODE_TTL_SECONDS", "RESET_CODE_TTL_SECONDS", "EMAIL_VERIFICATION_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    config = Settings()
    assert config.ENV == "dev"
    assert config.MFA_CODE_TTL_SECONDS == 60
    assert config.RESET_CODE_TTL_SECONDS == 60
    assert config.DATABASE_URL.startswith("sqlite+aiosqlite:///")


def test_configure_logging_leaves_existing_handlers_alone():
    root = logging.getLogger()
    before = list(root.handlers)
    configure_logging("DEBUG")
    if before:
        assert root.handlers == before
    else:
        assert root.handlers


def test_password_hasher_round_trip_uses_salt():
    hasher = PasswordHasher()
    password_hash, salt = hasher.create_hash("secret1")
    assert hasher.verify("secret1", password_hash, salt)
    assert not hasher.verify("secret2", password_hash, salt)
    assert not hasher.verify("secret1", password_hash, "other-salt")
    assert not hasher.verify("secret1", "not-a-hash", salt)


def test_tokens_carry_identity_claims(config):
    handler = TokenHandler(config)
    access = handler.generate_token("42", "alice", "alice@example.com", "User")
    refresh = handler.generate_token("42", "alice", "alice@example.com", "User", is_refresh=True)

    claims = handler.decode_token(access.token)
    assert claims["user_id"] == "42"
    assert claims["typ"] == "access"
    assert handler.decode_token(refresh.token)["typ"] == "refresh"
    assert refresh.expiration > access.expiration
    assert access.token != handler.generate_token("42", "alice", "alice@example.com", "User").token

    with pytest.raises(jwt.PyJWTError):
        TokenHandler(Settings()).decode_token(access.token + "x")


def test_smtp_mailer_without_host_fails_with_code(config):
    config.SMTP_HOST = ""
    result = SmtpMailingService(config).send("a@example.com", "Hi", "body")
    assert result.has_failed
    assert result.result_code == SMTP_NOT_CONFIGURED


def test_logging_mailer_reports_success():
    result = LoggingMailingService().send("a@example.com", "Hi", "body")
    assert result.succeeded and result.data is True


@pytest.mark.anyio
async def test_get_session_yields_an_async_session():
    sessions = get_session()
    db_session = await sessions.__anext__()
    assert isinstance(db_session, AsyncSession)
    await sessions.aclose()
