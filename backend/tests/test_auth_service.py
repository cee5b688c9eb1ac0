import threading
from datetime import timedelta

import anyio
import pytest

from dutyhub.database import build_session_factory
from dutyhub.messages import AuthCodes, AuthMessages
from dutyhub.repositories import QueryOptions, UserRepository
from dutyhub.results import ServiceResult
from dutyhub.schemas import (
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RegisterRequest,
    ResetPasswordRequest,
    VerifyCodeRequest,
)
from dutyhub.services import AuthService, generate_code
from dutyhub.utils.clock import as_utc, utcnow

pytestmark = pytest.mark.anyio


@pytest.fixture
def auth(session, mailer, tokens, config):
    return AuthService(session, mailer=mailer, tokens=tokens, config=config)


class BrokenTokens:
    def generate_token(self, *args, **kwargs):
        raise RuntimeError("signing backend exploded")


class NoTokens:
    def generate_token(self, *args, **kwargs):
        return None


class ThreadRecordingMailer:
    """Notes which thread each send ran on."""

    def __init__(self):
        self.threads = []

    def send(self, to, subject, body):
        self.threads.append(threading.get_ident())
        return ServiceResult.success(True)


def test_generated_codes_have_six_digits():
    for _ in range(50):
        code = generate_code()
        assert len(code) == 6 and code.isdigit()


async def test_register_issues_token_and_stores_it(auth, session, tokens):
    result = await auth.register(RegisterRequest(username="bob", email="bob@example.com", password="secret1"))
    assert result.succeeded
    assert result.data.user.username == "bob"
    assert result.data.user.role == "User"
    assert tokens.decode_token(result.data.token.token)["user_id"] == str(result.data.user.id)

    stored = await UserRepository(session).get_by_id(result.data.user.id)
    assert stored.active_token == result.data.token.token
    assert stored.password_hash and stored.password_salt
    assert "secret1" not in stored.password_hash


async def test_register_rejects_duplicates_and_bad_input(auth, make_user):
    await make_user(username="bob")
    duplicate = await auth.register(RegisterRequest(username="bob", email="new@example.com", password="secret1"))
    assert duplicate.result_code == AuthCodes.ALREADY_REGISTERED
    assert duplicate.data is None

    bad_email = await auth.register(RegisterRequest(username="carol", email="nope", password="secret1"))
    assert bad_email.result_code == AuthCodes.INVALID_EMAIL
    short_password = await auth.register(RegisterRequest(username="carol", email="c@example.com", password="123"))
    assert short_password.result_code == AuthCodes.INVALID_PASSWORD
    missing = await auth.register(None)
    assert missing.result_code == AuthCodes.INVALID_INPUT


async def test_soft_deleted_users_still_block_registration(auth, session, make_user):
    user = await make_user(username="ghost")
    await UserRepository(session).soft_delete(user)
    result = await auth.register(RegisterRequest(username="ghost", email="g2@example.com", password="secret1"))
    assert result.result_code == AuthCodes.ALREADY_REGISTERED


async def test_login_without_mfa_returns_token_and_user(auth, session, make_user):
    user = await make_user(username="alice", password="secret1")
    result = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    assert result.succeeded
    assert result.data.user.id == user.id
    assert result.data.user.email == "alice@example.com"
    stored = await UserRepository(session).get_by_id(user.id)
    assert stored.active_token == result.data.token.token
    assert stored.last_login_time is not None


async def test_login_by_username(auth, make_user):
    await make_user(username="alice", password="secret1")
    result = await auth.login(LoginRequest(username="alice", password="secret1"))
    assert result.succeeded


async def test_login_failures_share_description_but_not_code(auth, make_user):
    await make_user(username="alice", password="secret1")
    unknown = await auth.login(LoginRequest(email="nobody@example.com", password="secret1"))
    wrong = await auth.login(LoginRequest(email="alice@example.com", password="wrong-password"))

    assert unknown.result_code == AuthCodes.LOGIN_NOT_FOUND
    assert wrong.result_code == AuthCodes.WRONG_PASSWORD
    assert unknown.messages[0].description == wrong.messages[0].description == AuthMessages.INVALID_CREDENTIALS
    assert unknown.data is None and wrong.data is None


async def test_login_input_is_validated_before_lookup(auth):
    assert (await auth.login(None)).result_code == AuthCodes.INVALID_INPUT
    assert (await auth.login(LoginRequest(password="x"))).result_code == AuthCodes.MISSING_IDENTIFIER
    assert (await auth.login(LoginRequest(email="bad", password="x"))).result_code == AuthCodes.INVALID_EMAIL


async def test_login_with_mfa_sends_code_and_warns(auth, session, mailer, make_user):
    user = await make_user(username="alice", use_mfa=True)
    result = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))

    assert result.is_warning
    assert result.data is None
    assert result.extra("useMFA") is True
    assert len(mailer.sent) == 1
    assert "1 minute" in mailer.sent[0][2]

    stored = await UserRepository(session).get_by_id(user.id)
    assert stored.login_verification_code == mailer.last_code()
    remaining = as_utc(stored.login_verification_code_expiration) - utcnow()
    assert timedelta(seconds=50) < remaining <= timedelta(seconds=60)
    assert stored.active_token is None


async def test_mfa_mail_failure_forwards_mailer_code(session, tokens, config, failing_mailer, make_user):
    await make_user(username="alice", use_mfa=True)
    auth = AuthService(session, mailer=failing_mailer, tokens=tokens, config=config)
    result = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    assert result.has_failed
    assert result.result_code == "MAIL-500101"
    assert result.messages[0].description == "relay unreachable"


async def test_verify_mfa_code_issues_token_once(auth, session, mailer, make_user):
    user = await make_user(username="alice", use_mfa=True)
    await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    code = mailer.last_code()

    wrong = await auth.verify_mfa_code(VerifyCodeRequest(email="alice@example.com", code="000000"))
    assert wrong.result_code == AuthCodes.WRONG_CODE

    verified = await auth.verify_mfa_code(VerifyCodeRequest(email="alice@example.com", code=code))
    assert verified.succeeded
    stored = await UserRepository(session).get_by_id(user.id)
    assert stored.login_verification_code is None
    assert stored.active_token == verified.data.token.token

    replay = await auth.verify_mfa_code(VerifyCodeRequest(email="alice@example.com", code=code))
    assert replay.has_failed


async def test_expired_mfa_code_is_rejected(auth, session, mailer, make_user):
    user = await make_user(username="alice", use_mfa=True)
    await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    await UserRepository(session).compare_and_set(
        user.id, {}, {"login_verification_code_expiration": utcnow() - timedelta(seconds=1)},
    )
    result = await auth.verify_mfa_code(VerifyCodeRequest(email="alice@example.com", code=mailer.last_code()))
    assert result.result_code == AuthCodes.CODE_EXPIRED


async def test_verify_for_unknown_user(auth):
    result = await auth.verify_mfa_code(VerifyCodeRequest(email="nobody@example.com", code="123456"))
    assert result.result_code == AuthCodes.VERIFY_NOT_FOUND


async def test_email_verification_marks_email_verified(auth, session, mailer, make_user):
    user = await make_user(username="alice")
    sent = await auth.send_email_verification("alice@example.com")
    assert sent.succeeded
    assert "10 minutes" in mailer.sent[-1][2]

    result = await auth.verify_email_code(VerifyCodeRequest(email="alice@example.com", code=mailer.last_code()))
    assert result.succeeded
    assert result.data.user.email_verified
    stored = await UserRepository(session).get_by_id(user.id)
    assert stored.email_verification_code is None

    missing = await auth.send_email_verification("nobody@example.com")
    assert missing.result_code == AuthCodes.EMAIL_VERIFICATION_NOT_FOUND


async def test_forgot_and_reset_password(auth, mailer, make_user):
    await make_user(username="alice", password="secret1")
    forgot = await auth.forgot_password(ForgotPasswordRequest(email="alice@example.com"))
    assert forgot.succeeded and forgot.data is True

    reset = await auth.reset_password(ResetPasswordRequest(
        email="alice@example.com", code=mailer.last_code(), new_password="brand-new-secret",
    ))
    assert reset.succeeded
    assert reset.data.token.token

    old = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    assert old.result_code == AuthCodes.WRONG_PASSWORD
    new = await auth.login(LoginRequest(email="alice@example.com", password="brand-new-secret"))
    assert new.succeeded


async def test_forgot_password_for_unknown_email(auth):
    result = await auth.forgot_password(ForgotPasswordRequest(email="nobody@example.com"))
    assert result.result_code == AuthCodes.FORGOT_NOT_FOUND


async def test_logout_clears_active_token(auth, session, make_user):
    user = await make_user(username="alice", password="secret1")
    login = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    token = login.data.token.token

    result = await auth.logout(LogoutRequest(token=token))
    assert result.succeeded and result.data is True
    assert await UserRepository(session).get(QueryOptions.where(active_token=token)) is None
    assert (await UserRepository(session).get_by_id(user.id)).active_token is None

    again = await auth.logout(LogoutRequest(token=token))
    assert again.result_code == AuthCodes.LOGOUT_NOT_FOUND


async def test_missing_token_is_reported(session, config, make_user):
    await make_user(username="alice", password="secret1")
    auth = AuthService(session, tokens=NoTokens(), config=config)
    result = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    assert result.result_code == AuthCodes.TOKEN_NOT_GENERATED


async def test_unexpected_errors_become_failed_results(session, config, make_user):
    await make_user(username="alice", password="secret1")
    auth = AuthService(session, tokens=BrokenTokens(), config=config)
    result = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    assert result.has_failed
    assert result.result_code == AuthCodes.LOGIN_UNEXPECTED
    # the session is still usable afterwards
    assert await UserRepository(session).count() == 1


async def test_code_mail_is_sent_off_the_event_loop_thread(session, tokens, config, make_user):
    await make_user(username="alice", use_mfa=True)
    threaded = ThreadRecordingMailer()
    auth = AuthService(session, mailer=threaded, tokens=tokens, config=config)
    result = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    assert result.is_warning
    assert len(threaded.threads) == 1
    assert threaded.threads[0] != threading.get_ident()


async def test_concurrent_redemptions_of_one_code_have_one_winner(engine, session, mailer, tokens, config,
                                                                  make_user, monkeypatch):
    await make_user(username="alice", use_mfa=True)
    await AuthService(session, mailer=mailer, tokens=tokens, config=config).login(
        LoginRequest(email="alice@example.com", password="secret1"),
    )
    code = mailer.last_code()
    factory = build_session_factory(engine)
    arrived = []
    both_read = anyio.Event()
    results = []

    async def redeem():
        async with factory() as own_session:
            racer = AuthService(own_session, mailer=mailer, tokens=tokens, config=config)
            consume = racer.users.compare_and_set

            # both racers have read the stored code before either consumes it
            async def gated(*args, **kwargs):
                arrived.append(True)
                if len(arrived) == 2:
                    both_read.set()
                await both_read.wait()
                return await consume(*args, **kwargs)

            monkeypatch.setattr(racer.users, "compare_and_set", gated)
            results.append(await racer.verify_mfa_code(VerifyCodeRequest(email="alice@example.com", code=code)))

    with anyio.fail_after(10):
        async with anyio.create_task_group() as tg:
            tg.start_soon(redeem)
            tg.start_soon(redeem)

    assert len(results) == 2
    assert [r.succeeded for r in results].count(True) == 1
    loser = next(r for r in results if r.has_failed)
    assert loser.result_code == AuthCodes.CODE_ALREADY_USED
    assert loser.data is None


async def test_expired_email_verification_code_is_rejected(auth, session, mailer, make_user):
    user = await make_user(username="alice")
    await auth.send_email_verification("alice@example.com")
    await UserRepository(session).compare_and_set(
        user.id, {}, {"email_verification_code_expiration": utcnow() - timedelta(seconds=1)},
    )
    result = await auth.verify_email_code(VerifyCodeRequest(email="alice@example.com", code=mailer.last_code()))
    assert result.result_code == AuthCodes.CODE_EXPIRED
    assert not (await UserRepository(session).get_by_id(user.id)).email_verified


async def test_reset_password_with_wrong_code_keeps_old_password(auth, mailer, make_user):
    await make_user(username="alice", password="secret1")
    await auth.forgot_password(ForgotPasswordRequest(email="alice@example.com"))
    reset = await auth.reset_password(ResetPasswordRequest(
        email="alice@example.com", code="000000", new_password="brand-new-secret",
    ))
    assert reset.result_code == AuthCodes.WRONG_CODE
    assert (await auth.login(LoginRequest(email="alice@example.com", password="secret1"))).succeeded


async def test_reset_password_with_expired_code(auth, session, mailer, make_user):
    user = await make_user(username="alice", password="secret1")
    await auth.forgot_password(ForgotPasswordRequest(email="alice@example.com"))
    await UserRepository(session).compare_and_set(
        user.id, {}, {"reset_password_code_expiration": utcnow() - timedelta(seconds=1)},
    )
    reset = await auth.reset_password(ResetPasswordRequest(
        email="alice@example.com", code=mailer.last_code(), new_password="brand-new-secret",
    ))
    assert reset.result_code == AuthCodes.CODE_EXPIRED
    assert reset.data is None


async def test_forgot_password_mail_failure_forwards_mailer_code(session, tokens, config, failing_mailer,
                                                                 make_user):
    await make_user(username="alice")
    auth = AuthService(session, mailer=failing_mailer, tokens=tokens, config=config)
    result = await auth.forgot_password(ForgotPasswordRequest(email="alice@example.com"))
    assert result.has_failed
    assert result.result_code == "MAIL-500101"
    assert result.messages[0].description == "relay unreachable"


async def test_blank_codes_and_tokens_have_their_own_codes(auth):
    verify = await auth.verify_mfa_code(VerifyCodeRequest(email="alice@example.com", code="  "))
    assert verify.result_code == AuthCodes.MISSING_CODE
    reset = await auth.reset_password(ResetPasswordRequest(
        email="alice@example.com", code="", new_password="brand-new-secret",
    ))
    assert reset.result_code == AuthCodes.MISSING_CODE
    assert (await auth.logout(LogoutRequest(token=" "))).result_code == AuthCodes.MISSING_TOKEN
    assert (await auth.logout(None)).result_code == AuthCodes.INVALID_INPUT


async def test_logout_losing_to_a_token_change_is_reported(auth, session, make_user, monkeypatch):
    user = await make_user(username="alice", password="secret1")
    login = await auth.login(LoginRequest(email="alice@example.com", password="secret1"))
    token = login.data.token.token
    clear = auth.users.compare_and_set

    async def rotate_then_clear(entity_id, expected, changes, actor_id=None):
        await clear(entity_id, {}, {"active_token": "rotated"})
        return await clear(entity_id, expected, changes, actor_id=actor_id)

    monkeypatch.setattr(auth.users, "compare_and_set", rotate_then_clear)
    result = await auth.logout(LogoutRequest(token=token))
    assert result.result_code == AuthCodes.LOGOUT_TOKEN_CHANGED
    assert result.messages[0].description == AuthMessages.SESSION_CHANGED
    assert (await UserRepository(session).get_by_id(user.id)).active_token == "rotated"
