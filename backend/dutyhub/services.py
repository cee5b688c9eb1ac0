"""Business logic services.

This module holds the service classes that coordinate business rules,
repositories and external collaborators (mailer, token issuer, password
hasher). Every public method returns a `ServiceResult`:

- invalid input is caught by `BusinessRules` before any I/O;
- missing entities, conflicts and collaborator failures settle the
  result as failed with a stable code;
- anything else escaping a method is logged and converted into a
  failed result by `service_operation`, so no raw exception crosses the
  service boundary.

Collaborators and the session are passed in through the constructors.
"""

import functools
import json
import logging
import secrets
import uuid
from typing import List, Optional, Type

import anyio.to_thread
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from . import models, repositories
from .config import Settings, settings as default_settings
from .errors import ConflictError, DeleteRestrictedError, NotFoundError, ServiceError
from .mailing import LoggingMailingService, MailingService
from .messages import (
    UNEXPECTED_ERROR,
    AuthCodes,
    AuthMessages,
    CommentCodes,
    DutyCodes,
    ProjectCodes,
    TeamCodes,
)
from .repositories import AnyOf, Filter, OrderBy, QueryOptions
from .results import ServiceMessage, ServiceResult
from .rules import (
    BusinessRules,
    check_date_order,
    check_email,
    check_max_length,
    check_not_blank,
    check_not_none,
    check_paging,
    check_password,
)
from .schemas import (
    CommentCreate,
    CommentView,
    DutyCreate,
    DutyDetail,
    DutyUpdate,
    DutyView,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    Page,
    ProjectCreate,
    ProjectUpdate,
    ProjectView,
    RegisterRequest,
    ResetPasswordRequest,
    TeamCreate,
    TeamUpdate,
    TeamView,
    UserView,
    VerifyCodeRequest,
)
from .security import PasswordHasher, TokenHandler
from .utils.clock import expires_in, is_expired, utcnow

logger = logging.getLogger(__name__)


def _log_event(event: str, **fields) -> None:
    logger.info("%s %s", event, json.dumps(fields, default=str, ensure_ascii=True))


def service_operation(unexpected_code: str):
    """Turn exceptions escaping a service method into a failed result.

    Coded `ServiceError`s keep their own code; anything else is logged
    with its traceback, the session is rolled back and the result carries
    `unexpected_code`.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except ServiceError as exc:
                return ServiceResult.failure(exc)
            except Exception:
                logger.exception(
                    "service_failed %s",
                    json.dumps({"operation": func.__qualname__, "code": unexpected_code}, ensure_ascii=True),
                )
                await self.session.rollback()
                return ServiceResult.failure(ServiceMessage.error(unexpected_code, UNEXPECTED_ERROR))
        return wrapper
    return decorator


def generate_code() -> str:
    """Return a random six-digit numeric one-time code."""
    return str(secrets.randbelow(900000) + 100000)


def _describe_ttl(seconds: int) -> str:
    if seconds % 60:
        return f"{seconds} seconds"
    minutes = seconds // 60
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


def _codes_match(stored: Optional[str], supplied: Optional[str]) -> bool:
    if stored is None or supplied is None:
        return False
    return secrets.compare_digest(stored.encode(), supplied.encode())


class BaseService:
    """Holds the session every repository of a service shares."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _page(self, repository: repositories.EntityRepository, options: QueryOptions,
                    page: int, page_size: Optional[int], view: Type[BaseModel], invalid_code: str) -> Page:
        BusinessRules.enforce((invalid_code, check_paging(page, page_size)))
        rows = await repository.get_all_paginated(options, page=page, page_size=page_size)
        total = await repository.count(options)
        return Page[view](items=[view.model_validate(r) for r in rows], total=total, page=page, page_size=page_size)


class AuthService(BaseService):
    """Registration, login with optional MFA, verification, password reset and logout."""

    def __init__(self, session: AsyncSession, mailer: Optional[MailingService] = None,
                 tokens: Optional[TokenHandler] = None, hasher: Optional[PasswordHasher] = None,
                 config: Settings = default_settings):
        super().__init__(session)
        self.users = repositories.UserRepository(session)
        self.mailer = mailer or LoggingMailingService()
        self.tokens = tokens or TokenHandler(config)
        self.hasher = hasher or PasswordHasher()
        self.config = config

    # -- login -------------------------------------------------------------

    @service_operation(AuthCodes.LOGIN_UNEXPECTED)
    async def login(self, request: Optional[LoginRequest]) -> ServiceResult[LoginResponse]:
        """Verify credentials, then either challenge for MFA or issue a token.

        Unknown identifier and wrong password share the outward
        description but keep distinct codes.
        """
        result: ServiceResult[LoginResponse] = ServiceResult()
        failure = BusinessRules.run(
            (AuthCodes.INVALID_INPUT, check_not_none(request, "login payload")),
            (AuthCodes.MISSING_IDENTIFIER,
             lambda: None if (request.email or request.username) else AuthMessages.IDENTIFIER_REQUIRED),
            (AuthCodes.INVALID_EMAIL, lambda: check_email(request.email) if request.email else None),
        )
        if failure:
            return result.fail(failure)

        identifiers = [Filter(name, value) for name, value in (("email", request.email),
                                                               ("username", request.username)) if value]
        user = await self.users.get(QueryOptions(filters=[AnyOf(*identifiers)]))
        if user is None:
            _log_event("login_failed", reason="not_found")
            return result.fail(ServiceMessage.error(AuthCodes.LOGIN_NOT_FOUND, AuthMessages.INVALID_CREDENTIALS))
        if not self.hasher.verify(request.password, user.password_hash, user.password_salt):
            _log_event("login_failed", reason="wrong_password", user_id=user.id)
            return result.fail(ServiceMessage.error(AuthCodes.WRONG_PASSWORD, AuthMessages.INVALID_CREDENTIALS))

        if user.use_mfa:
            now = utcnow()
            user.last_login_time = now
            failure = await self._send_code(
                user,
                code_field="login_verification_code",
                expiration_field="login_verification_code_expiration",
                ttl_seconds=self.config.MFA_CODE_TTL_SECONDS,
                subject="Verify Login",
                body="Please use this code to login: {code}. The code will expire in {ttl}.",
                fallback_code=AuthCodes.MFA_MAIL_NOT_SENT,
            )
            if failure:
                return result.fail(failure)
            _log_event("login_mfa_challenge", user_id=user.id)
            result.add_extra("useMFA", True)
            return result.warning(AuthMessages.MFA_REQUIRED)

        token = self._issue_token(user)
        if token is None:
            return result.fail(ServiceMessage.error(AuthCodes.TOKEN_NOT_GENERATED, AuthMessages.TOKEN_NOT_GENERATED))
        user.active_token = token.token
        user.last_login_time = utcnow()
        user = await self.users.update(user, actor_id=user.id)
        _log_event("login_succeeded", user_id=user.id)
        return result.set_data(LoginResponse(token=token, user=UserView.model_validate(user)),
                               AuthMessages.LOGIN_SUCCESSFUL)

    # -- register ----------------------------------------------------------

    @service_operation(AuthCodes.REGISTER_UNEXPECTED)
    async def register(self, request: Optional[RegisterRequest]) -> ServiceResult[LoginResponse]:
        result: ServiceResult[LoginResponse] = ServiceResult()
        failure = BusinessRules.run(
            (AuthCodes.INVALID_INPUT, check_not_none(request, "registration payload")),
            (AuthCodes.INVALID_USERNAME,
             lambda: check_not_blank(request.username, "username") or check_max_length(request.username, 127, "username")),
            (AuthCodes.INVALID_EMAIL, lambda: check_email(request.email) or check_max_length(request.email, 127, "email")),
            (AuthCodes.INVALID_PASSWORD, lambda: check_password(request.password)),
        )
        if failure:
            return result.fail(failure)

        username = request.username.strip()
        email = request.email.strip()
        # soft-deleted users still hold their username and email
        existing = await self.users.get(QueryOptions(
            filters=[AnyOf(Filter("username", username), Filter("email", email))],
            include_deleted=True,
        ))
        if existing is not None:
            return result.fail(ServiceMessage.error(AuthCodes.ALREADY_REGISTERED, AuthMessages.ALREADY_REGISTERED))

        password_hash, password_salt = self.hasher.create_hash(request.password)
        user = models.User(
            username=username,
            email=email,
            phone_number=request.phone_number,
            password_hash=password_hash,
            password_salt=password_salt,
            role="User",
        )
        try:
            user = await self.users.add(user)
        except ConflictError:
            return result.fail(ServiceMessage.error(AuthCodes.ALREADY_REGISTERED, AuthMessages.ALREADY_REGISTERED))

        token = self._issue_token(user)
        if token is None:
            return result.fail(ServiceMessage.error(AuthCodes.TOKEN_NOT_GENERATED, AuthMessages.TOKEN_NOT_GENERATED))
        user.active_token = token.token
        user = await self.users.update(user, actor_id=user.id)
        _log_event("user_registered", user_id=user.id)
        return result.set_data(LoginResponse(token=token, user=UserView.model_validate(user)),
                               AuthMessages.REGISTRATION_SUCCESSFUL)

    # -- verification ------------------------------------------------------

    @service_operation(AuthCodes.VERIFY_UNEXPECTED)
    async def verify_mfa_code(self, request: Optional[VerifyCodeRequest]) -> ServiceResult[LoginResponse]:
        """Redeem the emailed login code and issue a token."""
        result: ServiceResult[LoginResponse] = ServiceResult()
        failure = self._check_code_request(request)
        if failure:
            return result.fail(failure)
        return await self._redeem_code(
            result, request.email, request.code,
            code_field="login_verification_code",
            expiration_field="login_verification_code_expiration",
            not_found_code=AuthCodes.VERIFY_NOT_FOUND,
            changes={"last_login_time": utcnow()},
            success_message=AuthMessages.VERIFICATION_SUCCESSFUL,
        )

    @service_operation(AuthCodes.EMAIL_VERIFICATION_UNEXPECTED)
    async def send_email_verification(self, email: Optional[str]) -> ServiceResult[bool]:
        result: ServiceResult[bool] = ServiceResult()
        failure = BusinessRules.run((AuthCodes.INVALID_EMAIL, check_email(email)))
        if failure:
            return result.fail(failure)
        user = await self.users.get(QueryOptions.where(email=email))
        if user is None:
            return result.fail(ServiceMessage.error(AuthCodes.EMAIL_VERIFICATION_NOT_FOUND, AuthMessages.USER_NOT_FOUND))
        failure = await self._send_code(
            user,
            code_field="email_verification_code",
            expiration_field="email_verification_code_expiration",
            ttl_seconds=self.config.EMAIL_VERIFICATION_TTL_SECONDS,
            subject="Verify Email",
            body="Please use this code to verify your email address: {code}. The code will expire in {ttl}.",
            fallback_code=AuthCodes.EMAIL_VERIFICATION_MAIL_NOT_SENT,
        )
        if failure:
            return result.fail(failure)
        return result.set_data(True, AuthMessages.EMAIL_VERIFICATION_SENT)

    @service_operation(AuthCodes.VERIFY_UNEXPECTED)
    async def verify_email_code(self, request: Optional[VerifyCodeRequest]) -> ServiceResult[LoginResponse]:
        """Redeem the email verification code, mark the email verified, issue a token."""
        result: ServiceResult[LoginResponse] = ServiceResult()
        failure = self._check_code_request(request)
        if failure:
            return result.fail(failure)
        return await self._redeem_code(
            result, request.email, request.code,
            code_field="email_verification_code",
            expiration_field="email_verification_code_expiration",
            not_found_code=AuthCodes.VERIFY_NOT_FOUND,
            changes={"email_verified": True},
            success_message=AuthMessages.VERIFICATION_SUCCESSFUL,
        )

    # -- password reset ----------------------------------------------------

    @service_operation(AuthCodes.FORGOT_UNEXPECTED)
    async def forgot_password(self, request: Optional[ForgotPasswordRequest]) -> ServiceResult[bool]:
        result: ServiceResult[bool] = ServiceResult()
        failure = BusinessRules.run(
            (AuthCodes.INVALID_INPUT, check_not_none(request, "forgot password payload")),
            (AuthCodes.INVALID_EMAIL, lambda: check_email(request.email)),
        )
        if failure:
            return result.fail(failure)
        user = await self.users.get(QueryOptions.where(email=request.email))
        if user is None:
            return result.fail(ServiceMessage.error(AuthCodes.FORGOT_NOT_FOUND, AuthMessages.USER_NOT_FOUND))
        failure = await self._send_code(
            user,
            code_field="reset_password_code",
            expiration_field="reset_password_code_expiration",
            ttl_seconds=self.config.RESET_CODE_TTL_SECONDS,
            subject="Reset Password",
            body="Please use this code to reset your password: {code}. The code will expire in {ttl}.",
            fallback_code=AuthCodes.RESET_MAIL_NOT_SENT,
        )
        if failure:
            return result.fail(failure)
        _log_event("password_reset_requested", user_id=user.id)
        return result.set_data(True, AuthMessages.RESET_CODE_SENT)

    @service_operation(AuthCodes.RESET_UNEXPECTED)
    async def reset_password(self, request: Optional[ResetPasswordRequest]) -> ServiceResult[LoginResponse]:
        """Redeem a reset code, replace the password hash and salt, issue a token."""
        result: ServiceResult[LoginResponse] = ServiceResult()
        failure = BusinessRules.run(
            (AuthCodes.INVALID_INPUT, check_not_none(request, "reset password payload")),
            (AuthCodes.INVALID_EMAIL, lambda: check_email(request.email)),
            (AuthCodes.MISSING_CODE, lambda: check_not_blank(request.code, "code")),
            (AuthCodes.INVALID_PASSWORD, lambda: check_password(request.new_password)),
        )
        if failure:
            return result.fail(failure)
        password_hash, password_salt = self.hasher.create_hash(request.new_password)
        return await self._redeem_code(
            result, request.email, request.code,
            code_field="reset_password_code",
            expiration_field="reset_password_code_expiration",
            not_found_code=AuthCodes.RESET_NOT_FOUND,
            changes={"password_hash": password_hash, "password_salt": password_salt},
            success_message=AuthMessages.PASSWORD_RESET_SUCCESSFUL,
        )

    # -- logout ------------------------------------------------------------

    @service_operation(AuthCodes.LOGOUT_UNEXPECTED)
    async def logout(self, request: Optional[LogoutRequest]) -> ServiceResult[bool]:
        """Clear the active token; an unknown token is a failure, not a no-op."""
        result: ServiceResult[bool] = ServiceResult()
        failure = BusinessRules.run(
            (AuthCodes.INVALID_INPUT, check_not_none(request, "logout payload")),
            (AuthCodes.MISSING_TOKEN, lambda: check_not_blank(request.token, "token")),
        )
        if failure:
            return result.fail(failure)
        user = await self.users.get(QueryOptions.where(active_token=request.token))
        if user is None:
            return result.fail(ServiceMessage.error(AuthCodes.LOGOUT_NOT_FOUND, AuthMessages.NOT_LOGGED_IN))
        cleared = await self.users.compare_and_set(
            user.id, {"active_token": request.token}, {"active_token": None}, actor_id=user.id,
        )
        if not cleared:
            return result.fail(ServiceMessage.error(AuthCodes.LOGOUT_TOKEN_CHANGED, AuthMessages.SESSION_CHANGED))
        _log_event("logout", user_id=user.id)
        return result.set_data(True, AuthMessages.LOGOUT_SUCCESSFUL)

    # -- helpers -----------------------------------------------------------

    def _issue_token(self, user: models.User):
        return self.tokens.generate_token(user.id, user.username, user.email, user.role, False)

    @staticmethod
    def _check_code_request(request: Optional[VerifyCodeRequest]) -> Optional[ServiceMessage]:
        return BusinessRules.run(
            (AuthCodes.INVALID_INPUT, check_not_none(request, "verification payload")),
            (AuthCodes.INVALID_EMAIL, lambda: check_email(request.email)),
            (AuthCodes.MISSING_CODE, lambda: check_not_blank(request.code, "code")),
        )

    async def _send_code(self, user: models.User, *, code_field: str, expiration_field: str,
                         ttl_seconds: int, subject: str, body: str, fallback_code: str) -> Optional[ServiceMessage]:
        """Store a fresh one-time code on `user` and mail it.

        Returns the failure message when the mailer reports an error.
        """
        code = generate_code()
        setattr(user, code_field, code)
        setattr(user, expiration_field, expires_in(ttl_seconds))
        await self.users.update(user, actor_id=user.id)
        mail = await anyio.to_thread.run_sync(
            self.mailer.send, user.email, subject, body.format(code=code, ttl=_describe_ttl(ttl_seconds)),
        )
        if not mail.has_failed:
            return None
        description = mail.messages[0].description if mail.messages else None
        _log_event("code_mail_failed", user_id=user.id, code=mail.result_code)
        return ServiceMessage.error(mail.result_code or fallback_code,
                                    description or AuthMessages.VERIFICATION_CODE_MAIL_NOT_SENT)

    async def _redeem_code(self, result: ServiceResult[LoginResponse], email: str, code: str, *,
                           code_field: str, expiration_field: str, not_found_code: str,
                           changes: dict, success_message: str) -> ServiceResult[LoginResponse]:
        """Check, expire-check and atomically consume a one-time code, then issue a token.

        The code is cleared with a conditional UPDATE keyed on its current
        value, so a second concurrent redemption of the same code fails.
        """
        user = await self.users.get(QueryOptions.where(email=email))
        if user is None:
            return result.fail(ServiceMessage.error(not_found_code, AuthMessages.USER_NOT_FOUND))
        stored = getattr(user, code_field)
        if not _codes_match(stored, code):
            return result.fail(ServiceMessage.error(AuthCodes.WRONG_CODE, AuthMessages.WRONG_VERIFICATION_CODE))
        if is_expired(getattr(user, expiration_field)):
            return result.fail(ServiceMessage.error(AuthCodes.CODE_EXPIRED, AuthMessages.VERIFICATION_CODE_EXPIRED))

        token = self._issue_token(user)
        if token is None:
            return result.fail(ServiceMessage.error(AuthCodes.TOKEN_NOT_GENERATED, AuthMessages.TOKEN_NOT_GENERATED))
        redeemed = await self.users.compare_and_set(
            user.id,
            {code_field: stored},
            dict(changes, **{code_field: None, expiration_field: None, "active_token": token.token}),
            actor_id=user.id,
        )
        if not redeemed:
            return result.fail(ServiceMessage.error(AuthCodes.CODE_ALREADY_USED, AuthMessages.VERIFICATION_CODE_USED))
        user = await self.users.get_by_id(user.id)
        _log_event("code_redeemed", user_id=user.id, field=code_field)
        return result.set_data(LoginResponse(token=token, user=UserView.model_validate(user)), success_message)


class ProjectService(BaseService):
    """Create, update, list and delete projects; grant teams access."""

    def __init__(self, session: AsyncSession):
        super().__init__(session)
        self.projects = repositories.ProjectRepository(session)
        self.users = repositories.UserRepository(session)
        self.teams = repositories.TeamRepository(session)
        self.team_projects = repositories.TeamProjectRepository(session)

    @service_operation(ProjectCodes.UNEXPECTED)
    async def create_project(self, request: Optional[ProjectCreate],
                             actor_id: Optional[uuid.UUID] = None) -> ServiceResult[ProjectView]:
        result: ServiceResult[ProjectView] = ServiceResult()
        failure = BusinessRules.run(
            (ProjectCodes.INVALID_INPUT, check_not_none(request, "project payload")),
            (ProjectCodes.INVALID_INPUT,
             lambda: check_not_blank(request.name, "name") or check_max_length(request.name, 127, "name")),
            (ProjectCodes.INVALID_DATES, lambda: check_date_order(request.start_date, request.due_date)),
        )
        if failure:
            return result.fail(failure)
        if await self.users.get_by_id(request.manager_id) is None:
            return result.fail(ServiceMessage.error(ProjectCodes.MANAGER_NOT_FOUND, "Manager not found"))

        project = models.Project(
            name=request.name.strip(),
            description=request.description,
            start_date=request.start_date or utcnow(),
            due_date=request.due_date,
            status=request.status,
            priority=request.priority,
            manager_id=request.manager_id,
        )
        project = await self.projects.add(project, actor_id=actor_id)
        return result.set_data(ProjectView.model_validate(project))

    @service_operation(ProjectCodes.UNEXPECTED)
    async def update_project(self, request: Optional[ProjectUpdate],
                             actor_id: Optional[uuid.UUID] = None) -> ServiceResult[ProjectView]:
        """Apply the non-`None` fields of `request` to an existing project."""
        result: ServiceResult[ProjectView] = ServiceResult()
        failure = BusinessRules.run(
            (ProjectCodes.INVALID_INPUT, check_not_none(request, "project payload")),
            (ProjectCodes.INVALID_INPUT,
             lambda: None if request.name is None else
             check_not_blank(request.name, "name") or check_max_length(request.name, 127, "name")),
        )
        if failure:
            return result.fail(failure)
        project = await self.projects.get_by_id(request.id)
        if project is None:
            return result.fail(ServiceMessage.error(ProjectCodes.NOT_FOUND, "Project not found"))
        if request.manager_id is not None and await self.users.get_by_id(request.manager_id) is None:
            return result.fail(ServiceMessage.error(ProjectCodes.MANAGER_NOT_FOUND, "Manager not found"))

        for name, value in request.model_dump(exclude={"id"}, exclude_none=True).items():
            setattr(project, name, value)
        failure = BusinessRules.run((ProjectCodes.INVALID_DATES, check_date_order(project.start_date, project.due_date)))
        if failure:
            return result.fail(failure)
        project = await self.projects.update(project, actor_id=actor_id)
        return result.set_data(ProjectView.model_validate(project))

    @service_operation(ProjectCodes.UNEXPECTED)
    async def get_project(self, project_id: uuid.UUID) -> ServiceResult[ProjectView]:
        project = await self.projects.get_by_id(project_id)
        if project is None:
            return ServiceResult.failure(ServiceMessage.error(ProjectCodes.NOT_FOUND, "Project not found"))
        return ServiceResult.success(ProjectView.model_validate(project))

    @service_operation(ProjectCodes.UNEXPECTED)
    async def list_projects(self, page: int = 1, page_size: Optional[int] = 20,
                            manager_id: Optional[uuid.UUID] = None,
                            status: Optional[models.ProjectStatus] = None) -> ServiceResult[Page]:
        """Newest projects first, optionally narrowed by manager and status."""
        filters = []
        if manager_id is not None:
            filters.append(Filter("manager_id", manager_id))
        if status is not None:
            filters.append(Filter("status", status))
        options = QueryOptions(filters=filters, order_by=[OrderBy("created_at", descending=True), OrderBy("id")])
        page_result = await self._page(self.projects, options, page, page_size, ProjectView, ProjectCodes.INVALID_INPUT)
        return ServiceResult.success(page_result)

    @service_operation(ProjectCodes.UNEXPECTED)
    async def delete_project(self, project_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> ServiceResult[bool]:
        try:
            await self.projects.soft_delete(project_id, actor_id=actor_id)
        except NotFoundError:
            return ServiceResult.failure(ServiceMessage.error(ProjectCodes.NOT_FOUND, "Project not found"))
        return ServiceResult.success(True)

    @service_operation(ProjectCodes.UNEXPECTED)
    async def assign_team(self, project_id: uuid.UUID, team_id: uuid.UUID,
                          actor_id: Optional[uuid.UUID] = None) -> ServiceResult[bool]:
        """Grant `team_id` access to `project_id`."""
        result: ServiceResult[bool] = ServiceResult()
        if await self.projects.get_by_id(project_id) is None:
            return result.fail(ServiceMessage.error(ProjectCodes.NOT_FOUND, "Project not found"))
        if await self.teams.get_by_id(team_id) is None:
            return result.fail(ServiceMessage.error(ProjectCodes.TEAM_NOT_FOUND, "Team not found"))
        if await self.team_projects.count(QueryOptions.where(project_id=project_id, team_id=team_id)):
            return result.fail(ServiceMessage.error(ProjectCodes.TEAM_ALREADY_ASSIGNED,
                                                    "Team already has access to this project"))
        await self.team_projects.add(models.TeamProject(project_id=project_id, team_id=team_id), actor_id=actor_id)
        return result.set_data(True)


class TeamService(BaseService):
    """Teams and their memberships."""

    def __init__(self, session: AsyncSession):
        super().__init__(session)
        self.teams = repositories.TeamRepository(session)
        self.users = repositories.UserRepository(session)
        self.projects = repositories.ProjectRepository(session)
        self.memberships = repositories.UserTeamRepository(session)

    @service_operation(TeamCodes.UNEXPECTED)
    async def create_team(self, request: Optional[TeamCreate],
                          actor_id: Optional[uuid.UUID] = None) -> ServiceResult[TeamView]:
        result: ServiceResult[TeamView] = ServiceResult()
        failure = BusinessRules.run(
            (TeamCodes.INVALID_INPUT, check_not_none(request, "team payload")),
            (TeamCodes.INVALID_INPUT,
             lambda: check_not_blank(request.name, "name") or check_max_length(request.name, 127, "name")),
        )
        if failure:
            return result.fail(failure)
        if await self.users.get_by_id(request.manager_id) is None:
            return result.fail(ServiceMessage.error(TeamCodes.MANAGER_NOT_FOUND, "Manager not found"))
        if request.project_id is not None and await self.projects.get_by_id(request.project_id) is None:
            return result.fail(ServiceMessage.error(TeamCodes.PROJECT_NOT_FOUND, "Project not found"))
        team = models.Team(**request.model_dump())
        team.name = team.name.strip()
        team = await self.teams.add(team, actor_id=actor_id)
        return result.set_data(TeamView.model_validate(team))

    @service_operation(TeamCodes.UNEXPECTED)
    async def update_team(self, request: Optional[TeamUpdate],
                          actor_id: Optional[uuid.UUID] = None) -> ServiceResult[TeamView]:
        result: ServiceResult[TeamView] = ServiceResult()
        failure = BusinessRules.run(
            (TeamCodes.INVALID_INPUT, check_not_none(request, "team payload")),
            (TeamCodes.INVALID_INPUT,
             lambda: None if request.name is None else
             check_not_blank(request.name, "name") or check_max_length(request.name, 127, "name")),
        )
        if failure:
            return result.fail(failure)
        team = await self.teams.get_by_id(request.id)
        if team is None:
            return result.fail(ServiceMessage.error(TeamCodes.NOT_FOUND, "Team not found"))
        if request.manager_id is not None and await self.users.get_by_id(request.manager_id) is None:
            return result.fail(ServiceMessage.error(TeamCodes.MANAGER_NOT_FOUND, "Manager not found"))
        for name, value in request.model_dump(exclude={"id"}, exclude_none=True).items():
            setattr(team, name, value)
        team = await self.teams.update(team, actor_id=actor_id)
        return result.set_data(TeamView.model_validate(team))

    @service_operation(TeamCodes.UNEXPECTED)
    async def get_team(self, team_id: uuid.UUID) -> ServiceResult[TeamView]:
        team = await self.teams.get_by_id(team_id)
        if team is None:
            return ServiceResult.failure(ServiceMessage.error(TeamCodes.NOT_FOUND, "Team not found"))
        return ServiceResult.success(TeamView.model_validate(team))

    @service_operation(TeamCodes.UNEXPECTED)
    async def add_member(self, team_id: uuid.UUID, user_id: uuid.UUID,
                         actor_id: Optional[uuid.UUID] = None) -> ServiceResult[bool]:
        result: ServiceResult[bool] = ServiceResult()
        if await self.teams.get_by_id(team_id) is None:
            return result.fail(ServiceMessage.error(TeamCodes.NOT_FOUND, "Team not found"))
        if await self.users.get_by_id(user_id) is None:
            return result.fail(ServiceMessage.error(TeamCodes.USER_NOT_FOUND, "User not found"))
        if await self.memberships.count(QueryOptions.where(team_id=team_id, user_id=user_id)):
            return result.fail(ServiceMessage.error(TeamCodes.ALREADY_MEMBER, "User is already a member of this team"))
        await self.memberships.add(models.UserTeam(team_id=team_id, user_id=user_id), actor_id=actor_id)
        return result.set_data(True)

    @service_operation(TeamCodes.UNEXPECTED)
    async def remove_member(self, team_id: uuid.UUID, user_id: uuid.UUID,
                            actor_id: Optional[uuid.UUID] = None) -> ServiceResult[bool]:
        membership = await self.memberships.get(QueryOptions.where(team_id=team_id, user_id=user_id))
        if membership is None:
            return ServiceResult.failure(ServiceMessage.error(TeamCodes.NOT_A_MEMBER, "User is not a member of this team"))
        await self.memberships.soft_delete(membership, actor_id=actor_id)
        return ServiceResult.success(True)

    @service_operation(TeamCodes.UNEXPECTED)
    async def list_members(self, team_id: uuid.UUID) -> ServiceResult[List[UserView]]:
        if await self.teams.get_by_id(team_id) is None:
            return ServiceResult.failure(ServiceMessage.error(TeamCodes.NOT_FOUND, "Team not found"))
        memberships = await self.memberships.get_all(QueryOptions.where(team_id=team_id))
        if not memberships:
            return ServiceResult.success([])
        users = await self.users.get_all(QueryOptions(
            filters=[Filter("id", [m.user_id for m in memberships], op="in")],
            order_by=[OrderBy("username")],
        ))
        return ServiceResult.success([UserView.model_validate(u) for u in users])

    @service_operation(TeamCodes.UNEXPECTED)
    async def delete_team(self, team_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> ServiceResult[bool]:
        try:
            await self.teams.soft_delete(team_id, actor_id=actor_id)
        except NotFoundError:
            return ServiceResult.failure(ServiceMessage.error(TeamCodes.NOT_FOUND, "Team not found"))
        return ServiceResult.success(True)


class DutyService(BaseService):
    """Duties, their nesting and their assignees."""

    def __init__(self, session: AsyncSession):
        super().__init__(session)
        self.duties = repositories.DutyRepository(session)
        self.projects = repositories.ProjectRepository(session)
        self.users = repositories.UserRepository(session)
        self.assignments = repositories.UserDutyRepository(session)

    @staticmethod
    def _check_title(request) -> Optional[ServiceMessage]:
        return BusinessRules.run(
            (DutyCodes.INVALID_INPUT, check_not_none(request, "duty payload")),
            (DutyCodes.INVALID_INPUT,
             lambda: None if request.title is None else
             check_not_blank(request.title, "title") or check_max_length(request.title, 127, "title")),
            (DutyCodes.INVALID_INPUT, lambda: check_max_length(request.description, 127, "description")),
        )

    @service_operation(DutyCodes.UNEXPECTED)
    async def create_duty(self, request: Optional[DutyCreate],
                          actor_id: Optional[uuid.UUID] = None) -> ServiceResult[DutyView]:
        result: ServiceResult[DutyView] = ServiceResult()
        failure = self._check_title(request)
        if failure:
            return result.fail(failure)
        if await self.projects.get_by_id(request.project_id) is None:
            return result.fail(ServiceMessage.error(DutyCodes.PROJECT_NOT_FOUND, "Project not found"))
        if await self.users.get_by_id(request.reporter_id) is None:
            return result.fail(ServiceMessage.error(DutyCodes.REPORTER_NOT_FOUND, "Reporter not found"))
        if request.parent_duty_id is not None:
            parent = await self.duties.get_by_id(request.parent_duty_id)
            if parent is None:
                return result.fail(ServiceMessage.error(DutyCodes.PARENT_NOT_FOUND, "Parent duty not found"))
            if parent.project_id != request.project_id:
                return result.fail(ServiceMessage.error(DutyCodes.PARENT_OTHER_PROJECT,
                                                        "Parent duty belongs to another project"))
        duty = models.Duty(**request.model_dump())
        duty.title = duty.title.strip()
        duty = await self.duties.add(duty, actor_id=actor_id)
        return result.set_data(DutyView.model_validate(duty))

    @service_operation(DutyCodes.UNEXPECTED)
    async def update_duty(self, request: Optional[DutyUpdate],
                          actor_id: Optional[uuid.UUID] = None) -> ServiceResult[DutyView]:
        result: ServiceResult[DutyView] = ServiceResult()
        failure = self._check_title(request)
        if failure:
            return result.fail(failure)
        duty = await self.duties.get_by_id(request.id, tracking=True)
        if duty is None:
            return result.fail(ServiceMessage.error(DutyCodes.NOT_FOUND, "Duty not found"))
        for name, value in request.model_dump(exclude={"id"}, exclude_none=True).items():
            setattr(duty, name, value)
        duty = await self.duties.update(duty, actor_id=actor_id)
        return result.set_data(DutyView.model_validate(duty))

    @service_operation(DutyCodes.UNEXPECTED)
    async def get_duty(self, duty_id: uuid.UUID, with_details: bool = False) -> ServiceResult[DutyView]:
        """Return a duty; `with_details` adds its live sub-duties and comments."""
        include = ("sub_duties", "comments") if with_details else ()
        duty = await self.duties.get_by_id(duty_id, include=include)
        if duty is None:
            return ServiceResult.failure(ServiceMessage.error(DutyCodes.NOT_FOUND, "Duty not found"))
        if not with_details:
            return ServiceResult.success(DutyView.model_validate(duty))
        detail = DutyDetail(
            **DutyView.model_validate(duty).model_dump(),
            sub_duties=[DutyView.model_validate(d) for d in duty.sub_duties if not d.is_deleted],
            comments=[CommentView.model_validate(c)
                      for c in sorted(duty.comments, key=lambda c: c.created_at) if not c.is_deleted],
        )
        return ServiceResult.success(detail)

    @service_operation(DutyCodes.UNEXPECTED)
    async def list_project_duties(self, project_id: uuid.UUID, page: int = 1, page_size: Optional[int] = 20,
                                  status: Optional[models.DutyStatus] = None) -> ServiceResult[Page]:
        """Duties of a project, soonest due first."""
        if await self.projects.get_by_id(project_id) is None:
            return ServiceResult.failure(ServiceMessage.error(DutyCodes.PROJECT_NOT_FOUND, "Project not found"))
        filters = [Filter("project_id", project_id)]
        if status is not None:
            filters.append(Filter("status", status))
        options = QueryOptions(filters=filters, order_by=[OrderBy("due_date"), OrderBy("id")])
        page_result = await self._page(self.duties, options, page, page_size, DutyView, DutyCodes.INVALID_INPUT)
        return ServiceResult.success(page_result)

    @service_operation(DutyCodes.UNEXPECTED)
    async def assign_user(self, duty_id: uuid.UUID, user_id: uuid.UUID,
                          actor_id: Optional[uuid.UUID] = None) -> ServiceResult[bool]:
        result: ServiceResult[bool] = ServiceResult()
        if await self.duties.get_by_id(duty_id) is None:
            return result.fail(ServiceMessage.error(DutyCodes.NOT_FOUND, "Duty not found"))
        if await self.users.get_by_id(user_id) is None:
            return result.fail(ServiceMessage.error(DutyCodes.USER_NOT_FOUND, "User not found"))
        if await self.assignments.count(QueryOptions.where(duty_id=duty_id, user_id=user_id)):
            return result.fail(ServiceMessage.error(DutyCodes.ALREADY_ASSIGNED, "User is already assigned to this duty"))
        await self.assignments.add(models.UserDuty(duty_id=duty_id, user_id=user_id), actor_id=actor_id)
        return result.set_data(True)

    @service_operation(DutyCodes.UNEXPECTED)
    async def unassign_user(self, duty_id: uuid.UUID, user_id: uuid.UUID,
                            actor_id: Optional[uuid.UUID] = None) -> ServiceResult[bool]:
        assignment = await self.assignments.get(QueryOptions.where(duty_id=duty_id, user_id=user_id))
        if assignment is None:
            return ServiceResult.failure(ServiceMessage.error(DutyCodes.NOT_ASSIGNED, "User is not assigned to this duty"))
        await self.assignments.soft_delete(assignment, actor_id=actor_id)
        return ServiceResult.success(True)

    @service_operation(DutyCodes.UNEXPECTED)
    async def delete_duty(self, duty_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None,
                          hard: bool = False) -> ServiceResult[bool]:
        """Soft delete by default; `hard=True` removes the row for good.

        A hard delete is refused while sub-duties or comments still point
        at the duty; assignments and label links go with it.
        """
        try:
            if hard:
                await self.duties.hard_delete(duty_id)
            else:
                await self.duties.soft_delete(duty_id, actor_id=actor_id)
        except NotFoundError:
            return ServiceResult.failure(ServiceMessage.error(DutyCodes.NOT_FOUND, "Duty not found"))
        except DeleteRestrictedError:
            return ServiceResult.failure(ServiceMessage.error(
                DutyCodes.DELETE_RESTRICTED, "Duty still has sub-duties or comments"))
        _log_event("duty_deleted", duty_id=duty_id, hard=hard)
        return ServiceResult.success(True)


class CommentService(BaseService):
    """Comments on duties, including reply chains."""

    def __init__(self, session: AsyncSession):
        super().__init__(session)
        self.comments = repositories.CommentRepository(session)
        self.duties = repositories.DutyRepository(session)
        self.users = repositories.UserRepository(session)

    @service_operation(CommentCodes.UNEXPECTED)
    async def add_comment(self, request: Optional[CommentCreate]) -> ServiceResult[CommentView]:
        result: ServiceResult[CommentView] = ServiceResult()
        failure = BusinessRules.run(
            (CommentCodes.INVALID_INPUT, check_not_none(request, "comment payload")),
            (CommentCodes.INVALID_INPUT,
             lambda: check_not_blank(request.text, "text") or check_max_length(request.text, 127, "text")),
        )
        if failure:
            return result.fail(failure)
        if await self.duties.get_by_id(request.duty_id) is None:
            return result.fail(ServiceMessage.error(CommentCodes.DUTY_NOT_FOUND, "Duty not found"))
        if await self.users.get_by_id(request.author_id) is None:
            return result.fail(ServiceMessage.error(CommentCodes.AUTHOR_NOT_FOUND, "Author not found"))
        if request.reply_to_id is not None:
            target = await self.comments.get_by_id(request.reply_to_id)
            if target is None:
                return result.fail(ServiceMessage.error(CommentCodes.REPLY_TARGET_NOT_FOUND, "Comment to reply to not found"))
            if target.duty_id != request.duty_id:
                return result.fail(ServiceMessage.error(CommentCodes.REPLY_OTHER_DUTY,
                                                        "Replies must stay on the same duty"))
        comment = models.Comment(**request.model_dump())
        comment = await self.comments.add(comment, actor_id=request.author_id)
        return result.set_data(CommentView.model_validate(comment))

    @service_operation(CommentCodes.UNEXPECTED)
    async def list_duty_comments(self, duty_id: uuid.UUID, page: int = 1,
                                 page_size: Optional[int] = 50) -> ServiceResult[Page]:
        """Comments of a duty, oldest first."""
        if await self.duties.get_by_id(duty_id) is None:
            return ServiceResult.failure(ServiceMessage.error(CommentCodes.DUTY_NOT_FOUND, "Duty not found"))
        options = QueryOptions(filters=[Filter("duty_id", duty_id)], order_by=[OrderBy("created_at"), OrderBy("id")])
        page_result = await self._page(self.comments, options, page, page_size, CommentView, CommentCodes.INVALID_INPUT)
        return ServiceResult.success(page_result)

    @service_operation(CommentCodes.UNEXPECTED)
    async def delete_comment(self, comment_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> ServiceResult[bool]:
        try:
            await self.comments.soft_delete(comment_id, actor_id=actor_id)
        except NotFoundError:
            return ServiceResult.failure(ServiceMessage.error(CommentCodes.NOT_FOUND, "Comment not found"))
        return ServiceResult.success(True)
