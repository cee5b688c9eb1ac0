"""Pydantic request/response schemas used by the services.

Schemas keep input/output shapes stable. View models are validated
straight from ORM objects (`from_attributes`) and list only the fields
that may leave the service layer; password material, one-time codes and
active tokens are never part of a view.
"""

import uuid
from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict

from .models import DutyStatus, DutyType, Priority, ProjectStatus

T = TypeVar("T")


class LoginRequest(BaseModel):
    """Credentials; either `email` or `username` identifies the user."""
    email: Optional[str] = None
    username: Optional[str] = None
    password: str


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    phone_number: str = ""


class VerifyCodeRequest(BaseModel):
    """Payload for email and MFA code verification."""
    email: str
    code: str


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(BaseModel):
    email: str
    code: str
    new_password: str


class LogoutRequest(BaseModel):
    token: str


class AccessToken(BaseModel):
    """Signed token returned by the token issuer."""
    token: str
    expiration: datetime
    is_refresh: bool = False


class UserView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    username: str
    email: str
    phone_number: str
    role: str
    email_verified: bool
    use_mfa: bool
    created_at: datetime
    last_login_time: Optional[datetime] = None


class LoginResponse(BaseModel):
    token: AccessToken
    user: UserView


class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    due_date: datetime
    status: ProjectStatus = ProjectStatus.NOT_STARTED
    priority: Priority = Priority.MEDIUM
    manager_id: uuid.UUID


class ProjectUpdate(BaseModel):
    """Partial update; `None` fields are left unchanged."""
    id: uuid.UUID
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    status: Optional[ProjectStatus] = None
    priority: Optional[Priority] = None
    manager_id: Optional[uuid.UUID] = None


class ProjectView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: Optional[str] = None
    start_date: datetime
    due_date: datetime
    status: ProjectStatus
    priority: Priority
    manager_id: uuid.UUID
    created_at: datetime


class TeamCreate(BaseModel):
    name: str
    description: Optional[str] = None
    manager_id: uuid.UUID
    priority: Priority = Priority.MEDIUM
    status: ProjectStatus = ProjectStatus.NOT_STARTED
    project_id: Optional[uuid.UUID] = None


class TeamUpdate(BaseModel):
    """Partial update; `None` fields are left unchanged."""
    id: uuid.UUID
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    priority: Optional[Priority] = None
    manager_id: Optional[uuid.UUID] = None


class TeamView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: Optional[str] = None
    status: ProjectStatus
    priority: Priority
    manager_id: uuid.UUID
    project_id: Optional[uuid.UUID] = None


class DutyCreate(BaseModel):
    title: str
    description: str = ""
    due_date: datetime
    duty_type: DutyType = DutyType.TASK
    status: DutyStatus = DutyStatus.TODO
    priority: Priority = Priority.MEDIUM
    project_id: uuid.UUID
    reporter_id: uuid.UUID
    parent_duty_id: Optional[uuid.UUID] = None


class DutyUpdate(BaseModel):
    """Partial update; `None` fields are left unchanged."""
    id: uuid.UUID
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    duty_type: Optional[DutyType] = None
    status: Optional[DutyStatus] = None
    priority: Optional[Priority] = None


class CommentCreate(BaseModel):
    text: str
    author_id: uuid.UUID
    duty_id: uuid.UUID
    reply_to_id: Optional[uuid.UUID] = None


class CommentView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    text: str
    author_id: uuid.UUID
    duty_id: Optional[uuid.UUID] = None
    reply_to_id: Optional[uuid.UUID] = None
    created_at: datetime


class DutyView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: str
    due_date: datetime
    duty_type: DutyType
    status: DutyStatus
    priority: Priority
    project_id: uuid.UUID
    reporter_id: uuid.UUID
    parent_duty_id: Optional[uuid.UUID] = None


class DutyDetail(DutyView):
    """A duty with its direct sub-duties and comments."""
    sub_duties: List[DutyView] = []
    comments: List[CommentView] = []


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: Optional[int] = None
