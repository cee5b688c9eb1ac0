"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Every table except the plain `DutyLabel` join derives from `Entity`,
which carries the identity, audit and soft-delete columns the generic
repository relies on.

Delete behaviour is declared on the foreign keys themselves (`ondelete`)
so the database enforces cascade/restrict rules on hard deletes:

- duty -> sub-duty and duty -> comment are RESTRICT;
- duty -> assignment / label rows are CASCADE;
- comment -> reply is SET NULL, so replies outlive a deleted parent.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlmodel import Field, Relationship, SQLModel

from .utils.clock import utcnow

_PASSIVE = {"passive_deletes": "all"}


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ProjectStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class DutyStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"


class DutyType(str, Enum):
    TASK = "task"
    BUG = "bug"
    FEATURE = "feature"
    STORY = "story"


class Entity(SQLModel):
    """Identity, audit and soft-delete columns shared by every entity."""
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    created_user_id: Optional[uuid.UUID] = None
    updated_at: Optional[datetime] = None
    updated_user_id: Optional[uuid.UUID] = None
    deleted_at: Optional[datetime] = None
    deleted_user_id: Optional[uuid.UUID] = None
    is_deleted: bool = Field(default=False, index=True)


class User(Entity, table=True):
    """A registered user.

    Credential material (`password_hash`, `password_salt`), one-time codes
    and the active token never leave the service layer; see
    `schemas.UserView` for the outward shape.
    """
    __tablename__ = "users"

    username: str = Field(max_length=127, unique=True, index=True)
    email: str = Field(max_length=127, unique=True, index=True)
    phone_number: str = Field(default="", max_length=127)
    password_hash: str
    password_salt: str
    role: str = Field(default="User", max_length=15)
    email_verified: bool = False
    phone_number_verified: bool = False
    use_mfa: bool = False
    login_verification_code: Optional[str] = Field(default=None, max_length=6)
    login_verification_code_expiration: Optional[datetime] = None
    email_verification_code: Optional[str] = Field(default=None, max_length=127)
    email_verification_code_expiration: Optional[datetime] = None
    reset_password_code: Optional[str] = None
    reset_password_code_expiration: Optional[datetime] = None
    active_token: Optional[str] = Field(default=None, index=True)
    last_login_time: Optional[datetime] = None


class Project(Entity, table=True):
    __tablename__ = "projects"

    name: str = Field(max_length=127)
    description: Optional[str] = None
    start_date: datetime = Field(default_factory=utcnow)
    due_date: datetime
    status: ProjectStatus = ProjectStatus.NOT_STARTED
    priority: Priority = Priority.MEDIUM
    manager_id: uuid.UUID = Field(foreign_key="users.id", ondelete="CASCADE", index=True)

    duties: List["Duty"] = Relationship(sa_relationship_kwargs=_PASSIVE)
    team_links: List["TeamProject"] = Relationship(sa_relationship_kwargs=_PASSIVE)


class Team(Entity, table=True):
    """A group of users; `project_id` is the team's optional home project."""
    __tablename__ = "teams"

    name: str = Field(max_length=127)
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.NOT_STARTED
    priority: Priority = Priority.MEDIUM
    manager_id: uuid.UUID = Field(foreign_key="users.id", ondelete="RESTRICT", index=True)
    project_id: Optional[uuid.UUID] = Field(default=None, foreign_key="projects.id", ondelete="SET NULL", index=True)

    memberships: List["UserTeam"] = Relationship(sa_relationship_kwargs=_PASSIVE)
    project_links: List["TeamProject"] = Relationship(sa_relationship_kwargs=_PASSIVE)


class Label(Entity, table=True):
    __tablename__ = "labels"

    name: str
    description: str = ""
    color: str = "#808080"


class DutyLabel(SQLModel, table=True):
    """Plain join between duties and labels (no audit columns)."""
    __tablename__ = "duty_labels"

    duty_id: uuid.UUID = Field(foreign_key="duties.id", primary_key=True, ondelete="CASCADE")
    label_id: uuid.UUID = Field(foreign_key="labels.id", primary_key=True, ondelete="CASCADE")


class Duty(Entity, table=True):
    """A unit of work inside a project; may be nested under a parent duty."""
    __tablename__ = "duties"

    title: str = Field(max_length=127)
    description: str = Field(default="", max_length=127)
    due_date: datetime
    duty_type: DutyType = DutyType.TASK
    status: DutyStatus = DutyStatus.TODO
    priority: Priority = Priority.MEDIUM
    project_id: uuid.UUID = Field(foreign_key="projects.id", ondelete="RESTRICT", index=True)
    reporter_id: uuid.UUID = Field(foreign_key="users.id", ondelete="RESTRICT", index=True)
    parent_duty_id: Optional[uuid.UUID] = Field(default=None, foreign_key="duties.id", ondelete="RESTRICT", index=True)

    sub_duties: List["Duty"] = Relationship(sa_relationship_kwargs=_PASSIVE)
    comments: List["Comment"] = Relationship(sa_relationship_kwargs=_PASSIVE)
    assignments: List["UserDuty"] = Relationship(sa_relationship_kwargs=_PASSIVE)
    labels: List[Label] = Relationship(link_model=DutyLabel)


class Comment(Entity, table=True):
    __tablename__ = "comments"

    text: str = Field(max_length=127)
    author_id: uuid.UUID = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    duty_id: Optional[uuid.UUID] = Field(default=None, foreign_key="duties.id", ondelete="RESTRICT", index=True)
    reply_to_id: Optional[uuid.UUID] = Field(default=None, foreign_key="comments.id", ondelete="SET NULL", index=True)

    replies: List["Comment"] = Relationship(sa_relationship_kwargs=_PASSIVE)


class UserDuty(Entity, table=True):
    """Assignment of a user to a duty."""
    __tablename__ = "user_duties"

    user_id: uuid.UUID = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    duty_id: uuid.UUID = Field(foreign_key="duties.id", ondelete="CASCADE", index=True)


class UserTeam(Entity, table=True):
    """Membership of a user in a team."""
    __tablename__ = "user_teams"

    user_id: uuid.UUID = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    team_id: uuid.UUID = Field(foreign_key="teams.id", ondelete="CASCADE", index=True)


class TeamProject(Entity, table=True):
    """Grants a team access to a project."""
    __tablename__ = "team_projects"

    team_id: uuid.UUID = Field(foreign_key="teams.id", ondelete="CASCADE", index=True)
    project_id: uuid.UUID = Field(foreign_key="projects.id", ondelete="CASCADE", index=True)
