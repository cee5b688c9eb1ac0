"""Coded exception hierarchy shared by repositories and services.

Every exception carries a stable `code` and a human readable
`description`, so a service boundary can fold it into a failed
`ServiceResult` without losing the code.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for expected, coded failures."""

    default_code = "SRV-500000"

    def __init__(self, description: str, code: str | None = None):
        super().__init__(description)
        self.code = code or self.default_code
        self.description = description

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, description={self.description!r})"


class ValidationError(ServiceError):
    """Input failed a business rule before any I/O was issued."""

    default_code = "RULE-400000"


class NotFoundError(ServiceError):
    """A requested entity does not exist or is soft-deleted."""

    default_code = "REPO-404001"


class ConflictError(ServiceError):
    """A write collided with existing data (unique or reference constraint)."""

    default_code = "REPO-409001"


class DeleteRestrictedError(ConflictError):
    """A hard delete was blocked by a restrict-on-delete relationship."""

    default_code = "REPO-409002"
