"""Business rule runner and stock input checks.

A rule is a `(code, check)` pair. `check` is either an already evaluated
failure description (`None` means the rule passed) or a zero-argument
callable producing one. Rules run in declaration order and stop at the
first failure, so later (possibly more expensive) checks never run on
input that is already known to be invalid.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Optional, Tuple, Union

from .errors import ValidationError
from .results import ServiceMessage
from .utils.clock import as_utc

Check = Union[Optional[str], Callable[[], Optional[str]]]
Rule = Tuple[str, Check]

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class BusinessRules:
    @staticmethod
    def run(*rules: Rule) -> Optional[ServiceMessage]:
        """Return the first failing rule as an error message, else None."""
        for code, check in rules:
            reason = check() if callable(check) else check
            if reason is not None:
                return ServiceMessage.error(code, reason)
        return None

    @staticmethod
    def enforce(*rules: Rule) -> None:
        """Like `run`, but raise `ValidationError` on the first failure."""
        failure = BusinessRules.run(*rules)
        if failure is not None:
            raise ValidationError(failure.description, failure.code)


def check_not_none(value: Any, name: str = "payload") -> Optional[str]:
    return f"{name} is required" if value is None else None


def check_not_blank(value: Optional[str], name: str) -> Optional[str]:
    if value is None or not str(value).strip():
        return f"{name} must not be empty"
    return None


def check_max_length(value: Optional[str], limit: int, name: str) -> Optional[str]:
    if value is not None and len(value) > limit:
        return f"{name} must be at most {limit} characters"
    return None


def check_email(value: Optional[str]) -> Optional[str]:
    if not value or not _EMAIL_RE.match(value):
        return "email address is not valid"
    return None


def check_password(value: Optional[str], min_length: int = 6) -> Optional[str]:
    if not value or len(value) < min_length:
        return f"password must be at least {min_length} characters"
    return None


def check_date_order(start: Optional[datetime], end: Optional[datetime],
                     start_name: str = "start_date", end_name: str = "due_date") -> Optional[str]:
    if start is not None and end is not None and as_utc(end) < as_utc(start):
        return f"{end_name} must not be before {start_name}"
    return None


def check_paging(page: int, page_size: Optional[int]) -> Optional[str]:
    if page is None or page < 1:
        return "page must be 1 or greater"
    if page_size is not None and page_size < 1:
        return "page_size must be 1 or greater"
    return None
