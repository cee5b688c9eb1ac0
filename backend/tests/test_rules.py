from datetime import datetime, timedelta, timezone

import pytest

from dutyhub.errors import ValidationError
from dutyhub.rules import (
    BusinessRules,
    check_date_order,
    check_email,
    check_max_length,
    check_not_blank,
    check_not_none,
    check_paging,
    check_password,
)
from dutyhub.utils.clock import as_utc, expires_in, is_expired, utcnow


def test_first_failure_wins_and_later_rules_are_not_evaluated():
    calls = []

    def failing(reason):
        def check():
            calls.append(reason)
            return reason
        return check

    failure = BusinessRules.run(("C-1", None), ("C-2", failing("X")), ("C-3", failing("Y")))
    assert failure.code == "C-2"
    assert failure.description == "X"
    assert calls == ["X"]


def test_all_rules_passing_returns_none():
    assert BusinessRules.run(("C-1", None), ("C-2", lambda: None)) is None


def test_enforce_raises_validation_error_with_rule_code():
    with pytest.raises(ValidationError) as exc_info:
        BusinessRules.enforce(("C-9", "page must be 1 or greater"))
    assert exc_info.value.code == "C-9"


def test_stock_checks():
    assert check_not_none(None, "payload") == "payload is required"
    assert check_not_none({}) is None
    assert check_not_blank("   ", "name") is not None
    assert check_not_blank("x", "name") is None
    assert check_max_length("a" * 128, 127, "name") is not None
    assert check_max_length(None, 127, "name") is None
    assert check_email("someone@example.com") is None
    assert check_email("not-an-email") is not None
    assert check_email(None) is not None
    assert check_password("12345") is not None
    assert check_password("123456") is None
    assert check_paging(0, 10) is not None
    assert check_paging(1, 0) is not None
    assert check_paging(1, None) is None


def test_date_order_compares_naive_and_aware_values():
    start = datetime(2024, 1, 10)
    assert check_date_order(start, datetime(2024, 1, 9, tzinfo=timezone.utc)) is not None
    assert check_date_order(start, datetime(2024, 1, 10, tzinfo=timezone.utc)) is None
    assert check_date_order(None, start) is None


def test_expiry_predicate():
    now = utcnow()
    assert is_expired(None)
    assert is_expired(now - timedelta(seconds=1), now=now)
    assert not is_expired(expires_in(60, now=now), now=now)
    # naive values read back from SQLite are treated as UTC
    assert not is_expired((now + timedelta(seconds=30)).replace(tzinfo=None), now=now)
    assert as_utc(None) is None
