"""Unit tests for the password policy.

Tests cover:
- Complexity rules and the full violation list
- Weak pattern detection
- Strength scoring and labels
- Expiry arithmetic and the warning window
"""

from datetime import datetime, timedelta, timezone

import pytest

from dormauth.service.password_policy import PasswordPolicy

from conftest import STRONG_PASSWORD


@pytest.fixture
def policy():
    return PasswordPolicy()


class TestComplexity:
    """Tests for rule-by-rule evaluation."""

    def test_strong_password_is_valid(self, policy):
        """A long mixed password passes with the top strength score."""
        result = policy.evaluate(STRONG_PASSWORD)
        assert result.valid
        assert result.violations == []
        assert result.strength == 4
        assert result.strength_label == "Very Strong"

    def test_short_password_reports_length(self, policy):
        """Length is reported even when every class is present."""
        result = policy.evaluate("Short1!")
        assert not result.valid
        assert result.violations == ["Password must be at least 12 characters long"]

    def test_all_violations_reported_together(self, policy):
        """Every failing rule appears in one pass."""
        result = policy.evaluate("abc")
        assert not result.valid
        joined = " ".join(result.violations)
        assert "at least 12 characters" in joined
        assert "uppercase" in joined
        assert "number" in joined
        assert "special character" in joined

    def test_over_max_length_rejected(self, policy):
        """Passwords past the ceiling are rejected."""
        result = policy.evaluate("Aa1!" * 40)
        assert "Password must not exceed 128 characters" in result.violations

    def test_empty_password(self, policy):
        """None and empty strings are treated as empty input."""
        result = policy.evaluate("")
        assert not result.valid
        assert result.strength == 0

    def test_custom_min_length(self):
        """The minimum length follows the configured value."""
        policy = PasswordPolicy(min_length=20)
        result = policy.evaluate(STRONG_PASSWORD)
        assert "Password must be at least 20 characters long" in result.violations


class TestWeakPatterns:
    """Tests for weak pattern detection."""

    @pytest.mark.parametrize(
        "password",
        ["aaaaaaaaaaaa", "123456789012", "abcdefghijkl", "MyPassword123!", "Qwerty!23456xyz"],
    )
    def test_weak_patterns_detected(self, policy, password):
        assert policy.has_weak_pattern(password)

    def test_weak_pattern_lowers_strength(self, policy):
        """A weak pattern is a violation and costs a strength point."""
        result = policy.evaluate("SuperAdmin123!x")
        assert "Password contains a common weak pattern" in result.violations
        assert result.strength < 4

    def test_embedded_digits_are_not_weak(self, policy):
        """Sequential runs only count when they make up the whole password."""
        assert not policy.has_weak_pattern(STRONG_PASSWORD)


class TestExpiry:
    """Tests for the expiry clock."""

    def test_expiry_is_ninety_days_out(self, policy):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert policy.expiry(now) == now + timedelta(days=90)

    def test_fresh_password_no_warning(self, policy):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        status = policy.expiry_status(policy.expiry(now), now)
        assert not status.expired
        assert not status.warn
        assert status.days_until_expiry == 90

    def test_warning_window(self, policy):
        """Inside the last 14 days a warning is raised."""
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        status = policy.expiry_status(now + timedelta(days=10), now)
        assert status.warn
        assert not status.expired
        assert status.days_until_expiry == 10

    def test_expired(self, policy):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        status = policy.expiry_status(now - timedelta(seconds=1), now)
        assert status.expired
        assert not status.warn
        assert status.days_until_expiry == 0

    def test_no_expiry_recorded(self, policy):
        status = policy.expiry_status(None, datetime(2026, 1, 1, tzinfo=timezone.utc))
        assert not status.expired
        assert status.days_until_expiry is None


class TestRequirements:
    def test_requirement_ids(self, policy):
        ids = [item["id"] for item in policy.requirements()]
        assert ids == ["length", "uppercase", "lowercase", "number", "symbol"]
