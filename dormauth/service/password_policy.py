from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from dormauth.config import Settings

ALLOWED_SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

STRENGTH_LABELS = {
    0: "Very Weak",
    1: "Weak",
    2: "Fair",
    3: "Strong",
    4: "Very Strong",
}

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"\d")
_SYMBOL_RE = re.compile("[" + re.escape(ALLOWED_SYMBOLS) + "]")

_SEQUENTIAL_DIGITS = "|".join("0123456789"[i : i + 3] for i in range(8)) + "|890"
_SEQUENTIAL_LETTERS = "|".join(
    "abcdefghijklmnopqrstuvwxyz"[i : i + 3] for i in range(24)
)

_WEAK_PATTERNS = (
    re.compile(r"^(.)\1+$", re.DOTALL),
    re.compile(rf"^(?:{_SEQUENTIAL_DIGITS})+$"),
    re.compile(rf"^(?:{_SEQUENTIAL_LETTERS})+$", re.IGNORECASE),
    re.compile(r"password|qwerty|admin|user|login", re.IGNORECASE),
)


@dataclass
class PolicyResult:
    valid: bool
    violations: List[str] = field(default_factory=list)
    strength: int = 0

    @property
    def strength_label(self) -> str:
        return STRENGTH_LABELS[self.strength]

    def as_dict(self) -> dict:
        return {
            "valid": self.valid,
            "violations": list(self.violations),
            "strength": self.strength,
            "strength_label": self.strength_label,
        }


@dataclass
class ExpiryStatus:
    expired: bool
    warn: bool
    days_until_expiry: Optional[int] = None


class PasswordPolicy:
    """Stateless complexity, strength and expiry evaluator.

    Every rule is checked independently so a caller gets the full list of
    violations in one pass.
    """

    def __init__(
        self,
        *,
        min_length: int = 12,
        max_length: int = 128,
        expiry_days: int = 90,
        warning_days: int = 14,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self.expiry_days = expiry_days
        self.warning_days = warning_days

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            expiry_days=settings.password_expiry_days,
            warning_days=settings.password_warning_days,
        )

    def evaluate(self, password: str) -> PolicyResult:
        password = password or ""
        violations: List[str] = []
        score = 0.0

        if len(password) < self.min_length:
            violations.append(
                f"Password must be at least {self.min_length} characters long"
            )
        if len(password) > self.max_length:
            violations.append(
                f"Password must not exceed {self.max_length} characters"
            )

        if _UPPER_RE.search(password):
            score += 1
        else:
            violations.append("Password must contain at least one uppercase letter")

        if _LOWER_RE.search(password):
            score += 0.5
        else:
            violations.append("Password must contain at least one lowercase letter")

        if _DIGIT_RE.search(password):
            score += 1
        else:
            violations.append("Password must contain at least one number")

        if _SYMBOL_RE.search(password):
            score += 1
        else:
            violations.append(
                f"Password must contain at least one special character ({ALLOWED_SYMBOLS})"
            )

        if self.has_weak_pattern(password):
            violations.append("Password contains a common weak pattern")
            score = max(0.0, score - 1)

        if len(password) >= 16:
            score += 0.5

        strength = min(4, max(0, math.floor(score)))
        return PolicyResult(valid=not violations, violations=violations, strength=strength)

    @staticmethod
    def has_weak_pattern(password: str) -> bool:
        return any(pattern.search(password) for pattern in _WEAK_PATTERNS)

    def expiry(self, now: datetime) -> datetime:
        return now + timedelta(days=self.expiry_days)

    def expiry_status(
        self, expires_at: Optional[datetime], now: datetime
    ) -> ExpiryStatus:
        if expires_at is None:
            return ExpiryStatus(expired=False, warn=False, days_until_expiry=None)
        days_left = math.ceil((expires_at - now).total_seconds() / 86400)
        return ExpiryStatus(
            expired=now >= expires_at,
            warn=0 < days_left <= self.warning_days,
            days_until_expiry=max(0, days_left),
        )

    def requirements(self) -> List[dict]:
        return [
            {"id": "length", "label": f"At least {self.min_length} characters"},
            {"id": "uppercase", "label": "At least one uppercase letter (A-Z)"},
            {"id": "lowercase", "label": "At least one lowercase letter (a-z)"},
            {"id": "number", "label": "At least one number (0-9)"},
            {
                "id": "symbol",
                "label": f"At least one special character ({ALLOWED_SYMBOLS})",
            },
        ]
