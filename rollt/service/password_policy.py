from __future__ import annotations

import re
from dataclasses import dataclass

PASSWORD_MIN_LENGTH = 8
PASSWORD_SYMBOLS = "@$!%*?&#^()-_+=.,;:"

POLICY_MESSAGE = (
    "Password must be at least 8 characters and include an uppercase letter, "
    "a lowercase letter, a number and a special character"
)

_SYMBOL_CLASS = "[" + re.escape(PASSWORD_SYMBOLS) + "]"
_POLICY_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*" + _SYMBOL_CLASS + r").{"
    + str(PASSWORD_MIN_LENGTH)
    + r",}$",
    re.DOTALL,
)
_SYMBOL_PATTERN = re.compile(_SYMBOL_CLASS)

STRENGTH_LABELS = ("very weak", "weak", "fair", "good", "strong")
MIN_ACCEPTABLE_SCORE = 2


def meets_policy(password: str) -> bool:
    """Server-side composition rule enforced on every new password."""
    return bool(_POLICY_PATTERN.match(password or ""))


@dataclass(frozen=True)
class PasswordStrength:
    score: int
    label: str
    valid: bool


def score_password(password: str) -> PasswordStrength:
    """Advisory strength meter shown while typing.

    One point each for length >= 8, length >= 12, mixed case, a digit and a
    symbol, capped at 4. It is independent of ``meets_policy``: a score of 4
    does not guarantee the policy is met.
    """
    password = password or ""
    score = 0
    if len(password) >= 8:
        score += 1
    if len(password) >= 12:
        score += 1
    if re.search(r"[a-z]", password) and re.search(r"[A-Z]", password):
        score += 1
    if re.search(r"\d", password):
        score += 1
    if _SYMBOL_PATTERN.search(password):
        score += 1
    score = min(score, 4)
    return PasswordStrength(
        score=score,
        label=STRENGTH_LABELS[score],
        valid=score >= MIN_ACCEPTABLE_SCORE,
    )
