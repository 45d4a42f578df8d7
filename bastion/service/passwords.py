from __future__ import annotations

import re
from typing import List, Tuple

from bastion.config import Settings
from bastion.service.errors import ValidationError

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9]")

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "123456",
        "qwerty",
        "letmein",
        "welcome",
        "admin123",
        "123456789",
        "password123",
        "admin",
        "welcome123",
        "login",
    }
)


def validate_password(pw: str, settings: Settings) -> Tuple[bool, List[str]]:
    errors: List[str] = []

    if not isinstance(pw, str):
        return False, ["Password must be a string"]

    if len(pw) < settings.password_min_length:
        errors.append(
            f"Password must be at least {settings.password_min_length} characters long"
        )
    if len(pw) > settings.password_max_length:
        errors.append(
            f"Password must be at most {settings.password_max_length} characters long"
        )
    if settings.password_require_upper and not _UPPER.search(pw):
        errors.append("Password must contain at least one uppercase letter")
    if settings.password_require_lower and not _LOWER.search(pw):
        errors.append("Password must contain at least one lowercase letter")
    if settings.password_require_digit and not _DIGIT.search(pw):
        errors.append("Password must contain at least one number")
    if settings.password_require_symbol and not _SYMBOL.search(pw):
        errors.append("Password must contain at least one special character")
    if settings.reject_common_passwords:
        lowered = pw.lower()
        if any(common in lowered for common in COMMON_PASSWORDS):
            errors.append("Password is too common and easily guessable")

    return (len(errors) == 0), errors


def enforce_password_policy(pw: str, settings: Settings) -> None:
    """Raise ``ValidationError`` carrying the first policy violation."""

    valid, errors = validate_password(pw, settings)
    if not valid:
        raise ValidationError(errors[0], detail={"errors": errors})


def password_strength(pw: str, settings: Settings) -> dict:
    if not isinstance(pw, str):
        return {
            "score": 0,
            "strength": "weak",
            "valid": False,
            "feedback": ["Password must be a string"],
        }

    valid, errors = validate_password(pw, settings)
    score = 0
    length = len(pw)
    if length >= settings.password_min_length:
        score += 2
    if length >= 12:
        score += 2
    if length >= 16:
        score += 1
    for pattern in (_UPPER, _LOWER, _DIGIT, _SYMBOL):
        if pattern.search(pw):
            score += 1
    unique_ratio = len(set(pw)) / length if length else 0.0
    if unique_ratio >= 0.7:
        score += 1
    if any(common in pw.lower() for common in COMMON_PASSWORDS):
        score = max(0, score - 3)

    if score <= 3:
        strength = "weak"
    elif score <= 6:
        strength = "moderate"
    elif score <= 8:
        strength = "strong"
    else:
        strength = "very strong"

    feedback = list(errors)
    if length < 12:
        feedback.append("Use at least 12 characters for a stronger password")
    if not _SYMBOL.search(pw):
        feedback.append("Add a symbol to increase strength")

    return {"score": score, "strength": strength, "valid": valid, "feedback": feedback}
