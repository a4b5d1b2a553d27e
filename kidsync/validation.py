"""Input validation for sign-up, password change and PIN entry.

Every check raises :class:`ValidationError` before anything is persisted
or sent over the network.
"""

import re

from kidsync.errors import ValidationError

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PIN_RE = re.compile(r"^[0-9]{4}$")
MIN_PASSWORD_LENGTH = 6


def validate_email(email: str) -> str:
    """Return the trimmed email or raise.

    >>> validate_email("  tutor@example.com ")
    'tutor@example.com'
    """
    email = (email or "").strip()
    if not email:
        raise ValidationError("Email is required", field="email")
    if not EMAIL_RE.match(email):
        raise ValidationError("Email format is not valid", field="email")
    return email


def validate_password(password: str, confirm: str) -> str:
    """Check password strength and confirmation.

    Rules: at least 6 characters, one uppercase, one lowercase, one digit,
    no whitespace.

    >>> validate_password("Secret1", "Secret1")
    'Secret1'
    """
    if not password:
        raise ValidationError("Password is required", field="password")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            field="password",
        )
    if any(ch.isspace() for ch in password):
        raise ValidationError("Password must not contain spaces", field="password")
    if not any(ch.isupper() for ch in password):
        raise ValidationError("Password needs an uppercase letter", field="password")
    if not any(ch.islower() for ch in password):
        raise ValidationError("Password needs a lowercase letter", field="password")
    if not any(ch.isdigit() for ch in password):
        raise ValidationError("Password needs a digit", field="password")
    if password != confirm:
        raise ValidationError("Passwords do not match", field="confirm")
    return password


def normalize_pin(raw: str, confirm: str) -> str:
    """Strip whitespace and require a matching 4-digit PIN.

    >>> normalize_pin(" 12 34", "1234")
    '1234'
    """
    pin = re.sub(r"\s+", "", raw or "")
    again = re.sub(r"\s+", "", confirm or "")
    if not PIN_RE.match(pin):
        raise ValidationError("PIN must be exactly 4 digits", field="pin")
    if pin != again:
        raise ValidationError("PINs do not match", field="confirm")
    return pin
