"""Input validation utilities."""

import re

from subspace.exceptions import ValidationError

# Email pattern (simplified, RFC 5322 compliant for most cases)
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")

MAX_NAME_LENGTH = 255
MAX_EMAIL_LENGTH = 255
MIN_PASSWORD_LENGTH = 8


def validate_email(email: str | None) -> str:
    """Validate an email address.

    Emails are stored exactly as given (uniqueness is case-sensitive),
    so no normalization happens here.

    Args:
        email: The email to validate

    Returns:
        The email (unchanged)

    Raises:
        ValidationError: If the email is missing, too long or malformed
    """
    if not email:
        raise ValidationError("user email is required")

    if len(email) > MAX_EMAIL_LENGTH:
        raise ValidationError("email exceeds maximum length")

    if not EMAIL_RE.match(email):
        raise ValidationError("invalid email address")

    return email


def validate_name(name: str | None) -> str:
    """Validate a display name.

    Raises:
        ValidationError: If the name is blank or too long
    """
    if not name or not name.strip():
        raise ValidationError("user name is required")

    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError("name exceeds maximum length")

    return name


def validate_password(password: str | None, min_length: int = MIN_PASSWORD_LENGTH) -> str:
    """Validate a password meets the length requirement.

    Raises:
        ValidationError: If the password is too short
    """
    if not password or len(password) < min_length:
        raise ValidationError(f"password must be at least {min_length} characters")

    return password
