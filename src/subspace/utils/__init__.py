"""Utility modules."""

from subspace.utils.crypto import generate_random_token
from subspace.utils.validation import validate_email, validate_name, validate_password

__all__ = ["generate_random_token", "validate_email", "validate_name", "validate_password"]
