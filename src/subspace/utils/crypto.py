"""Cryptographic utilities."""

import secrets


def generate_random_token(length: int = 32) -> str:
    """Generate a cryptographically secure random token.

    Args:
        length: Number of random bytes (output will be URL-safe base64, ~4/3 longer)

    Returns:
        URL-safe base64-encoded random string
    """
    return secrets.token_urlsafe(length)
