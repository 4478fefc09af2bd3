"""Opaque per-device tokens.

Tokens are minted for clients that have none yet and are otherwise only ever
received as a parameter; nothing here is looked up from ambient state.
"""
import secrets

TOKEN_PREFIX_LENGTH = 6


def new_device_token() -> str:
    return secrets.token_urlsafe(12)


def token_prefix(token: str) -> str:
    return token[:TOKEN_PREFIX_LENGTH]


def normalize_token(token) -> str:
    """Tokens are compared after trimming surrounding whitespace."""
    return (token or "").strip()
