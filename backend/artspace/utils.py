"""Utility helpers for token generation and hashing."""

from __future__ import annotations

import hashlib
import secrets

from email_validator import EmailNotValidError, validate_email

TOKEN_BYTES = 32


def generate_token() -> str:
    """Generate a URL-safe token for group booking invitations."""

    return secrets.token_urlsafe(TOKEN_BYTES)


def generate_magic_link_token() -> str:
    """Generate a hex token for survey magic links."""

    return secrets.token_hex(TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """Generate a SHA-256 hash for storing an opaque token."""

    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def normalize_email(value: str) -> str:
    return value.strip().lower()


def looks_like_email(value: str) -> bool:
    """Apply the same address rules as the ``EmailStr`` request fields."""

    try:
        validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return False
    return True
