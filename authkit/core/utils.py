"""
Shared utility functions for authkit.

This module contains common utilities used across the codebase.
"""

from __future__ import annotations

import re
import secrets
import uuid
from datetime import datetime, timezone


def generate_id(prefix: str = "") -> str:
    """
    Generate a unique ID with optional prefix.

    Args:
        prefix: Optional prefix (e.g., "user", "role", "perm")

    Returns:
        A unique ID like "role_a1b2c3d4e5f6a7b8"
    """
    uid = uuid.uuid4().hex[:16]
    return f"{prefix}_{uid}" if prefix else uid


def generate_marker() -> str:
    """Random, URL-safe rotation marker for refresh tokens."""
    return secrets.token_urlsafe(24)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Emails are compared case-insensitively and without surrounding spaces."""
    return email.strip().lower()


def generate_username(seed: str, with_suffix: bool = False) -> str:
    """
    Derive a username from an email or display name.

    "Jane.Doe+news@example.com" -> "jane.doe"
    With ``with_suffix`` a short random tail is appended, for retrying
    after a username collision.
    """
    base = seed.split("@", 1)[0].split("+", 1)[0].lower()
    base = re.sub(r"[^a-z0-9._-]+", "-", base).strip("-._") or "user"
    base = base[:24]
    if len(base) < 3:
        base = f"{base}-user"
    if with_suffix:
        base = f"{base}-{secrets.token_hex(3)}"
    return base
