# =============================================================================
# Password Hashing
# =============================================================================
#
# Hashes are self-describing:
#
#     pbkdf2_sha256$<iterations>$<salt>$<hex digest>
#
# The iteration count travels with each hash, so the cost factor can be
# raised at any time: old hashes keep verifying with the count they were
# created with, and `needs_rehash` tells the caller when to upgrade one.
#
# =============================================================================

from __future__ import annotations

import hashlib
import logging
import secrets

from authkit.core.errors import HashingError, InvalidHashFormat, PasswordError

logger = logging.getLogger(__name__)

ALGORITHM = "pbkdf2_sha256"
DEFAULT_ITERATIONS = 600_000
SALT_BYTES = 16


class PasswordHasher:
    """Salted one-way hashing with a configurable cost factor."""

    def __init__(self, iterations: int = DEFAULT_ITERATIONS):
        self.iterations = iterations

    def hash(self, password: str) -> str:
        """
        Hash a password.

        Raises:
            HashingError: salt generation failed or the cost factor is unusable
        """
        try:
            salt = secrets.token_hex(SALT_BYTES)
            digest = _derive(password, salt, self.iterations)
        except (OSError, NotImplementedError, ValueError, OverflowError) as e:
            logger.error(f"Password hashing failed: {e}")
            raise HashingError() from e
        return f"{ALGORITHM}${self.iterations}${salt}${digest}"

    def verify(self, password: str, password_hash: str) -> bool:
        """
        Check a password against a stored hash in constant time.

        Returns False on mismatch. Raises InvalidHashFormat only when the
        stored value can't be parsed.
        """
        iterations, salt, expected = _parse(password_hash)
        actual = _derive(password, salt, iterations)
        return secrets.compare_digest(actual, expected)

    def needs_rehash(self, password_hash: str) -> bool:
        """True when the hash was made with a different cost factor."""
        iterations, _, _ = _parse(password_hash)
        return iterations != self.iterations


def _derive(password: str, salt: str, iterations: int) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        iterations=iterations,
    ).hex()


def _parse(password_hash: str) -> tuple[int, str, str]:
    try:
        algorithm, iterations, salt, digest = password_hash.split("$")
        rounds = int(iterations)
    except (ValueError, AttributeError) as e:
        raise InvalidHashFormat() from e
    if algorithm != ALGORITHM or rounds < 1 or not salt or not digest:
        raise InvalidHashFormat()
    return rounds, salt, digest


# Module-level helpers using the default cost factor

_default_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    """Hash a password with the default cost factor."""
    return _default_hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    return _default_hasher.verify(password, password_hash)


def check_password_policy(password: str, min_length: int) -> None:
    """
    Reject passwords that don't meet the configured policy.

    Raises:
        PasswordError: too short or blank
    """
    if not password or not password.strip():
        raise PasswordError("Password must not be empty")
    if len(password) < min_length:
        raise PasswordError(f"Password must be at least {min_length} characters")
