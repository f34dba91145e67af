"""Tests for password hashing and the password policy."""

import pytest

from authkit.auth.passwords import PasswordHasher, check_password_policy
from authkit.core.errors import AuthErrorCode, HashingError, InvalidHashFormat, PasswordError


@pytest.fixture
def hasher():
    return PasswordHasher(iterations=1_000)


class TestPasswordHasher:
    def test_round_trip(self, hasher):
        stored = hasher.hash("pw123!")
        assert hasher.verify("pw123!", stored)

    def test_wrong_password_is_false_not_error(self, hasher):
        stored = hasher.hash("pw123!")
        assert hasher.verify("wrongpw", stored) is False

    def test_salted(self, hasher):
        assert hasher.hash("same") != hasher.hash("same")

    def test_hash_embeds_parameters(self, hasher):
        algorithm, iterations, salt, digest = hasher.hash("pw123!").split("$")
        assert algorithm == "pbkdf2_sha256"
        assert iterations == "1000"
        assert salt and digest

    def test_raising_cost_keeps_old_hashes_valid(self, hasher):
        old = hasher.hash("pw123!")
        stronger = PasswordHasher(iterations=2_000)

        assert stronger.verify("pw123!", old)
        assert stronger.needs_rehash(old)
        assert not stronger.needs_rehash(stronger.hash("pw123!"))

    @pytest.mark.parametrize("bad", ["", "plain", "md5$1$aa$bb", "pbkdf2_sha256$x$aa$bb", "pbkdf2_sha256$0$aa$bb"])
    def test_malformed_hash_raises(self, hasher, bad):
        with pytest.raises(InvalidHashFormat):
            hasher.verify("pw123!", bad)

    def test_unusable_cost_factor(self):
        with pytest.raises(HashingError):
            PasswordHasher(iterations=0).hash("pw123!")


class TestPasswordPolicy:
    def test_accepts_long_enough(self):
        check_password_policy("pw123!", 6)

    def test_rejects_short(self):
        with pytest.raises(PasswordError) as exc:
            check_password_policy("pw1", 6)
        assert exc.value.code == AuthErrorCode.INVALID_PASSWORD
        assert exc.value.status_code == 400

    def test_rejects_blank(self):
        with pytest.raises(PasswordError):
            check_password_policy("        ", 6)
