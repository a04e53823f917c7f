"""Tests for password digests and the strength policy."""

import pytest
from argon2 import PasswordHasher

from authgate.service.errors import WeakInputError
from authgate.service.passwords import (
    LEGACY_ARGON2_ALGO,
    PBKDF2_ALGO,
    PBKDF2_ITERATIONS,
    CredentialHasher,
    ensure_strong,
    hash_password,
    validate_strength,
    verify_password,
)


class TestDigests:
    def test_round_trip(self):
        digest = hash_password("Correct-Horse-9")
        assert verify_password("Correct-Horse-9", digest)

    def test_wrong_password_rejected(self):
        digest = hash_password("Correct-Horse-9")
        assert not verify_password("Correct-Horse-8", digest)

    def test_digest_format_carries_parameters(self):
        digest = hash_password("Correct-Horse-9")
        salt, derived, iterations = digest.split(":")
        assert len(salt) == 32
        assert len(derived) == 128
        assert int(iterations) == PBKDF2_ITERATIONS

    def test_same_password_salted_differently(self):
        assert hash_password("Correct-Horse-9") != hash_password("Correct-Horse-9")

    @pytest.mark.parametrize(
        "digest",
        ["", "no-colons", "a:b", "salt:zz:100000", "salt:abcd:notanumber", "salt:abcd:100000"],
    )
    def test_malformed_digest_verifies_false(self, digest):
        assert verify_password("Correct-Horse-9", digest) is False

    def test_length_bounds_raise(self):
        with pytest.raises(WeakInputError):
            hash_password("short")
        with pytest.raises(WeakInputError):
            hash_password("A1!" + "a" * 200)


class TestStrength:
    def test_strong_password_passes(self):
        result = validate_strength("Str0ng!Passw0rd")
        assert result.valid
        assert result.errors == []

    def test_every_violation_is_reported(self):
        result = validate_strength("abc")
        assert not result.valid
        assert len(result.errors) == 4
        assert any("at least 8" in e for e in result.errors)
        assert any("uppercase" in e for e in result.errors)
        assert any("number" in e for e in result.errors)
        assert any("special" in e for e in result.errors)

    def test_common_password_rejected(self):
        result = validate_strength("Password123")
        assert not result.valid
        assert any("too common" in e for e in result.errors)

    def test_ensure_strong_lists_errors(self):
        with pytest.raises(WeakInputError) as excinfo:
            ensure_strong("lowercaseonly")
        assert excinfo.value.detail["errors"] == excinfo.value.errors
        assert len(excinfo.value.errors) == 3


class TestCredentialHasher:
    def test_hash_reports_algo(self):
        digest, algo = CredentialHasher().hash("Correct-Horse-9")
        assert algo == PBKDF2_ALGO
        assert CredentialHasher().verify("Correct-Horse-9", digest, algo)

    def test_legacy_argon2_still_verifies(self):
        legacy = PasswordHasher().hash("Legacy-Pass-1")
        hasher = CredentialHasher()
        assert hasher.verify("Legacy-Pass-1", legacy, LEGACY_ARGON2_ALGO)
        assert not hasher.verify("Legacy-Pass-2", legacy, LEGACY_ARGON2_ALGO)
        assert hasher.needs_rehash(legacy, LEGACY_ARGON2_ALGO)

    def test_unknown_algo_never_verifies(self):
        assert not CredentialHasher().verify("anything", "digest", "md5")

    def test_lower_iteration_count_needs_rehash(self):
        hasher = CredentialHasher()
        digest, algo = hasher.hash("Correct-Horse-9")
        assert not hasher.needs_rehash(digest, algo)
        weaker = digest.rsplit(":", 1)[0] + ":1000"
        assert hasher.needs_rehash(weaker, algo)
