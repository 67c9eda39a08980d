"""Unit tests for the credential verifier.

Tests for:
- argon2id hashing and verification
- Malformed hashes treated as verification failure
- Password strength rules
"""

import pytest

from schoolauth.service.passwords import check_password_strength


class TestPasswordHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, verifier):
        hashed = verifier.hash_password("Secret123!")

        assert hashed.startswith("$argon2id$")
        assert "Secret123!" not in hashed

    def test_same_password_produces_different_hashes(self, verifier):
        """Salting makes each hash unique."""
        assert verifier.hash_password("Secret123!") != verifier.hash_password("Secret123!")

    def test_verify_accepts_matching_password(self, verifier):
        hashed = verifier.hash_password("Secret123!")

        assert verifier.verify_password("Secret123!", hashed) is True

    def test_verify_rejects_wrong_password(self, verifier):
        hashed = verifier.hash_password("Secret123!")

        assert verifier.verify_password("Secret124!", hashed) is False

    @pytest.mark.parametrize("stored", ["", None, "not-a-hash", "$argon2id$v=19$garbage"])
    def test_malformed_hash_is_failure_not_exception(self, verifier, stored):
        assert verifier.verify_password("Secret123!", stored) is False

    def test_burn_verification_always_fails(self, verifier):
        assert verifier.burn_verification("Secret123!") is False

    async def test_async_wrappers(self, verifier):
        hashed = await verifier.hash_password_async("Secret123!")

        assert await verifier.verify_password_async("Secret123!", hashed) is True
        assert await verifier.verify_password_async("wrong", hashed) is False
        assert await verifier.burn_verification_async("Secret123!") is False


class TestPasswordStrength:
    def test_strong_password_has_no_problems(self):
        assert check_password_strength("Secret123!") == []

    def test_short_password_rejected(self):
        problems = check_password_strength("Se1!")

        assert any("at least 8" in p for p in problems)

    def test_long_password_rejected(self):
        problems = check_password_strength("Aa1!" * 40)

        assert any("at most 128" in p for p in problems)

    def test_three_character_classes_required(self):
        assert check_password_strength("alllowercase") != []
        assert check_password_strength("lowerUPPER") != []
        assert check_password_strength("lowerUPPER1") == []
        assert check_password_strength("lower1234!") == []
