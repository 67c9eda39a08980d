from __future__ import annotations

import asyncio
import string
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from schoolauth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_SYMBOLS = set(string.punctuation)


def check_password_strength(password: str) -> List[str]:
    """Return the list of strength problems; empty means acceptable."""
    problems: List[str] = []
    if not isinstance(password, str):
        return ["password must be a string"]
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    classes = [
        any(c.islower() for c in password),
        any(c.isupper() for c in password),
        any(c.isdigit() for c in password),
        any(c in _SYMBOLS for c in password),
    ]
    if sum(classes) < 3:
        problems.append(
            "password must mix at least three of: lowercase, uppercase, digits, symbols"
        )
    return problems


class CredentialVerifier:
    """Stateless password hashing and verification with argon2id."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password: str, stored_hash: Optional[str]) -> bool:
        """Compare ``password`` with ``stored_hash``; malformed hashes fail, never raise."""
        if not stored_hash or not isinstance(password, str):
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("password_hash_malformed")
            return False

    def burn_verification(self, password: str) -> bool:
        """Spend one verification against a throwaway hash and return ``False``.

        Used when the credential key is unknown so that response time does not
        reveal whether an account exists.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("unused-placeholder-Secret1!")
        self.verify_password(password or "", self._dummy_hash)
        return False

    async def hash_password_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_password, password)

    async def verify_password_async(self, password: str, stored_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify_password, password, stored_hash)

    async def burn_verification_async(self, password: str) -> bool:
        return await asyncio.to_thread(self.burn_verification, password)
