from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from schoolauth.logging import get_logger
from schoolauth.storage.errors import ConstraintViolation


def normalize_credential_key(key: str) -> str:
    return (key or "").strip().lower()


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as seen by downstream handlers."""

    id: str
    credential_key: str
    role_id: Optional[int] = None
    tenant_scope_id: Optional[int] = None


@dataclass
class UserRecord:
    id: str
    credential_key: str
    password_hash: str
    role_id: Optional[int] = None
    tenant_scope_id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def principal(self) -> Principal:
        return Principal(
            id=self.id,
            credential_key=self.credential_key,
            role_id=self.role_id,
            tenant_scope_id=self.tenant_scope_id,
        )


class UserDirectory(Protocol):
    """Lookup surface of the user resource service."""

    def find_user_by_credential_key(self, key: str) -> Optional[UserRecord]: ...

    def find_user_by_id(self, user_id: str) -> Optional[UserRecord]: ...

    def create_user(
        self,
        credential_key: str,
        password_hash: str,
        *,
        role_id: Optional[int] = None,
        tenant_scope_id: Optional[int] = None,
    ) -> UserRecord: ...


class MemoryUserDirectory:
    """Minimal in-memory user directory used in development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserRecord] = {}
        self._by_key: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def find_user_by_credential_key(self, key: str) -> Optional[UserRecord]:
        with self._data_lock:
            user_id = self._by_key.get(normalize_credential_key(key))
            return self.users.get(user_id) if user_id else None

    def find_user_by_id(self, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            return self.users.get(str(user_id))

    def create_user(
        self,
        credential_key: str,
        password_hash: str,
        *,
        role_id: Optional[int] = None,
        tenant_scope_id: Optional[int] = None,
    ) -> UserRecord:
        normalized = normalize_credential_key(credential_key)
        with self._data_lock:
            if normalized in self._by_key:
                raise ConstraintViolation(
                    "user already exists", {"field": "credential_key"}
                )
            record = UserRecord(
                id=str(uuid.uuid4()),
                credential_key=normalized,
                password_hash=password_hash,
                role_id=role_id,
                tenant_scope_id=tenant_scope_id,
            )
            self.users[record.id] = record
            self._by_key[normalized] = record.id
        self.logger.info("user_created", subject_id=record.id)
        return record

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            record = self.users.pop(str(user_id), None)
            if record is None:
                return False
            self._by_key.pop(record.credential_key, None)
            return True
