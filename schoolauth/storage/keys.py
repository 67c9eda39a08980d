"""Key layout of the session store.

Refresh bindings are addressed by token value, CSRF bindings by subject.
The per-subject index lists the live refresh tokens so a subject can be
revoked everywhere without scanning the keyspace.
"""

from __future__ import annotations

REFRESH_PREFIX = "refresh:"
CSRF_PREFIX = "csrf:"
REFRESH_INDEX_PREFIX = "refresh_index:"


def refresh_key(refresh_token: str) -> str:
    return f"{REFRESH_PREFIX}{refresh_token}"


def csrf_key(subject_id: str) -> str:
    return f"{CSRF_PREFIX}{subject_id}"


def refresh_index_key(subject_id: str) -> str:
    return f"{REFRESH_INDEX_PREFIX}{subject_id}"
