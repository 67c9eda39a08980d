from __future__ import annotations

import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from schoolauth.config import Settings
from schoolauth.logging import fingerprint, get_logger
from schoolauth.service.errors import AuthErrorKind, AuthResult
from schoolauth.service.passwords import CredentialVerifier, check_password_strength
from schoolauth.service.tokens import TokenCodec, TokenKind
from schoolauth.storage.errors import ConstraintViolation, StoreUnavailable
from schoolauth.storage.keys import csrf_key, refresh_index_key, refresh_key
from schoolauth.storage.session_store import SessionStore
from schoolauth.storage.users import (
    Principal,
    UserDirectory,
    normalize_credential_key,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionTokens:
    """Credentials minted for one session generation.

    Delivery (cookies, response body) is the caller's concern.
    """

    principal: Principal
    access_token: str
    refresh_token: str
    csrf_token: str
    access_expires_in: int
    refresh_expires_in: int

    @property
    def subject_id(self) -> str:
        return self.principal.id


class SessionManager:
    """Login, rotation, revocation and CSRF protocols over the session store.

    Refresh bindings live at ``refresh:<token>``, the subject's current CSRF
    token at ``csrf:<subject>`` and the subject's live refresh tokens in the
    ``refresh_index:<subject>`` set. Every operation returns an
    :class:`AuthResult`; expected failures never raise.

    Rotation consumes the presented refresh token with a single ``delete``
    before anything new is minted. When two requests present the same token,
    the store reports the key as existing to exactly one of them, so at most
    one rotation can succeed.
    """

    def __init__(
        self,
        store: SessionStore,
        users: UserDirectory,
        codec: TokenCodec,
        verifier: CredentialVerifier,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.users = users
        self.codec = codec
        self.verifier = verifier
        self.settings = settings
        self.logger = logger
        self._clock = clock

    async def login(self, credential_key: str, password: str) -> AuthResult[SessionTokens]:
        user = self.users.find_user_by_credential_key(credential_key or "")
        if user is None:
            # Same hashing cost as a real check so timing does not reveal unknown accounts
            await self.verifier.burn_verification_async(password or "")
            self.logger.info("login_failed", operation="login", reason="unknown_credential_key")
            return AuthResult.failure(AuthErrorKind.INVALID_CREDENTIALS)
        if not await self.verifier.verify_password_async(password or "", user.password_hash):
            self.logger.info(
                "login_failed", operation="login", subject_id=user.id, reason="password_mismatch"
            )
            return AuthResult.failure(AuthErrorKind.INVALID_CREDENTIALS)
        result = await self._start_session(user.principal, operation="login")
        if result.ok:
            self.logger.info("login_succeeded", operation="login", subject_id=user.id)
        return result

    async def register(
        self,
        credential_key: str,
        password: str,
        *,
        role_id: Optional[int] = None,
        tenant_scope_id: Optional[int] = None,
    ) -> AuthResult[SessionTokens]:
        problems: List[str] = []
        if not normalize_credential_key(credential_key):
            problems.append("credential key must not be empty")
        problems.extend(check_password_strength(password))
        if problems:
            self.logger.info("register_rejected", operation="register", reason="validation")
            return AuthResult.failure(AuthErrorKind.VALIDATION_ERROR, problems)
        password_hash = await self.verifier.hash_password_async(password)
        try:
            user = self.users.create_user(
                credential_key,
                password_hash,
                role_id=role_id,
                tenant_scope_id=tenant_scope_id,
            )
        except ConstraintViolation:
            self.logger.info("register_rejected", operation="register", reason="duplicate")
            return AuthResult.failure(AuthErrorKind.CONFLICT)
        return await self._start_session(user.principal, operation="register")

    async def refresh(self, presented_refresh_token: Optional[str]) -> AuthResult[SessionTokens]:
        if not presented_refresh_token:
            return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)
        token_ref = fingerprint(presented_refresh_token)
        key = refresh_key(presented_refresh_token)
        try:
            stored_subject = await self.store.get(key)
            if stored_subject is None:
                # Consumed, revoked, expired or never issued
                self.logger.info(
                    "refresh_rejected", operation="refresh", reason="not_registered", fingerprint=token_ref
                )
                return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

            claims = self.codec.verify(TokenKind.REFRESH, presented_refresh_token, now=self._clock())
            if claims is None or claims.subject_id != stored_subject:
                await self._revoke_refresh(presented_refresh_token, stored_subject)
                self.logger.warning(
                    "refresh_rejected",
                    operation="refresh",
                    subject_id=stored_subject,
                    reason="claims_mismatch" if claims else "verification_failed",
                    fingerprint=token_ref,
                )
                return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

            user = self.users.find_user_by_id(stored_subject)
            if user is None:
                await self._revoke_refresh(presented_refresh_token, stored_subject)
                self.logger.warning(
                    "refresh_rejected",
                    operation="refresh",
                    subject_id=stored_subject,
                    reason="unknown_subject",
                    fingerprint=token_ref,
                )
                return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)

            # Consume before minting; only the caller whose delete removed the key proceeds
            if not await self.store.delete(key):
                self.logger.warning(
                    "refresh_rejected",
                    operation="refresh",
                    subject_id=stored_subject,
                    reason="already_consumed",
                    fingerprint=token_ref,
                )
                return AuthResult.failure(AuthErrorKind.INVALID_TOKEN)
        except StoreUnavailable as exc:
            self._log_store_failure("refresh", exc, fingerprint=token_ref)
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)

        result = await self._start_session(user.principal, operation="refresh")
        await self._forget_indexed(stored_subject, presented_refresh_token)
        if result.ok:
            self.logger.info(
                "refresh_rotated",
                operation="refresh",
                subject_id=stored_subject,
                fingerprint=token_ref,
            )
        return result

    async def logout(
        self, presented_refresh_token: Optional[str], *, subject_id: Optional[str] = None
    ) -> AuthResult[bool]:
        """Revoke one session; absent or already expired sessions are a no-op success.

        ``subject_id`` lets an authenticated caller without a refresh token
        still invalidate its CSRF token.
        """
        revoked = False
        try:
            owner = subject_id
            if presented_refresh_token:
                key = refresh_key(presented_refresh_token)
                stored_subject = await self.store.get(key)
                revoked = await self.store.delete(key)
                if stored_subject:
                    owner = stored_subject
                    await self.store.index_remove(
                        refresh_index_key(stored_subject), presented_refresh_token
                    )
            if owner:
                await self.store.delete(csrf_key(owner))
        except StoreUnavailable as exc:
            self._log_store_failure("logout", exc, subject_id=subject_id)
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        self.logger.info(
            "logout",
            operation="logout",
            subject_id=owner,
            revoked=revoked,
            fingerprint=fingerprint(presented_refresh_token),
        )
        return AuthResult.success(revoked)

    async def logout_everywhere(self, subject_id: str) -> AuthResult[int]:
        """Revoke every refresh token and the CSRF token of ``subject_id``.

        Returns the number of refresh bindings removed. A refresh token
        written while the sweep runs can escape it and lives until its own
        TTL. That covers a concurrent login, and a concurrent refresh that
        already consumed its old token and stores the replacement after the
        index was read.
        """
        index_key = refresh_index_key(subject_id)
        revoked = 0
        try:
            await self.store.delete(csrf_key(subject_id))
            for token in await self.store.index_members(index_key):
                if await self.store.delete(refresh_key(token)):
                    revoked += 1
            await self.store.delete(index_key)
        except StoreUnavailable as exc:
            self._log_store_failure("logout_everywhere", exc, subject_id=subject_id)
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        self.logger.info(
            "logout_everywhere", operation="logout_everywhere", subject_id=subject_id, revoked=revoked
        )
        return AuthResult.success(revoked)

    async def issue_csrf(self, subject_id: str) -> AuthResult[str]:
        """Mint a CSRF token for ``subject_id``, replacing any previous one."""
        token = self._new_csrf_token()
        try:
            await self.store.set_with_ttl(csrf_key(subject_id), token, self.settings.csrf_token_ttl)
        except StoreUnavailable as exc:
            self._log_store_failure("issue_csrf", exc, subject_id=subject_id)
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        return AuthResult.success(token)

    async def validate_csrf(self, presented_token: Optional[str], subject_id: str) -> AuthResult[bool]:
        if not presented_token:
            return AuthResult.success(False)
        try:
            stored = await self.store.get(csrf_key(subject_id))
        except StoreUnavailable as exc:
            self._log_store_failure("validate_csrf", exc, subject_id=subject_id)
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        if stored is None:
            return AuthResult.success(False)
        return AuthResult.success(hmac.compare_digest(presented_token.encode(), stored.encode()))

    async def _start_session(self, principal: Principal, *, operation: str) -> AuthResult[SessionTokens]:
        now = self._clock()
        tokens = SessionTokens(
            principal=principal,
            access_token=self.codec.issue(TokenKind.ACCESS, principal.id, now=now),
            refresh_token=self.codec.issue(TokenKind.REFRESH, principal.id, now=now),
            csrf_token=self._new_csrf_token(),
            access_expires_in=self.codec.lifetime(TokenKind.ACCESS),
            refresh_expires_in=self.codec.lifetime(TokenKind.REFRESH),
        )
        refresh_ttl = self.settings.refresh_token_redis_ttl
        written: List[str] = []
        try:
            await self.store.set_with_ttl(
                refresh_key(tokens.refresh_token), principal.id, refresh_ttl
            )
            written.append(refresh_key(tokens.refresh_token))
            await self.store.set_with_ttl(
                csrf_key(principal.id), tokens.csrf_token, self.settings.csrf_token_ttl
            )
            written.append(csrf_key(principal.id))
            await self.store.index_add(
                refresh_index_key(principal.id), tokens.refresh_token, refresh_ttl
            )
        except StoreUnavailable as exc:
            self._log_store_failure(operation, exc, subject_id=principal.id, partial_writes=len(written))
            await self._compensate(written, operation=operation, subject_id=principal.id)
            return AuthResult.failure(AuthErrorKind.STORE_UNAVAILABLE)
        return AuthResult.success(tokens)

    async def _compensate(self, keys: List[str], *, operation: str, subject_id: str) -> None:
        """Best-effort removal of keys written before a failed multi-key write."""
        for key in keys:
            try:
                await self.store.delete(key)
            except StoreUnavailable:
                # Left to expire by TTL
                self.logger.warning(
                    "session_compensation_failed",
                    operation=operation,
                    subject_id=subject_id,
                    key_kind=key.split(":", 1)[0],
                )

    async def _revoke_refresh(self, token: str, subject_id: str) -> None:
        await self.store.delete(refresh_key(token))
        await self.store.index_remove(refresh_index_key(subject_id), token)

    async def _forget_indexed(self, subject_id: str, token: str) -> None:
        # The binding is already gone; a stale index member is only swept later
        try:
            await self.store.index_remove(refresh_index_key(subject_id), token)
        except StoreUnavailable:
            self.logger.warning(
                "refresh_index_cleanup_failed",
                operation="refresh",
                subject_id=subject_id,
                fingerprint=fingerprint(token),
            )

    def _new_csrf_token(self) -> str:
        return secrets.token_hex(32)

    def _log_store_failure(self, operation: str, exc: StoreUnavailable, **context) -> None:
        self.logger.error(
            "session_store_failure",
            operation=operation,
            store_operation=exc.operation,
            reason=exc.reason,
            **context,
        )
