from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from classifieds.logging import get_logger
from classifieds.storage.errors import ConstraintViolation
from classifieds.storage.models import (
    ModerationState,
    ModerationStatus,
    PasswordResetToken,
    Session,
    User,
    normalize_identifier,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and local development.

    Every read-modify-write runs under a single re-entrant lock so the
    compare-and-set operations (session rotation, reset redemption,
    uniqueness check + insert) are linearizable across request threads.
    Records handed out are copies; callers never mutate stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.moderation: Dict[str, ModerationStatus] = {}
        self.sessions: Dict[str, Session] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: str,
        first_name: str,
        last_name: str,
        password_digest: str,
        *,
        is_admin: bool = False,
        is_superadmin: bool = False,
    ) -> User:
        email = normalize_identifier(email)
        username = normalize_identifier(username)
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                first_name=first_name,
                last_name=last_name,
                password_digest=password_digest,
                is_admin=is_admin,
                is_superadmin=is_superadmin,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        needle = normalize_identifier(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == needle:
                    return replace(user)
        return None

    def set_user_flags(
        self,
        user_id: str,
        *,
        is_admin: Optional[bool] = None,
        is_superadmin: Optional[bool] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if is_admin is not None:
                user.is_admin = is_admin
            if is_superadmin is not None:
                user.is_superadmin = is_superadmin
            user.updated_at = utcnow()
            return replace(user)

    # -- moderation --------------------------------------------------------

    def get_moderation(self, user_id: str) -> Optional[ModerationStatus]:
        with self._data_lock:
            status = self.moderation.get(user_id)
            return replace(status) if status else None

    def upsert_moderation(self, status: ModerationStatus) -> ModerationStatus:
        with self._data_lock:
            if status.user_id not in self.users:
                raise ConstraintViolation("moderation user missing", {"user_id": status.user_id})
            self.moderation[status.user_id] = replace(status)
            return replace(status)

    def clear_moderation(self, user_id: str) -> bool:
        with self._data_lock:
            return self.moderation.pop(user_id, None) is not None

    def clear_lapsed_suspension(self, user_id: str, now_ms: int) -> bool:
        """Delete the row only if it is still a suspension that has run out."""
        with self._data_lock:
            status = self.moderation.get(user_id)
            if (
                status
                and status.status == ModerationState.SUSPENDED
                and status.suspended_until is not None
                and status.suspended_until <= now_ms
            ):
                del self.moderation[user_id]
                return True
            return False

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            found = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(found, key=lambda s: s.created_at)

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        last_used_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return None
            if sess.refresh_token_hash != expected_hash:
                return None
            sess.refresh_token_hash = new_hash
            sess.last_used_at = last_used_at
            sess.expires_at = expires_at
            return replace(sess)

    def revoke_session(self, session_id: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return False
            sess.revoked_at = revoked_at
            return True

    def revoke_user_sessions(self, user_id: str, revoked_at: datetime) -> int:
        with self._data_lock:
            return self._revoke_user_sessions_locked(user_id, revoked_at)

    def _revoke_user_sessions_locked(self, user_id: str, revoked_at: datetime) -> int:
        count = 0
        for sess in self.sessions.values():
            if sess.user_id == user_id and sess.revoked_at is None:
                sess.revoked_at = revoked_at
                count += 1
        return count

    # -- password reset ----------------------------------------------------

    def count_reset_requests_by_ip(self, ip: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for t in self.reset_tokens.values()
                if t.ip == ip and t.created_at > since
            )

    def count_reset_requests_by_user(self, user_id: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for t in self.reset_tokens.values()
                if t.user_id == user_id and t.created_at > since
            )

    def insert_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            self.reset_tokens[token.id] = replace(token)
            return replace(token)

    def issue_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        """Supersede the user's unused tokens and store the new one atomically."""
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("reset user missing", {"user_id": token.user_id})
            for existing in self.reset_tokens.values():
                if existing.user_id == token.user_id and existing.used_at is None:
                    existing.used_at = token.created_at
            self.reset_tokens[token.id] = replace(token)
            return replace(token)

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            for token in self.reset_tokens.values():
                if token.token_hash == token_hash:
                    return replace(token)
        return None

    def complete_password_reset(
        self, token_id: str, user_id: str, password_digest: str, now: datetime
    ) -> bool:
        """Redeem a token, replace the digest and revoke every session.

        Returns False without changing anything when the token was already
        used, has expired, or belongs to someone else.
        """
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            user = self.users.get(user_id)
            if not token or not user or token.user_id != user_id:
                return False
            if token.used_at is not None or token.expires_at <= now:
                return False
            token.used_at = now
            user.password_digest = password_digest
            user.updated_at = now
            revoked = self._revoke_user_sessions_locked(user_id, now)
        self.logger.info("password_reset_applied", user_id=user_id, sessions_revoked=revoked)
        return True
