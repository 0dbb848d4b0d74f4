from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from classifieds.config import Settings
from classifieds.logging import get_logger
from classifieds.service.tokens import Clock, system_clock
from classifieds.storage.models import Session

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        last_used_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, revoked_at: datetime) -> bool: ...

    def revoke_user_sessions(self, user_id: str, revoked_at: datetime) -> int: ...


def compute_sliding_expiry(
    now: datetime, created_at: datetime, sliding_days: int, max_days: int
) -> datetime:
    """Sliding window from ``now``, capped by a ceiling anchored to creation."""
    return min(now + timedelta(days=sliding_days), created_at + timedelta(days=max_days))


class SessionLedger:
    """Persisted sessions keyed by opaque id.

    Rotation is a compare-and-set on the stored refresh hash and revocation
    only ever fills an empty ``revoked_at``; both guarantees live in the store.
    """

    def __init__(
        self, store: SessionStore, settings: Settings, *, clock: Optional[Clock] = None
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or system_clock

    @property
    def sliding_days(self) -> int:
        return self.settings.jwt_refresh_ttl_days

    @property
    def max_days(self) -> int:
        return self.settings.refresh_max_ttl_days

    def expiry_for(self, created_at: datetime, now: Optional[datetime] = None) -> datetime:
        return compute_sliding_expiry(
            now or self._clock(), created_at, self.sliding_days, self.max_days
        )

    def create(
        self,
        user_id: str,
        session_id: str,
        refresh_token_hash: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        now = self._clock()
        session = Session(
            id=session_id,
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            last_used_at=now,
            expires_at=self.expiry_for(now, now),
            user_agent=user_agent,
            ip=ip,
        )
        created = self.store.create_session(session)
        logger.info("session_created", session_id=session_id, user_id=user_id)
        return created

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def list_for_user(self, user_id: str) -> List[Session]:
        return self.store.list_user_sessions(user_id)

    def is_expired(self, session: Session, now: Optional[datetime] = None) -> bool:
        return session.is_expired(now or self._clock(), self.max_days)

    def rotate(self, session: Session, expected_hash: str, new_hash: str) -> Optional[Session]:
        """Swap the refresh hash if it still equals ``expected_hash``.

        ``None`` means another rotation or a revocation got there first.
        """
        now = self._clock()
        return self.store.rotate_session(
            session.id,
            expected_hash,
            new_hash,
            last_used_at=now,
            expires_at=self.expiry_for(session.created_at, now),
        )

    def revoke(self, session_id: str, *, reason: str = "logout") -> bool:
        revoked = self.store.revoke_session(session_id, self._clock())
        if revoked:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return revoked

    def revoke_all_for_user(self, user_id: str, *, reason: str) -> int:
        count = self.store.revoke_user_sessions(user_id, self._clock())
        logger.info("user_sessions_revoked", user_id=user_id, reason=reason, count=count)
        return count
