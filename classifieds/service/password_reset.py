from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from classifieds.config import Settings
from classifieds.logging import get_logger
from classifieds.service.tokens import Clock, hash_token, system_clock
from classifieds.storage.models import PasswordResetToken

logger = get_logger(__name__)

_THROTTLE_WINDOW = timedelta(hours=1)


class ResetTokenStore(Protocol):
    def count_reset_requests_by_ip(self, ip: str, since: datetime) -> int: ...

    def count_reset_requests_by_user(self, user_id: str, since: datetime) -> int: ...

    def insert_reset_token(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def issue_reset_token(self, token: PasswordResetToken) -> PasswordResetToken: ...

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def complete_password_reset(
        self, token_id: str, user_id: str, password_digest: str, now: datetime
    ) -> bool: ...


@dataclass(frozen=True)
class ThrottleCheck:
    """Outcome of an abuse-throttle query.

    ``degraded`` is set when the count could not be taken; such checks never
    throttle.
    """

    throttled: bool
    degraded: bool = False

    @classmethod
    def open(cls) -> "ThrottleCheck":
        return cls(throttled=False, degraded=True)


@dataclass
class IssuedResetToken:
    raw_token: str
    record: PasswordResetToken


class PasswordResetLedger:
    def __init__(
        self, store: ResetTokenStore, settings: Settings, *, clock: Optional[Clock] = None
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or system_clock

    def check_ip_throttle(self, ip: Optional[str]) -> ThrottleCheck:
        if not ip:
            return ThrottleCheck(throttled=False)
        since = self._clock() - _THROTTLE_WINDOW
        try:
            count = self.store.count_reset_requests_by_ip(ip, since)
        except Exception as exc:
            logger.warning("reset_ip_throttle_unavailable", error_type=type(exc).__name__, error=str(exc))
            return ThrottleCheck.open()
        return ThrottleCheck(throttled=count >= self.settings.reset_ip_limit_per_hour)

    def check_user_throttle(self, user_id: str) -> ThrottleCheck:
        since = self._clock() - _THROTTLE_WINDOW
        try:
            count = self.store.count_reset_requests_by_user(user_id, since)
        except Exception as exc:
            logger.warning(
                "reset_user_throttle_unavailable",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ThrottleCheck.open()
        return ThrottleCheck(throttled=count >= self.settings.reset_user_limit_per_hour)

    def record_tombstone(self, *, ip: Optional[str], user_agent: Optional[str]) -> bool:
        """Write a never-redeemable row so IP throttling has something to count.

        Failure here is logged and reported as ``False``; it never reaches the
        caller of the reset request.
        """
        now = self._clock()
        tombstone = PasswordResetToken(
            id=str(uuid.uuid4()),
            user_id=None,
            token_hash=hash_token(secrets.token_hex(32)),
            expires_at=now,
            created_at=now,
            used_at=now,
            ip=ip,
            user_agent=user_agent,
        )
        try:
            self.store.insert_reset_token(tombstone)
        except Exception as exc:
            logger.warning("reset_tombstone_write_failed", error_type=type(exc).__name__, error=str(exc))
            return False
        return True

    def issue(
        self, user_id: str, *, ip: Optional[str], user_agent: Optional[str]
    ) -> IssuedResetToken:
        """Supersede earlier tokens and store a fresh one; errors propagate."""
        now = self._clock()
        raw = secrets.token_hex(32)
        record = PasswordResetToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=hash_token(raw),
            expires_at=now + timedelta(minutes=self.settings.reset_token_ttl_minutes),
            created_at=now,
            ip=ip,
            user_agent=user_agent,
        )
        stored = self.store.issue_reset_token(record)
        logger.info("reset_token_issued", user_id=user_id, expires_at=stored.expires_at.isoformat())
        return IssuedResetToken(raw_token=raw, record=stored)

    def lookup(self, raw_token: str) -> Optional[PasswordResetToken]:
        return self.store.get_reset_token_by_hash(hash_token(raw_token))

    def redeem(self, token: PasswordResetToken, password_digest: str) -> bool:
        """Mark used, replace the digest and revoke all sessions in one step."""
        if token.user_id is None:
            return False
        return self.store.complete_password_reset(
            token.id, token.user_id, password_digest, self._clock()
        )
