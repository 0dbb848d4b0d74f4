from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def normalize_identifier(value: str) -> str:
    """Canonical form used for both storage and case-insensitive comparison."""
    return (value or "").strip().lower()


@dataclass
class User:
    id: str
    email: str
    username: str
    first_name: str
    last_name: str
    password_digest: str
    is_admin: bool = False
    is_superadmin: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_view(self) -> Dict[str, Any]:
        """Projection returned to clients; never includes the digest."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "isAdmin": self.is_admin,
            "isSuperadmin": self.is_superadmin,
        }


class ModerationState(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


@dataclass
class ModerationStatus:
    user_id: str
    status: ModerationState = ModerationState.ACTIVE
    reason: Optional[str] = None
    # epoch milliseconds; None on a suspension means indefinite
    suspended_until: Optional[int] = None
    updated_at: datetime = field(default_factory=utcnow)

    def blocks_login(self, now: datetime) -> bool:
        if self.status == ModerationState.BANNED:
            return True
        if self.status == ModerationState.SUSPENDED:
            return self.suspended_until is None or self.suspended_until > to_epoch_ms(now)
        return False

    def suspension_lapsed(self, now: datetime) -> bool:
        return (
            self.status == ModerationState.SUSPENDED
            and self.suspended_until is not None
            and self.suspended_until <= to_epoch_ms(now)
        )


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def hard_cap(self, max_days: int) -> datetime:
        return self.created_at + timedelta(days=max_days)

    def is_expired(self, now: datetime, max_days: int) -> bool:
        return self.expires_at <= now or self.hard_cap(max_days) <= now

    def is_active(self, now: datetime, max_days: int) -> bool:
        return not self.is_revoked and not self.is_expired(now, max_days)


@dataclass
class PasswordResetToken:
    id: str
    user_id: Optional[str]
    token_hash: str
    expires_at: datetime
    created_at: datetime
    used_at: Optional[datetime] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_tombstone(self) -> bool:
        return self.user_id is None

    def is_redeemable(self, now: datetime) -> bool:
        return not self.is_tombstone and self.used_at is None and self.expires_at > now
