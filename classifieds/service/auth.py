from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from classifieds.config import Settings
from classifieds.logging import get_logger
from classifieds.service.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from classifieds.service.password_reset import PasswordResetLedger, ResetTokenStore
from classifieds.service.passwords import PasswordHasherGateway
from classifieds.service.sessions import SessionLedger, SessionStore
from classifieds.service.tokens import (
    Clock,
    TokenCodec,
    TokenError,
    TokenKind,
    hash_token,
    system_clock,
)
from classifieds.storage.errors import ConstraintViolation
from classifieds.storage.models import (
    ModerationState,
    ModerationStatus,
    Session,
    User,
    normalize_identifier,
    to_epoch_ms,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
INVALID_RESET_MESSAGE = "Invalid or expired reset link"
REAUTH_REQUIRED_MESSAGE = "Password confirmation required"


class AuthStore(SessionStore, ResetTokenStore, Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_flags(
        self,
        user_id: str,
        *,
        is_admin: Optional[bool] = None,
        is_superadmin: Optional[bool] = None,
    ) -> Optional[User]: ...

    def get_moderation(self, user_id: str) -> Optional[ModerationStatus]: ...

    def upsert_moderation(self, status: ModerationStatus) -> ModerationStatus: ...

    def clear_moderation(self, user_id: str) -> bool: ...

    def clear_lapsed_suspension(self, user_id: str, now_ms: int) -> bool: ...


@dataclass
class AuthContext:
    user: User
    session_id: str

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.user.is_admin or self.user.is_superadmin

    @property
    def is_superadmin(self) -> bool:
        return self.user.is_superadmin


@dataclass
class AuthResult:
    user: User
    session: Session
    access_token: str
    refresh_token: str


@dataclass
class ReauthResult:
    token: str
    expires_in_sec: int


@dataclass
class ResetIssue:
    """Raw reset token handed to the delivery channel, never to the client."""

    email: str
    raw_token: str
    expires_at: datetime


class AuthService:
    """Register, login, refresh, step-up, logout and password reset flows.

    The store, clock, hasher and token codec are all injected; nothing here
    reads request state or module globals.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        hasher: Optional[PasswordHasherGateway] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._clock = clock or system_clock
        self.hasher = hasher or PasswordHasherGateway.from_settings(settings)
        self.codec = codec or TokenCodec(settings, clock=self._clock)
        self.sessions = SessionLedger(store, settings, clock=self._clock)
        self.resets = PasswordResetLedger(store, settings, clock=self._clock)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # -- registration and login -------------------------------------------

    async def register(
        self,
        email: str,
        username: str,
        first_name: str,
        last_name: str,
        password: str,
    ) -> User:
        email = normalize_identifier(email)
        username = normalize_identifier(username)
        digest = await self.hasher.hash_async(password)
        try:
            user = self.store.create_user(
                email, username, first_name.strip(), last_name.strip(), digest
            )
        except ConstraintViolation as exc:
            if exc.field == "username":
                raise ConflictError("Username already in use", error_code="USERNAME_TAKEN")
            raise ConflictError("Email already in use", error_code="EMAIL_TAKEN")
        self.logger.info("user_registered", user_id=user.id)
        return user

    def _invalid_credentials(self, reason: str) -> AuthenticationError:
        self.logger.info("login_rejected", reason=reason)
        return AuthenticationError(
            INVALID_CREDENTIALS_MESSAGE, error_code="INVALID_CREDENTIALS", reason=reason
        )

    def _enforce_moderation(self, user: User, now: datetime) -> None:
        status = self.store.get_moderation(user.id)
        if not status or status.status == ModerationState.ACTIVE:
            return
        if status.status == ModerationState.BANNED:
            self.logger.info("login_blocked", user_id=user.id, status="banned")
            raise AuthorizationError(
                "Account banned",
                error_code="ACCOUNT_BANNED",
                detail={"reason": status.reason},
            )
        if status.blocks_login(now):
            self.logger.info("login_blocked", user_id=user.id, status="suspended")
            raise AuthorizationError(
                "Account suspended",
                error_code="ACCOUNT_SUSPENDED",
                detail={"reason": status.reason, "suspendedUntil": status.suspended_until},
            )
        if status.suspension_lapsed(now):
            cleared = self.store.clear_lapsed_suspension(user.id, to_epoch_ms(now))
            self.logger.info("suspension_auto_cleared", user_id=user.id, cleared=cleared)

    def _mint_pair(self, user: User, session_id: str) -> tuple[str, str]:
        access = self.codec.sign(
            TokenKind.ACCESS, {"sub": user.id, "email": user.email, "sid": session_id}
        )
        refresh = self.codec.sign(TokenKind.REFRESH, {"sub": user.id, "sid": session_id})
        return access, refresh

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.get_user_by_email(normalize_identifier(email))
        if not user:
            await self.hasher.verify_dummy_async(password)
            raise self._invalid_credentials("unknown_email")
        if not await self.hasher.verify_async(user.password_digest, password):
            raise self._invalid_credentials("password_mismatch")

        now = self._now()
        self._enforce_moderation(user, now)

        session_id = str(uuid.uuid4())
        access, refresh = self._mint_pair(user, session_id)
        session = self.sessions.create(
            user.id, session_id, hash_token(refresh), ip=ip, user_agent=user_agent
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, session=session, access_token=access, refresh_token=refresh)

    # -- refresh rotation --------------------------------------------------

    def _refresh_failure(self, code: str, message: str, **fields) -> AuthenticationError:
        self.logger.warning("refresh_rejected", reason=code, **fields)
        return AuthenticationError(message, error_code=code, reason=code)

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        """Redeem a refresh token exactly once.

        Checks run in a fixed order and each failure is terminal. A stale
        token, or losing the rotation race to a concurrent caller, revokes
        the whole session.
        """
        if not refresh_token:
            raise self._refresh_failure("NO_REFRESH_TOKEN", "Not authenticated")
        try:
            claims = self.codec.verify(TokenKind.REFRESH, refresh_token)
        except TokenError as exc:
            raise self._refresh_failure(
                "INVALID_REFRESH_TOKEN", "Invalid refresh token", cause=type(exc).__name__
            )

        session_id = str(claims["sid"])
        session = self.sessions.get(session_id)
        if not session:
            raise self._refresh_failure("SESSION_NOT_FOUND", "Session not found", session_id=session_id)
        if str(claims["sub"]) != session.user_id:
            raise self._refresh_failure(
                "INVALID_REFRESH_TOKEN", "Invalid refresh token", session_id=session_id
            )
        if session.is_revoked:
            raise self._refresh_failure("SESSION_REVOKED", "Session revoked", session_id=session_id)
        if self.sessions.is_expired(session, self._now()):
            self.sessions.revoke(session.id, reason="expired")
            raise self._refresh_failure("SESSION_EXPIRED", "Session expired", session_id=session_id)

        presented_hash = hash_token(refresh_token)
        if not hmac.compare_digest(presented_hash, session.refresh_token_hash):
            self.sessions.revoke(session.id, reason="refresh_reuse")
            raise self._refresh_failure(
                "REFRESH_TOKEN_REUSE_DETECTED",
                "Refresh token reuse detected",
                session_id=session_id,
                user_id=session.user_id,
            )

        user = self.store.get_user(session.user_id)
        if not user:
            self.sessions.revoke(session.id, reason="user_missing")
            raise self._refresh_failure("USER_NOT_FOUND", "User not found", session_id=session_id)

        access, refresh = self._mint_pair(user, session.id)
        rotated = self.sessions.rotate(session, presented_hash, hash_token(refresh))
        if rotated is None:
            # Someone else redeemed this token between our read and the swap
            self.sessions.revoke(session.id, reason="refresh_race")
            raise self._refresh_failure(
                "REFRESH_TOKEN_REUSE_DETECTED",
                "Refresh token reuse detected",
                session_id=session_id,
                user_id=session.user_id,
            )
        self.logger.info("session_refreshed", session_id=session.id, user_id=user.id)
        return AuthResult(user=user, session=rotated, access_token=access, refresh_token=refresh)

    # -- access and step-up -----------------------------------------------

    async def authenticate_access(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise AuthenticationError("Not authenticated", reason="NO_ACCESS_TOKEN")
        try:
            claims = self.codec.verify(TokenKind.ACCESS, access_token)
        except TokenError as exc:
            self.logger.info("access_token_rejected", cause=type(exc).__name__)
            raise AuthenticationError("Invalid access token", reason="INVALID_ACCESS_TOKEN")
        session = self.sessions.get(str(claims["sid"]))
        if (
            not session
            or session.user_id != str(claims["sub"])
            or not session.is_active(self._now(), self.sessions.max_days)
        ):
            raise AuthenticationError("Session is no longer active", reason="SESSION_INACTIVE")
        user = self.store.get_user(session.user_id)
        if not user:
            raise AuthenticationError("Not authenticated", reason="USER_NOT_FOUND")
        return AuthContext(user=user, session_id=session.id)

    async def reauth(self, ctx: AuthContext, password: str) -> ReauthResult:
        user = self.store.get_user(ctx.user_id)
        if not user or not await self.hasher.verify_async(user.password_digest, password):
            self.logger.info("reauth_rejected", user_id=ctx.user_id)
            raise AuthenticationError(
                "Invalid password", error_code="INVALID_PASSWORD", reason="INVALID_PASSWORD"
            )
        ttl = self.settings.reauth_ttl_seconds
        token = self.codec.sign(
            TokenKind.REAUTH, {"sub": user.id, "sid": ctx.session_id}, ttl=ttl
        )
        self.logger.info("reauth_granted", user_id=user.id, session_id=ctx.session_id)
        return ReauthResult(token=token, expires_in_sec=ttl)

    def verify_reauth(self, ctx: AuthContext, reauth_token: Optional[str]) -> None:
        """Require a step-up token bound to this user and session."""
        required = AuthorizationError(REAUTH_REQUIRED_MESSAGE, error_code="REAUTH_REQUIRED")
        if not reauth_token:
            raise required
        try:
            claims = self.codec.verify(TokenKind.REAUTH, reauth_token)
        except TokenError:
            raise required
        if str(claims["sub"]) != ctx.user_id or str(claims["sid"]) != ctx.session_id:
            self.logger.warning("reauth_binding_mismatch", user_id=ctx.user_id)
            raise required

    async def logout(self, refresh_token: Optional[str]) -> None:
        """Best effort; logout never fails for the caller."""
        if not refresh_token:
            return
        try:
            claims = self.codec.verify(TokenKind.REFRESH, refresh_token)
        except TokenError as exc:
            self.logger.info("logout_token_unverified", cause=type(exc).__name__)
            return
        try:
            self.sessions.revoke(str(claims["sid"]), reason="logout")
        except Exception as exc:
            self.logger.warning(
                "logout_revoke_failed", error_type=type(exc).__name__, error=str(exc)
            )

    # -- password reset ----------------------------------------------------

    async def request_password_reset(
        self,
        email: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[ResetIssue]:
        """Issue a reset token when allowed; ``None`` in every other case.

        Callers must answer identically whatever this returns. Throttle
        lookups and tombstone writes degrade silently; failing to store a
        real token raises ``ServerError``.
        """
        if self.resets.check_ip_throttle(ip).throttled:
            self.logger.info("reset_request_throttled", scope="ip")
            return None

        user = self.store.get_user_by_email(normalize_identifier(email))
        if not user:
            self.resets.record_tombstone(ip=ip, user_agent=user_agent)
            return None

        if self.resets.check_user_throttle(user.id).throttled:
            self.logger.info("reset_request_throttled", scope="user", user_id=user.id)
            return None

        try:
            issued = self.resets.issue(user.id, ip=ip, user_agent=user_agent)
        except Exception as exc:
            self.logger.error(
                "reset_token_issue_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError(
                "Unable to process password reset right now", error_code="RESET_UNAVAILABLE"
            ) from exc
        return ResetIssue(
            email=user.email, raw_token=issued.raw_token, expires_at=issued.record.expires_at
        )

    async def confirm_password_reset(self, email: str, token: str, new_password: str) -> None:
        def invalid(reason: str) -> ValidationError:
            self.logger.info("reset_confirm_rejected", reason=reason)
            return ValidationError(INVALID_RESET_MESSAGE, error_code="INVALID_OR_EXPIRED_RESET")

        record = self.resets.lookup(token)
        if not record or record.is_tombstone:
            raise invalid("unknown_token")
        user = self.store.get_user(record.user_id)
        if not user or user.email != normalize_identifier(email):
            raise invalid("email_mismatch")
        if record.used_at is not None:
            raise invalid("already_used")
        if record.expires_at <= self._now():
            raise invalid("expired")

        digest = await self.hasher.hash_async(new_password)
        if not self.resets.redeem(record, digest):
            raise invalid("redeem_race")
        self.logger.info("password_reset_completed", user_id=user.id)

    # -- moderation and admin ---------------------------------------------

    def _load_target(self, actor: AuthContext, user_id: str) -> User:
        target = self.store.get_user(user_id)
        if not target:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        if target.is_superadmin and not actor.is_superadmin:
            raise AuthorizationError(
                "Superadmin privileges required", error_code="SUPERADMIN_REQUIRED"
            )
        return target

    def get_moderation(self, user_id: str) -> ModerationStatus:
        if not self.store.get_user(user_id):
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        return self.store.get_moderation(user_id) or ModerationStatus(user_id=user_id)

    async def set_moderation(
        self,
        actor: AuthContext,
        user_id: str,
        status: ModerationState,
        *,
        reason: Optional[str] = None,
        suspended_until: Optional[int] = None,
    ) -> ModerationStatus:
        """Apply an admin moderation decision.

        Suspending or banning revokes every session of the target so the
        decision takes effect on the next refresh rather than at token expiry.
        """
        target = self._load_target(actor, user_id)
        if target.id == actor.user_id:
            raise ValidationError("You cannot moderate your own account", error_code="SELF_MODERATION")
        status = ModerationState(status)
        now = self._now()
        if status == ModerationState.ACTIVE:
            self.store.clear_moderation(target.id)
            self.logger.info("moderation_cleared", user_id=target.id, actor_id=actor.user_id)
            return ModerationStatus(user_id=target.id, updated_at=now)

        if status == ModerationState.BANNED:
            suspended_until = None
        elif suspended_until is not None and suspended_until <= to_epoch_ms(now):
            raise ValidationError("suspendedUntil must be in the future")
        record = self.store.upsert_moderation(
            ModerationStatus(
                user_id=target.id,
                status=status,
                reason=reason,
                suspended_until=suspended_until,
                updated_at=now,
            )
        )
        self.sessions.revoke_all_for_user(target.id, reason=status.value)
        self.logger.info(
            "moderation_applied",
            user_id=target.id,
            actor_id=actor.user_id,
            status=status.value,
        )
        return record

    async def revoke_user_sessions(self, actor: AuthContext, user_id: str) -> int:
        target = self._load_target(actor, user_id)
        return self.sessions.revoke_all_for_user(target.id, reason="admin")

    async def set_admin(self, actor: AuthContext, user_id: str, is_admin: bool) -> User:
        if not actor.is_superadmin:
            raise AuthorizationError(
                "Superadmin privileges required", error_code="SUPERADMIN_REQUIRED"
            )
        target = self._load_target(actor, user_id)
        if target.is_superadmin:
            raise ValidationError(
                "Superadmin accounts cannot be changed here", error_code="SUPERADMIN_IMMUTABLE"
            )
        updated = self.store.set_user_flags(target.id, is_admin=is_admin)
        if not updated:
            raise NotFoundError("User not found", error_code="USER_NOT_FOUND")
        self.logger.info(
            "admin_flag_changed", user_id=target.id, actor_id=actor.user_id, is_admin=is_admin
        )
        return updated
