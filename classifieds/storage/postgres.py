from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        password_digest TEXT NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        is_superadmin BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_key ON users (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS users_username_lower_key ON users (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS user_moderation (
        user_id TEXT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
        status TEXT NOT NULL CHECK (status IN ('active', 'suspended', 'banned')),
        reason TEXT,
        suspended_until BIGINT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        user_agent TEXT,
        ip TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_id_idx ON sessions (user_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        ip TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_tokens_user_idx ON password_reset_tokens (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS password_reset_tokens_ip_idx ON password_reset_tokens (ip, created_at)",
)

_UNIQUE_FIELDS = {
    "users_email_lower_key": "email",
    "users_username_lower_key": "username",
}


def _row_to_user(row: Dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        username=row["username"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        password_digest=row["password_digest"],
        is_admin=bool(row.get("is_admin")),
        is_superadmin=bool(row.get("is_superadmin")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_moderation(row: Dict[str, Any]) -> ModerationStatus:
    until = row.get("suspended_until")
    return ModerationStatus(
        user_id=row["user_id"],
        status=ModerationState(row["status"]),
        reason=row.get("reason"),
        suspended_until=int(until) if until is not None else None,
        updated_at=row["updated_at"],
    )


def _row_to_session(row: Dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        user_id=row["user_id"],
        refresh_token_hash=row["refresh_token_hash"],
        created_at=row["created_at"],
        last_used_at=row["last_used_at"],
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
        user_agent=row.get("user_agent"),
        ip=row.get("ip"),
    )


def _row_to_reset_token(row: Dict[str, Any]) -> PasswordResetToken:
    return PasswordResetToken(
        id=row["id"],
        user_id=row.get("user_id"),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        used_at=row.get("used_at"),
        ip=row.get("ip"),
        user_agent=row.get("user_agent"),
    )


class PostgresStore:
    """Postgres-backed store for users, moderation, sessions and reset tokens.

    Conditional ``UPDATE ... WHERE ... RETURNING`` statements are the
    serialization points for rotation and revocation; multi-row changes run
    inside ``conn.transaction()``.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        user_id = str(uuid.uuid4())
        now = utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                if conn.execute(
                    "SELECT 1 FROM users WHERE lower(email) = %s", (email,)
                ).fetchone():
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if conn.execute(
                    "SELECT 1 FROM users WHERE lower(username) = %s", (username,)
                ).fetchone():
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, username, first_name, last_name, password_digest,
                                       is_admin, is_superadmin, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        username,
                        first_name,
                        last_name,
                        password_digest,
                        is_admin,
                        is_superadmin,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            # A concurrent insert won between the pre-check and the insert
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
            field = _UNIQUE_FIELDS.get(constraint or "", "email")
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return _row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = %s",
                (normalize_identifier(email),),
            ).fetchone()
        return _row_to_user(row) if row else None

    def set_user_flags(
        self,
        user_id: str,
        *,
        is_admin: Optional[bool] = None,
        is_superadmin: Optional[bool] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET is_admin = COALESCE(%s, is_admin),
                    is_superadmin = COALESCE(%s, is_superadmin),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (is_admin, is_superadmin, user_id),
            ).fetchone()
        return _row_to_user(row) if row else None

    # -- moderation --------------------------------------------------------

    def get_moderation(self, user_id: str) -> Optional[ModerationStatus]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_moderation WHERE user_id = %s", (user_id,)
            ).fetchone()
        return _row_to_moderation(row) if row else None

    def upsert_moderation(self, status: ModerationStatus) -> ModerationStatus:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_moderation (user_id, status, reason, suspended_until, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET status = EXCLUDED.status,
                        reason = EXCLUDED.reason,
                        suspended_until = EXCLUDED.suspended_until,
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """,
                    (
                        status.user_id,
                        status.status.value,
                        status.reason,
                        status.suspended_until,
                        status.updated_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("moderation user missing", {"user_id": status.user_id})
        return _row_to_moderation(row)

    def clear_moderation(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_moderation WHERE user_id = %s", (user_id,))
            return cur.rowcount > 0

    def clear_lapsed_suspension(self, user_id: str, now_ms: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM user_moderation
                WHERE user_id = %s
                  AND status = 'suspended'
                  AND suspended_until IS NOT NULL
                  AND suspended_until <= %s
                """,
                (user_id, now_ms),
            )
            return cur.rowcount > 0

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, refresh_token_hash, created_at, last_used_at,
                                          expires_at, revoked_at, user_agent, ip)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.created_at,
                        session.last_used_at,
                        session.expires_at,
                        session.revoked_at,
                        session.user_agent,
                        session.ip,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return _row_to_session(row) if row else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        last_used_at: datetime,
        expires_at: datetime,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions
                SET refresh_token_hash = %s, last_used_at = %s, expires_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (new_hash, last_used_at, expires_at, session_id, expected_hash),
            ).fetchone()
        return _row_to_session(row) if row else None

    def revoke_session(self, session_id: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE sessions SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (revoked_at, session_id),
            )
            return cur.rowcount > 0

    def revoke_user_sessions(self, user_id: str, revoked_at: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE sessions SET revoked_at = %s WHERE user_id = %s AND revoked_at IS NULL",
                (revoked_at, user_id),
            )
            return cur.rowcount

    # -- password reset ----------------------------------------------------

    def count_reset_requests_by_ip(self, ip: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM password_reset_tokens WHERE ip = %s AND created_at > %s",
                (ip, since),
            ).fetchone()
        return int(row["n"]) if row else 0

    def count_reset_requests_by_user(self, user_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM password_reset_tokens WHERE user_id = %s AND created_at > %s",
                (user_id, since),
            ).fetchone()
        return int(row["n"]) if row else 0

    def _insert_reset_token(self, conn, token: PasswordResetToken) -> None:
        conn.execute(
            """
            INSERT INTO password_reset_tokens (id, user_id, token_hash, expires_at, used_at,
                                               created_at, ip, user_agent)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.token_hash,
                token.expires_at,
                token.used_at,
                token.created_at,
                token.ip,
                token.user_agent,
            ),
        )

    def insert_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn:
            self._insert_reset_token(conn, token)
        return token

    def issue_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    UPDATE password_reset_tokens SET used_at = %s
                    WHERE user_id = %s AND used_at IS NULL
                    """,
                    (token.created_at, token.user_id),
                )
                self._insert_reset_token(conn, token)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("reset user missing", {"user_id": token.user_id})
        return token

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return _row_to_reset_token(row) if row else None

    def complete_password_reset(
        self, token_id: str, user_id: str, password_digest: str, now: datetime
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            claimed = conn.execute(
                """
                UPDATE password_reset_tokens SET used_at = %s
                WHERE id = %s AND user_id = %s AND used_at IS NULL AND expires_at > %s
                RETURNING id
                """,
                (now, token_id, user_id, now),
            ).fetchone()
            if not claimed:
                return False
            conn.execute(
                "UPDATE users SET password_digest = %s, updated_at = %s WHERE id = %s",
                (password_digest, now, user_id),
            )
            cur = conn.execute(
                "UPDATE sessions SET revoked_at = COALESCE(revoked_at, %s) WHERE user_id = %s",
                (now, user_id),
            )
            revoked = cur.rowcount
        self.logger.info("password_reset_applied", user_id=user_id, sessions_revoked=revoked)
        return True
