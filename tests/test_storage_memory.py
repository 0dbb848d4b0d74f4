import threading
import uuid
from datetime import timedelta

import pytest

from classifieds.storage.errors import ConstraintViolation
from classifieds.storage.models import (
    ModerationState,
    ModerationStatus,
    PasswordResetToken,
    Session,
    to_epoch_ms,
    utcnow,
)


def _session(user_id: str, token_hash: str = "h0") -> Session:
    now = utcnow()
    return Session(
        id=str(uuid.uuid4()),
        user_id=user_id,
        refresh_token_hash=token_hash,
        created_at=now,
        last_used_at=now,
        expires_at=now + timedelta(days=30),
    )


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("Bob@Example.com", "Bob_1", "Bob", "Smith", "digest")


class TestUsers:
    def test_identifiers_stored_lowercase(self, user, memory_store):
        assert user.email == "bob@example.com"
        assert user.username == "bob_1"
        assert memory_store.get_user_by_email("BOB@EXAMPLE.COM").id == user.id

    def test_email_uniqueness_is_case_insensitive(self, user, memory_store):
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_user("BOB@example.com", "other", "B", "S", "d")
        assert exc.value.field == "email"

    def test_username_uniqueness_is_case_insensitive(self, user, memory_store):
        with pytest.raises(ConstraintViolation) as exc:
            memory_store.create_user("other@example.com", "BOB_1", "B", "S", "d")
        assert exc.value.field == "username"

    def test_returned_records_are_copies(self, user, memory_store):
        fetched = memory_store.get_user(user.id)
        fetched.is_admin = True
        assert memory_store.get_user(user.id).is_admin is False


class TestSessions:
    def test_concurrent_rotation_has_one_winner(self, user, memory_store):
        session = memory_store.create_session(_session(user.id, "h0"))
        results = []
        barrier = threading.Barrier(8)

        def worker(i: int) -> None:
            barrier.wait()
            results.append(
                memory_store.rotate_session(
                    session.id,
                    "h0",
                    f"h1-{i}",
                    last_used_at=utcnow(),
                    expires_at=utcnow() + timedelta(days=30),
                )
            )

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert memory_store.get_session(session.id).refresh_token_hash == winners[0].refresh_token_hash

    def test_revoke_session_keeps_first_timestamp(self, user, memory_store):
        session = memory_store.create_session(_session(user.id))
        first = utcnow()

        assert memory_store.revoke_session(session.id, first) is True
        assert memory_store.revoke_session(session.id, first + timedelta(hours=1)) is False
        assert memory_store.get_session(session.id).revoked_at == first

    def test_session_for_unknown_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_session(_session("missing"))


class TestModeration:
    def test_clear_lapsed_suspension_only_when_lapsed(self, user, memory_store):
        now = utcnow()
        memory_store.upsert_moderation(
            ModerationStatus(
                user_id=user.id,
                status=ModerationState.SUSPENDED,
                suspended_until=to_epoch_ms(now + timedelta(hours=1)),
            )
        )

        assert memory_store.clear_lapsed_suspension(user.id, to_epoch_ms(now)) is False
        later = to_epoch_ms(now + timedelta(hours=2))
        assert memory_store.clear_lapsed_suspension(user.id, later) is True
        assert memory_store.get_moderation(user.id) is None

    def test_ban_is_never_auto_cleared(self, user, memory_store):
        memory_store.upsert_moderation(
            ModerationStatus(user_id=user.id, status=ModerationState.BANNED)
        )
        assert memory_store.clear_lapsed_suspension(user.id, to_epoch_ms(utcnow())) is False


class TestPasswordReset:
    def _token(self, user_id, token_hash, *, minutes=30):
        now = utcnow()
        return PasswordResetToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(minutes=minutes),
            created_at=now,
            ip="10.0.0.1",
        )

    def test_issue_supersedes_unused_tokens(self, user, memory_store):
        first = memory_store.issue_reset_token(self._token(user.id, "a"))
        memory_store.issue_reset_token(self._token(user.id, "b"))

        assert memory_store.get_reset_token_by_hash(first.token_hash).used_at is not None
        assert memory_store.get_reset_token_by_hash("b").used_at is None

    def test_complete_reset_is_single_use_and_revokes(self, user, memory_store):
        token = memory_store.issue_reset_token(self._token(user.id, "a"))
        for i in range(3):
            memory_store.create_session(_session(user.id, f"h{i}"))

        assert memory_store.complete_password_reset(token.id, user.id, "new", utcnow()) is True
        assert memory_store.get_user(user.id).password_digest == "new"
        assert all(s.is_revoked for s in memory_store.list_user_sessions(user.id))
        assert memory_store.complete_password_reset(token.id, user.id, "newer", utcnow()) is False
        assert memory_store.get_user(user.id).password_digest == "new"

    def test_counts_include_tombstones_by_ip(self, user, memory_store):
        memory_store.issue_reset_token(self._token(user.id, "a"))
        tombstone = self._token(None, "t")
        memory_store.insert_reset_token(tombstone)
        since = utcnow() - timedelta(hours=1)

        assert memory_store.count_reset_requests_by_ip("10.0.0.1", since) == 2
        assert memory_store.count_reset_requests_by_user(user.id, since) == 1
