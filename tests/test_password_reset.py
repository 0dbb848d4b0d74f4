"""Throttling and degradation behaviour of password reset requests."""

import pytest

from classifieds.config import Settings
from classifieds.service.auth import AuthService
from classifieds.service.errors import ServerError
from classifieds.service.password_reset import PasswordResetLedger, ThrottleCheck
from classifieds.storage.memory import MemoryStore

PASSWORD = "hunter2hunter2"


class FlakyCountStore(MemoryStore):
    def count_reset_requests_by_ip(self, ip, since):
        raise ConnectionError("db unavailable")

    def count_reset_requests_by_user(self, user_id, since):
        raise ConnectionError("db unavailable")


class BrokenWriteStore(MemoryStore):
    def insert_reset_token(self, token):
        raise ConnectionError("db unavailable")

    def issue_reset_token(self, token):
        raise ConnectionError("db unavailable")


@pytest.fixture
def throttle_settings():
    return Settings(
        jwt_access_secret="unit-access-secret-0123456789abcdef",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef",
        argon2_memory_cost=1024,
        argon2_time_cost=1,
        reset_ip_limit_per_hour=4,
        reset_user_limit_per_hour=2,
    )


def _service(store, settings, clock, hasher):
    return AuthService(store, settings, clock=clock, hasher=hasher)


async def _bob(auth):
    return await auth.register("bob@example.com", "bob", "Bob", "Smith", PASSWORD)


class TestThrottles:
    async def test_user_limit(self, throttle_settings, clock, hasher):
        auth = _service(MemoryStore(), throttle_settings, clock, hasher)
        await _bob(auth)

        issued = [await auth.request_password_reset("bob@example.com") for _ in range(3)]
        assert [i is not None for i in issued] == [True, True, False]

    async def test_user_limit_window_rolls(self, throttle_settings, clock, hasher):
        auth = _service(MemoryStore(), throttle_settings, clock, hasher)
        await _bob(auth)
        for _ in range(2):
            await auth.request_password_reset("bob@example.com")

        clock.advance(hours=1, seconds=1)
        assert await auth.request_password_reset("bob@example.com") is not None

    async def test_ip_limit_counts_unknown_emails(self, throttle_settings, clock, hasher):
        auth = _service(MemoryStore(), throttle_settings, clock, hasher)
        await _bob(auth)
        for i in range(4):
            assert await auth.request_password_reset(f"ghost{i}@example.com", ip="10.1.1.1") is None

        assert await auth.request_password_reset("bob@example.com", ip="10.1.1.1") is None
        assert await auth.request_password_reset("bob@example.com", ip="10.1.1.2") is not None

    async def test_latest_token_supersedes_earlier(self, throttle_settings, clock, hasher):
        auth = _service(MemoryStore(), throttle_settings, clock, hasher)
        await _bob(auth)
        first = await auth.request_password_reset("bob@example.com")
        second = await auth.request_password_reset("bob@example.com")

        assert auth.resets.lookup(first.raw_token).used_at is not None
        await auth.confirm_password_reset("bob@example.com", second.raw_token, "a-new-password")


class TestDegradation:
    def test_throttle_check_degrades_open(self, throttle_settings, clock):
        ledger = PasswordResetLedger(FlakyCountStore(), throttle_settings, clock=clock)

        assert ledger.check_ip_throttle("10.0.0.1") == ThrottleCheck(throttled=False, degraded=True)
        assert ledger.check_user_throttle("u1").throttled is False
        assert ledger.check_ip_throttle(None) == ThrottleCheck(throttled=False)

    async def test_flaky_counts_still_issue(self, throttle_settings, clock, hasher):
        auth = _service(FlakyCountStore(), throttle_settings, clock, hasher)
        await _bob(auth)
        assert await auth.request_password_reset("bob@example.com", ip="10.0.0.1") is not None

    async def test_tombstone_failure_is_silent(self, throttle_settings, clock, hasher):
        auth = _service(BrokenWriteStore(), throttle_settings, clock, hasher)
        assert await auth.request_password_reset("ghost@example.com", ip="10.0.0.1") is None

    async def test_issue_failure_is_reported(self, throttle_settings, clock, hasher):
        auth = _service(BrokenWriteStore(), throttle_settings, clock, hasher)
        await _bob(auth)
        with pytest.raises(ServerError) as exc:
            await auth.request_password_reset("bob@example.com")
        assert exc.value.error_code == "RESET_UNAVAILABLE"
