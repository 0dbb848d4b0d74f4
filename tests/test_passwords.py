import pytest

from classifieds.service.passwords import PasswordHasherGateway


class TestPasswordHasherGateway:
    def test_hash_is_argon2id_and_salted(self, hasher):
        first = hasher.hash("correct horse battery")
        second = hasher.hash("correct horse battery")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "correct horse battery" not in first

    def test_verify(self, hasher):
        digest = hasher.hash("correct horse battery")

        assert hasher.verify(digest, "correct horse battery") is True
        assert hasher.verify(digest, "wrong horse battery") is False

    @pytest.mark.parametrize("digest", ["", "not-a-digest", "$argon2id$v=19$broken"])
    def test_unusable_digest_is_a_mismatch(self, hasher, digest):
        assert hasher.verify(digest, "anything") is False

    def test_dummy_verify_never_succeeds(self, hasher):
        assert hasher.verify_dummy("classifieds-timing-decoy") is False

    def test_cost_comes_from_settings(self, settings):
        gateway = PasswordHasherGateway.from_settings(settings)
        assert f"m={settings.argon2_memory_cost}" in gateway.hash("pw-1234567890")

    async def test_async_wrappers(self, hasher):
        digest = await hasher.hash_async("pw-1234567890")

        assert await hasher.verify_async(digest, "pw-1234567890") is True
        assert await hasher.verify_dummy_async("pw-1234567890") is False
