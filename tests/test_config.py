import pytest

from classifieds.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # Run from an empty directory so no stray .env is picked up
    monkeypatch.chdir(tmp_path)
    for key in ("APP_ENV", "JWT_ACCESS_SECRET", "JWT_REFRESH_SECRET", "COOKIE_SECURE"):
        monkeypatch.delenv(key, raising=False)
    yield monkeypatch
    reset_settings_cache()


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_access_secret="a" * 32, jwt_refresh_secret="b" * 32)

        assert settings.jwt_issuer == "fishclassifieds"
        assert settings.jwt_audience == "fishclassifieds-web"
        assert settings.jwt_access_ttl_seconds == 900
        assert settings.refresh_max_ttl_days == settings.jwt_refresh_ttl_days == 30
        assert settings.argon2_memory_cost == 19456
        assert settings.secure_cookies is False

    def test_non_positive_sliding_window_falls_back(self):
        settings = Settings(jwt_access_secret="a", jwt_refresh_secret="b", jwt_refresh_ttl_days=0)
        assert settings.jwt_refresh_ttl_days == 30

    def test_reauth_ttl_floor(self):
        settings = Settings(jwt_access_secret="a", jwt_refresh_secret="b", reauth_ttl_seconds=5)
        assert settings.reauth_ttl_seconds == 30

    def test_production_requires_secrets(self):
        with pytest.raises(ValueError):
            Settings(app_env="production")

    def test_development_generates_ephemeral_secrets(self):
        settings = Settings(app_env="development")
        assert settings.jwt_access_secret
        assert settings.jwt_refresh_secret
        assert settings.jwt_access_secret != settings.jwt_refresh_secret

    def test_production_cookies_secure_unless_overridden(self):
        prod = Settings(app_env="Production", jwt_access_secret="a", jwt_refresh_secret="b")
        assert prod.is_production
        assert prod.secure_cookies is True

        override = Settings(
            app_env="production", jwt_access_secret="a", jwt_refresh_secret="b", cookie_secure=False
        )
        assert override.secure_cookies is False


class TestFromEnv:
    def test_reads_environment(self, clean_env):
        clean_env.setenv("JWT_ACCESS_SECRET", "from-env-access")
        clean_env.setenv("JWT_REFRESH_SECRET", "from-env-refresh")
        clean_env.setenv("JWT_REFRESH_MAX_TTL_DAYS", "60")
        clean_env.setenv("COOKIE_DOMAIN", "")

        settings = Settings.from_env()

        assert settings.jwt_access_secret == "from-env-access"
        assert settings.refresh_max_ttl_days == 60
        assert settings.cookie_domain is None

    def test_reads_dotenv_file(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("JWT_ISSUER=dotenv-issuer\nJWT_ACCESS_SECRET=x\n")
        clean_env.delenv("JWT_ISSUER", raising=False)

        assert Settings.from_env().jwt_issuer == "dotenv-issuer"

    def test_get_settings_is_cached(self, clean_env):
        reset_settings_cache()
        assert get_settings() is get_settings()
