"""
Smoke tests for settings loading.
"""
import pytest

from app.config import _is_placeholder, get_settings, normalize_database_url


class TestIsPlaceholder:
    @pytest.mark.parametrize("value", ["", "change-me", "<secret>", "your-secret"])
    def test_placeholders(self, value):
        assert _is_placeholder(value)

    def test_real_value_not_placeholder(self):
        assert not _is_placeholder("f3a9c2d1e8b7")


class TestDatabaseUrl:
    def test_legacy_postgres_scheme_rewritten(self):
        assert normalize_database_url("postgres://u:p@h/db") == "postgresql://u:p@h/db"

    def test_other_urls_untouched(self):
        assert normalize_database_url("sqlite:///./x.db") == "sqlite:///./x.db"


class TestSettingsLoading:
    def test_defaults(self, monkeypatch):
        for key in ("DATABASE_URL", "SESSION_SECRET", "SESSION_MAX_AGE_SECONDS", "CORS_ORIGINS", "PROTECTED_SUPERADMINS", "SEED_REFERENCE_DATA", "LOG_LEVEL"):
            monkeypatch.delenv(key, raising=False)
        s = get_settings()
        assert s.database_url == "sqlite:///./clinical_tracker.db"
        assert s.is_sqlite
        assert s.session_secret_is_placeholder
        assert s.session_max_age_seconds == 12 * 60 * 60
        assert s.cors_origins == ("*",)
        assert s.protected_superadmins == ()
        assert s.seed_reference_data
        assert s.log_level == "INFO"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@h/db")
        monkeypatch.setenv("SESSION_SECRET", "a-real-secret-value")
        monkeypatch.setenv("SESSION_MAX_AGE_SECONDS", "60")
        monkeypatch.setenv("CORS_ORIGINS", "http://a.test, http://b.test")
        monkeypatch.setenv("PROTECTED_SUPERADMINS", "Boss@Example.edu")
        monkeypatch.setenv("SEED_REFERENCE_DATA", "false")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        s = get_settings()
        assert s.database_url == "postgresql://u:p@h/db"
        assert not s.is_sqlite
        assert not s.session_secret_is_placeholder
        assert s.session_max_age_seconds == 60
        assert s.cors_origins == ("http://a.test", "http://b.test")
        assert s.protected_superadmins == ("boss@example.edu",)
        assert not s.seed_reference_data
        assert s.log_level == "DEBUG"

    def test_settings_are_frozen(self):
        s = get_settings()
        with pytest.raises(Exception):
            s.log_level = "DEBUG"
