# =============================================================================
# tests/unit/test_config.py
# Unit Tests for Settings Loading
# =============================================================================

from pathlib import Path

import pytest

from reva_core.config import DEFAULT_TABLES, SyncSettings, load_settings
from reva_core.errors import ConfigurationError


@pytest.fixture
def secrets_file(tmp_path):
    path = tmp_path / "secrets.toml"
    path.write_text(
        '[supabase]\n'
        'url = "https://abc.supabase.co"\n'
        'key = "anon-key"\n'
        '\n'
        '[sync]\n'
        'tables = ["tasks", "expenses"]\n'
        'outbox_max_attempts = 7\n'
        'db_path = "cache/reva.db"\n'
        'dashboard_theme = "dark"\n'
    )
    return path


class TestLoadSettings:
    """load_settings()"""

    def test_reads_secrets_file(self, secrets_file):
        settings = load_settings(secrets_file, env={})

        assert settings.supabase_url == "https://abc.supabase.co"
        assert settings.has_supabase
        assert settings.tables == ("tasks", "expenses")
        assert settings.outbox_max_attempts == 7
        assert settings.db_path == Path("cache/reva.db")
        assert settings.extra == {"dashboard_theme": "dark"}

    def test_environment_overrides_file(self, secrets_file):
        settings = load_settings(secrets_file, env={
            "SUPABASE_URL": "https://other.supabase.co",
            "REVA_SYNC_DB_PATH": ":memory:",
        })

        assert settings.supabase_url == "https://other.supabase.co"
        assert settings.supabase_key == "anon-key"
        assert settings.db_path == ":memory:"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.toml", env={})

        assert not settings.has_supabase
        assert settings.tables == DEFAULT_TABLES
        assert settings.outbox_max_attempts == 5

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "broken.toml"
        path.write_text("[supabase\nurl = ")

        with pytest.raises(ConfigurationError):
            load_settings(path, env={})

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "secrets.toml"
        path.write_text("[sync]\nmax_concurrency = 0\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(path, env={})

        assert exc_info.value.details["config_key"] == "max_concurrency"


class TestValidate:
    """SyncSettings.validate()"""

    def test_defaults_are_valid(self):
        assert SyncSettings().validate().tables == DEFAULT_TABLES

    @pytest.mark.parametrize("overrides", [
        {"tables": ()},
        {"retry_base_delay": -1},
        {"channel_backoff_base": 10.0, "channel_backoff_cap": 1.0},
        {"retry_base_delay": 5.0, "retry_max_delay": 1.0},
        {"outbox_max_attempts": 0},
        {"supabase_url": "abc.supabase.co"},
    ])
    def test_rejects(self, overrides):
        with pytest.raises(ConfigurationError):
            SyncSettings(**overrides).validate()
