"""Tests for configuration loading.

Covers:
* defaults when no files exist
* YAML settings + secrets merge
* environment overrides for secrets
* validation of lifetimes
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from realchat.config import AppConfig, AuthSettings, get_config, load_config, set_config


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("REALCHAT_ACCESS_SECRET", "REALCHAT_REFRESH_SECRET", "BREVO_API_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_defaults_without_files(self, tmp_path, clean_env):
        config = load_config(settings_path=tmp_path / "missing.yaml")
        assert config.server.port == 3001
        assert config.auth.access_token_minutes == 15
        assert config.auth.refresh_token_days == 7
        assert config.auth.otp_ttl_seconds == 300
        assert config.chat.default_room == "general"
        assert config.chat.history_limit == 50
        assert config.chat.max_history_limit == 100
        assert config.secrets.mail.api_key is None

    def test_settings_and_secrets_merge(self, tmp_path, clean_env):
        settings = tmp_path / "realchat.settings.yaml"
        settings.write_text(
            "server:\n  port: 4000\n  cookie_secure: true\n"
            "auth:\n  access_token_minutes: 5\n"
            "mail:\n  provider: log\n",
            encoding="utf-8",
        )
        (tmp_path / "realchat.secrets.yaml").write_text(
            "jwt:\n  access_secret: from-file\n"
            "mail:\n  api_key: brevo-file-key\n",
            encoding="utf-8",
        )
        config = load_config(settings_path=settings)
        assert config.server.port == 4000
        assert config.server.cookie_secure is True
        assert config.auth.access_token_minutes == 5
        assert config.mail.provider == "log"
        assert config.secrets.jwt.access_secret == "from-file"
        assert config.secrets.mail.api_key == "brevo-file-key"

    def test_environment_overrides_secrets(self, tmp_path, monkeypatch, clean_env):
        (tmp_path / "realchat.secrets.yaml").write_text("jwt:\n  access_secret: from-file\n", encoding="utf-8")
        monkeypatch.setenv("REALCHAT_ACCESS_SECRET", "from-env")
        monkeypatch.setenv("BREVO_API_KEY", "env-key")
        config = load_config(settings_path=tmp_path / "realchat.settings.yaml")
        assert config.secrets.jwt.access_secret == "from-env"
        assert config.secrets.mail.api_key == "env-key"

    def test_explicit_secrets_path(self, tmp_path, clean_env):
        secrets = tmp_path / "elsewhere.yaml"
        secrets.write_text("jwt:\n  refresh_secret: custom\n", encoding="utf-8")
        config = load_config(settings_path=tmp_path / "missing.yaml", secrets_path=secrets)
        assert config.secrets.jwt.refresh_secret == "custom"


class TestValidation:
    @pytest.mark.parametrize("field", ["access_token_minutes", "refresh_token_days", "otp_ttl_seconds"])
    def test_lifetimes_must_be_positive(self, field):
        with pytest.raises(PydanticValidationError):
            AuthSettings(**{field: 0})

    def test_unknown_mail_provider_rejected(self):
        with pytest.raises(PydanticValidationError):
            AppConfig(mail={"provider": "carrier-pigeon"})


def test_set_config_replaces_cached_instance():
    custom = AppConfig(chat={"default_room": "lobby"})
    set_config(custom)
    try:
        assert get_config() is custom
    finally:
        set_config(None)
