"""Tests for configuration: computed properties, validators and secret handling."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from pydantic import SecretStr, ValidationError

from pincer.config import (
    AgentConfig,
    ContainerConfig,
    LoggingConfig,
    SecretsConfig,
    Settings,
    _system_timezone,
)


class TestTriggerPattern:
    def _settings(self, **agent_kwargs) -> Settings:
        return Settings.model_construct(agent=AgentConfig(**agent_kwargs))

    def test_matches_name_at_start(self):
        s = self._settings(name="pincer")
        assert s.trigger_pattern.search("@pincer what's up")

    def test_case_insensitive(self):
        s = self._settings(name="pincer")
        assert s.trigger_pattern.search("@PINCER hi")

    def test_requires_word_boundary(self):
        s = self._settings(name="pincer")
        assert not s.trigger_pattern.search("@pincers hi")

    def test_not_matched_mid_message(self):
        s = self._settings(name="pincer")
        assert not s.trigger_pattern.search("hey @pincer")

    def test_aliases(self):
        s = self._settings(name="pincer", trigger_aliases=["crab", " "])
        assert s.trigger_pattern.search("@crab do it")
        assert s.trigger_pattern.search("@pincer do it")

    def test_name_is_regex_escaped(self):
        s = self._settings(name="a.b")
        assert s.trigger_pattern.search("@a.b hi")
        assert not s.trigger_pattern.search("@axb hi")


class TestValidators:
    def test_empty_agent_name_rejected(self):
        with pytest.raises(ValidationError):
            AgentConfig(name="   ")

    def test_max_concurrent_clamped(self):
        assert ContainerConfig(max_concurrent=0).max_concurrent == 1

    def test_log_level_uppercased(self):
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_unknown_timezone_rejected(self):
        from pincer.config import SchedulerConfig

        with pytest.raises(ValidationError):
            SchedulerConfig(timezone="Mars/Olympus_Mons")

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValidationError):
            ContainerConfig(imgae="typo")


class TestTimeouts:
    def test_timeouts_in_seconds(self):
        s = Settings.model_construct(
            container=ContainerConfig(timeout_ms=90_000, idle_timeout_ms=30_000)
        )
        assert s.container_timeout == 90.0
        assert s.idle_timeout == 30.0


class TestSecretEnv:
    def test_empty_when_no_secrets(self):
        s = Settings.model_construct(secrets=SecretsConfig())
        assert s.secret_env() == {}

    def test_maps_secrets_to_env_names(self):
        s = Settings.model_construct(
            secrets=SecretsConfig(
                anthropic_api_key=SecretStr("sk-test"),
                claude_code_oauth_token=SecretStr("oauth-test"),
            )
        )
        assert s.secret_env() == {
            "ANTHROPIC_API_KEY": "sk-test",
            "CLAUDE_CODE_OAUTH_TOKEN": "oauth-test",
        }

    def test_secrets_masked_in_repr(self):
        secrets = SecretsConfig(anthropic_api_key=SecretStr("sk-test"))
        assert "sk-test" not in repr(secrets)


class TestTimezone:
    def test_configured_timezone_wins(self):
        from pincer.config import SchedulerConfig

        s = Settings.model_construct(scheduler=SchedulerConfig(timezone="Europe/Paris"))
        assert s.timezone == "Europe/Paris"

    def test_tz_env_var(self, monkeypatch):
        monkeypatch.setenv("TZ", "America/New_York")
        assert _system_timezone() == "America/New_York"

    def test_localtime_symlink(self, monkeypatch):
        monkeypatch.delenv("TZ", raising=False)
        with patch("os.readlink", return_value="/usr/share/zoneinfo/Asia/Tokyo"):
            assert _system_timezone() == "Asia/Tokyo"

    def test_falls_back_to_utc(self, monkeypatch):
        monkeypatch.delenv("TZ", raising=False)
        with patch("os.readlink", side_effect=OSError):
            assert _system_timezone() == "UTC"


class TestEnvOverrides:
    def test_nested_env_delimiter(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("CONTAINER__MAX_CONCURRENT", "7")
        monkeypatch.setenv("AGENT__NAME", "crab")
        s = Settings()
        assert s.container.max_concurrent == 7
        assert s.agent.name == "crab"

    def test_toml_file_read(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config.toml").write_text('[agent]\nname = "clawd"\n')
        assert Settings().agent.name == "clawd"
