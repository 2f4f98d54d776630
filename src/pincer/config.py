"""Settings for the pincer host, loaded with pydantic-settings.

Sources, highest priority first: constructor arguments, environment
variables, ``.env``, ``config.toml``. Nested keys use ``__`` in env names,
so ``CONTAINER__MAX_CONCURRENT=3`` sets ``[container] max_concurrent``.
Credentials belong in ``.env`` and are held as ``SecretStr``.

Example ``config.toml``::

    [agent]
    name = "pincer"
    trigger_aliases = ["claw"]

    [container]
    max_concurrent = 3

    [scheduler]
    timezone = "Europe/Berlin"

Code reads settings through :func:`get_settings`.
"""

from __future__ import annotations

import os
import re
from functools import cached_property
from pathlib import Path
from typing import ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)


class _StrictModel(BaseModel):
    """Config section. Unknown keys are an error, so typos surface at startup."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    name: str = "pincer"
    trigger_aliases: list[str] = []
    core: str = "claude"  # agent core registered inside the sandbox image

    @field_validator("name")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("agent.name cannot be empty")
        return v.strip()


class ContainerConfig(_StrictModel):
    image: str = "pincer-agent:latest"
    timeout_ms: int = 30 * 60 * 1000
    idle_timeout_ms: int = 30 * 60 * 1000
    max_output_size: int = 10 * 1024 * 1024  # bytes of stdout/stderr kept per run
    max_concurrent: int = 5
    runtime: str | None = None  # "docker", "container" (macOS), or None to detect

    @field_validator("max_concurrent")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        return max(v, 1)


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()


class SecretsConfig(_StrictModel):
    anthropic_api_key: SecretStr | None = None
    claude_code_oauth_token: SecretStr | None = None


class SchedulerConfig(_StrictModel):
    poll_interval: float = 60.0
    timezone: str = ""  # IANA name; empty means use the host's zone

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        if v:
            try:
                ZoneInfo(v)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"unknown timezone: {v}") from exc
        return v


class IntervalsConfig(_StrictModel):
    # seconds
    message_poll: float = 2.0
    ipc_poll: float = 1.0
    channel_watchdog: float = 30.0


class GroupsConfig(_StrictModel):
    main_folder: str = "main"


# Secrets field -> env var name the agent engine expects
_SECRET_ENV_NAMES = {
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "claude_code_oauth_token": "CLAUDE_CODE_OAUTH_TOKEN",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    container: ContainerConfig = ContainerConfig()
    logging: LoggingConfig = LoggingConfig()
    secrets: SecretsConfig = SecretsConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    intervals: IntervalsConfig = IntervalsConfig()
    groups: GroupsConfig = GroupsConfig()

    # Framing of sandbox stdout blocks; agent_runner.main uses the same strings
    OUTPUT_START_MARKER: ClassVar[str] = "---PINCER_OUTPUT_START---"
    OUTPUT_END_MARKER: ClassVar[str] = "---PINCER_OUTPUT_END---"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_settings = TomlConfigSettingsSource(settings_cls)
        return init_settings, env_settings, dotenv_settings, toml_settings, file_secret_settings

    @cached_property
    def trigger_pattern(self) -> re.Pattern[str]:
        """``@name`` or ``@alias`` at the start of a message, any case."""
        names = [self.agent.name, *(a.strip() for a in self.agent.trigger_aliases)]
        alternatives = "|".join(re.escape(n) for n in names if n)
        return re.compile(rf"^@({alternatives})\b", re.IGNORECASE)

    @cached_property
    def timezone(self) -> str:
        return self.scheduler.timezone or _system_timezone()

    @cached_property
    def container_timeout(self) -> float:
        return self.container.timeout_ms / 1000

    @cached_property
    def idle_timeout(self) -> float:
        return self.container.idle_timeout_ms / 1000

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def groups_dir(self) -> Path:
        return self._under_root("groups")

    @cached_property
    def data_dir(self) -> Path:
        return self._under_root("data")

    @cached_property
    def store_dir(self) -> Path:
        return self._under_root("store")

    def _under_root(self, name: str) -> Path:
        return (self.project_root / name).resolve()

    def secret_env(self) -> dict[str, str]:
        """Configured credentials keyed by env var name, for the sandbox stdin payload."""
        return {
            env_name: secret.get_secret_value()
            for field, env_name in _SECRET_ENV_NAMES.items()
            if (secret := getattr(self.secrets, field)) is not None
        }


def _system_timezone() -> str:
    """$TZ, else the zone /etc/localtime links to, else UTC."""
    if tz := os.environ.get("TZ"):
        return tz
    try:
        target = os.readlink("/etc/localtime")
    except OSError:
        return "UTC"
    _, sep, zone = target.partition("zoneinfo/")
    return zone if sep else "UTC"


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
