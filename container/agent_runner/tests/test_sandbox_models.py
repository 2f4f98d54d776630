"""Tests for the stdin/stdout models and the agent core registry."""

from __future__ import annotations

import io
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from agent_runner.core import AgentCore, AgentCoreConfig
from agent_runner.main import read_input
from agent_runner.models import ContainerInput, ContainerOutput, InputParseError
from agent_runner.registry import create_agent_core, list_cores, register_core


def _minimal_input(**overrides: object) -> dict:
    base = {
        "prompt": "hello",
        "group_folder": "test-group",
        "chat_jid": "test@g.us",
        "is_main": False,
    }
    base.update(overrides)
    return base


class TestContainerInput:
    def test_defaults(self) -> None:
        parsed = ContainerInput.from_dict(_minimal_input())

        assert parsed.session_id is None
        assert parsed.is_scheduled_task is False
        assert parsed.agent_core == "claude"
        assert parsed.secrets == {}

    def test_unknown_keys_ignored(self) -> None:
        parsed = ContainerInput.from_dict(_minimal_input(extra="x", assistantName="Andy"))

        assert parsed.prompt == "hello"

    def test_empty_secrets_dropped(self) -> None:
        secrets = {"ANTHROPIC_API_KEY": "sk-hidden", "CLAUDE_CODE_OAUTH_TOKEN": ""}
        parsed = ContainerInput.from_dict(_minimal_input(secrets=secrets))

        assert parsed.secrets == {"ANTHROPIC_API_KEY": "sk-hidden"}
        assert "sk-hidden" not in repr(parsed)

    @pytest.mark.parametrize(
        "data",
        [
            [],
            "prompt",
            {"group_folder": "g", "chat_jid": "j", "is_main": False},
            _minimal_input(group_folder=""),
            _minimal_input(prompt=None),
            _minimal_input(secrets=["k"]),
            _minimal_input(secrets={"ANTHROPIC_API_KEY": 1}),
        ],
    )
    def test_rejects_unusable_documents(self, data: object) -> None:
        with pytest.raises(InputParseError):
            ContainerInput.from_dict(data)


class TestReadInput:
    @pytest.fixture()
    def staged(self, tmp_path: Path):
        path = tmp_path / "input.json"
        with patch("agent_runner.main.STAGED_INPUT_FILE", path):
            yield path

    def test_parses_and_deletes_staged_file(self, staged: Path) -> None:
        text = json.dumps(_minimal_input(secrets={"ANTHROPIC_API_KEY": "sk"}))
        staged.write_text(text)

        parsed = read_input(io.StringIO(text))

        assert parsed.group_folder == "test-group"
        assert not staged.exists()

    def test_invalid_json_still_deletes_staged_file(self, staged: Path) -> None:
        staged.write_text("{{{")

        with pytest.raises(InputParseError, match="invalid JSON"):
            read_input(io.StringIO("{{{"))

        assert not staged.exists()

    def test_undecodable_stdin(self, staged: Path) -> None:
        stream = io.TextIOWrapper(io.BytesIO(b"\xff\xfe{"), encoding="utf-8")

        with pytest.raises(InputParseError, match="invalid JSON"):
            read_input(stream)

    def test_missing_staged_file_is_fine(self, staged: Path) -> None:
        parsed = read_input(io.StringIO(json.dumps(_minimal_input())))

        assert parsed.prompt == "hello"


class TestContainerOutput:
    def test_result_always_present(self) -> None:
        assert ContainerOutput(status="success").to_dict() == {"status": "success", "result": None}

    def test_optional_fields_when_set(self) -> None:
        out = ContainerOutput(status="error", result=None, new_session_id="s1", error="boom")

        assert out.to_dict() == {
            "status": "error",
            "result": None,
            "new_session_id": "s1",
            "error": "boom",
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class EchoCore:
    def __init__(self, config: AgentCoreConfig) -> None:
        self.config = config

    async def start(self) -> None:
        pass

    async def query(self, prompt: str):
        yield prompt

    async def stop(self) -> None:
        pass

    @property
    def session_id(self) -> str | None:
        return self.config.session_id


class NotACore:
    def __init__(self, config: AgentCoreConfig) -> None:
        self.config = config


def _config() -> AgentCoreConfig:
    return AgentCoreConfig(cwd="/tmp", group_folder="g", chat_jid="j", is_main=False)


class TestRegistry:
    def test_claude_is_built_in(self) -> None:
        assert "claude" in list_cores()

    def test_registered_core_created(self) -> None:
        register_core("echo", EchoCore)

        core = create_agent_core("echo", _config())

        assert isinstance(core, EchoCore)
        assert isinstance(core, AgentCore)
        assert "echo" in list_cores()

    def test_unknown_core(self) -> None:
        with pytest.raises(KeyError, match="Available cores"):
            create_agent_core("does-not-exist", _config())

    def test_protocol_enforced(self) -> None:
        register_core("broken", NotACore)

        with pytest.raises(TypeError, match="does not satisfy"):
            create_agent_core("broken", _config())
