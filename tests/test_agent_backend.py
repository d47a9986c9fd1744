import asyncio
import json
from pathlib import Path

import agent_backend
from agent_backend import AgentOptions, ClaudeAgentBackend, RunCollector, to_sdk_permission_mode


class _TextBlock:
    def __init__(self, text: str) -> None:
        self.text = text


class _ToolResultBlock:
    def __init__(self, content: str, is_error: bool = False) -> None:
        self.content = content
        self.is_error = is_error


class _AssistantMessage:
    def __init__(self, content: list) -> None:  # type: ignore[type-arg]
        self.content = content


class _UserMessage:
    def __init__(self, content: list) -> None:  # type: ignore[type-arg]
        self.content = content


class _ResultMessage:
    def __init__(self, result: str | None = None, is_error: bool = False, subtype: str = "success") -> None:
        self.result = result
        self.is_error = is_error
        self.subtype = subtype


class _SystemNoise:
    subtype = "init"
    data = {"slash_commands": ["compact"]}


def _use_fake_sdk_types(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(agent_backend, "AssistantMessage", _AssistantMessage)
    monkeypatch.setattr(agent_backend, "TextBlock", _TextBlock)
    monkeypatch.setattr(agent_backend, "ResultMessage", _ResultMessage)


class _ScriptedClient:
    def __init__(self, messages: list, fail_with: Exception | None = None) -> None:  # type: ignore[type-arg]
        self.messages = messages
        self.fail_with = fail_with
        self.queries: list[tuple[str, str]] = []
        self.model_calls: list[str | None] = []
        self.mode_calls: list[str] = []
        self.disconnected = False

    async def query(self, prompt: str, session_id: str = "default") -> None:
        self.queries.append((prompt, session_id))
        if self.fail_with is not None:
            raise self.fail_with

    async def receive_response(self):  # type: ignore[no-untyped-def]
        for message in self.messages:
            yield message

    async def set_model(self, model: str | None) -> None:
        self.model_calls.append(model)

    async def set_permission_mode(self, mode: str) -> None:
        self.mode_calls.append(mode)

    async def disconnect(self) -> None:
        self.disconnected = True


def test_permission_mode_mapping() -> None:
    assert to_sdk_permission_mode("default") == "default"
    assert to_sdk_permission_mode("plan") == "plan"
    assert to_sdk_permission_mode("Auto-Edit") == "acceptEdits"
    assert to_sdk_permission_mode("yolo") == "bypassPermissions"
    assert to_sdk_permission_mode("unknown") == "default"


def test_collector_concatenates_assistant_text_and_ignores_unknown(monkeypatch) -> None:
    _use_fake_sdk_types(monkeypatch)
    collector = RunCollector()
    collector.feed(_SystemNoise())
    collector.feed(_AssistantMessage([_TextBlock("first"), object()]))
    collector.feed(_AssistantMessage([_TextBlock("second")]))
    finished = collector.feed(_ResultMessage(result="first\nsecond"))

    assert finished is True
    assert collector.reply().result == "first\nsecond"
    assert collector.reply().error is None


def test_collector_falls_back_to_result_text(monkeypatch) -> None:
    _use_fake_sdk_types(monkeypatch)
    collector = RunCollector()
    collector.feed(_ResultMessage(result="Execution result: Success"))
    assert collector.reply().result == "Execution result: Success"


def test_collector_reports_tool_error_without_text(monkeypatch) -> None:
    _use_fake_sdk_types(monkeypatch)
    collector = RunCollector()
    collector.feed(_UserMessage([_ToolResultBlock("permission denied", is_error=True)]))
    collector.feed(_ResultMessage(subtype="error_during_execution"))
    reply = collector.reply()
    assert reply.result == ""
    assert reply.error is not None
    assert "permission denied" in reply.error


def test_collector_reports_error_result(monkeypatch) -> None:
    _use_fake_sdk_types(monkeypatch)
    collector = RunCollector()
    collector.feed(_ResultMessage(result="quota exceeded", is_error=True, subtype="error_max_turns"))
    reply = collector.reply()
    assert reply.error is not None
    assert "quota exceeded" in reply.error


def test_execute_passes_session_key_and_logs_run(tmp_path: Path, monkeypatch) -> None:
    _use_fake_sdk_types(monkeypatch)
    backend = ClaudeAgentBackend(log_dir=tmp_path)
    client = _ScriptedClient([_AssistantMessage([_TextBlock("hi there")]), _ResultMessage(result="hi there")])

    reply = asyncio.run(backend.execute(client, "hello", "user-1"))

    assert reply.result == "hi there"
    assert client.queries == [("hello", "user-1")]
    logs = list(tmp_path.glob("agent-*.jsonl"))
    assert len(logs) == 1
    events = [json.loads(line)["event"] for line in logs[0].read_text(encoding="utf-8").splitlines()]
    assert events == ["request", "message", "message", "response"]


def test_execute_converts_exception_to_error_reply(tmp_path: Path, monkeypatch) -> None:
    _use_fake_sdk_types(monkeypatch)
    backend = ClaudeAgentBackend(log_dir=tmp_path)
    client = _ScriptedClient([], fail_with=RuntimeError("Command failed with exit code 1"))

    reply = asyncio.run(backend.execute(client, "hello", "user-1"))

    assert reply.result == ""
    assert reply.error == "Command failed with exit code 1"


def test_reconfigure_maps_permission_mode(tmp_path: Path) -> None:
    backend = ClaudeAgentBackend(log_dir=tmp_path)
    client = _ScriptedClient([])

    assert asyncio.run(backend.reconfigure(client, model="claude-opus")) is True
    assert asyncio.run(backend.reconfigure(client, permission_mode="auto-edit")) is True
    assert client.model_calls == ["claude-opus"]
    assert client.mode_calls == ["acceptEdits"]


def test_reconfigure_failure_returns_false(tmp_path: Path) -> None:
    class _Rigid:
        async def set_model(self, model: str | None) -> None:
            raise NotImplementedError

    backend = ClaudeAgentBackend(log_dir=tmp_path)
    assert asyncio.run(backend.reconfigure(_Rigid(), model="x")) is False


def test_close_swallows_disconnect_errors(tmp_path: Path) -> None:
    class _Broken:
        async def disconnect(self) -> None:
            raise RuntimeError("already gone")

    backend = ClaudeAgentBackend(log_dir=tmp_path)
    asyncio.run(backend.close(_Broken()))
    client = _ScriptedClient([])
    asyncio.run(backend.close(client))
    assert client.disconnected is True


class _FakeOptions:
    def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
        self.kwargs = kwargs


class _FakeClient:
    def __init__(self, options=None) -> None:  # type: ignore[no-untyped-def]
        self.options = options
        self.connected = False

    async def connect(self) -> None:
        self.connected = True


def test_open_builds_sdk_options_from_session(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(agent_backend, "ClaudeAgentOptions", _FakeOptions)
    monkeypatch.setattr(agent_backend, "ClaudeSDKClient", _FakeClient)
    backend = ClaudeAgentBackend(
        log_dir=tmp_path,
        max_turns=12,
        env={"ANTHROPIC_BASE_URL": "https://api.example.com"},
    )

    client = asyncio.run(
        backend.open(AgentOptions(cwd=str(tmp_path), model="claude-sonnet", permission_mode="yolo"))
    )

    assert isinstance(client, _FakeClient)
    assert client.connected is True
    kwargs = client.options.kwargs
    assert kwargs["cwd"] == str(tmp_path)
    assert kwargs["model"] == "claude-sonnet"
    assert kwargs["permission_mode"] == "bypassPermissions"
    assert kwargs["max_turns"] == 12
    assert kwargs["env"] == {"ANTHROPIC_BASE_URL": "https://api.example.com"}


def test_open_omits_model_when_unset(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(agent_backend, "ClaudeAgentOptions", _FakeOptions)
    monkeypatch.setattr(agent_backend, "ClaudeSDKClient", _FakeClient)
    backend = ClaudeAgentBackend(log_dir=tmp_path)

    client = asyncio.run(backend.open(AgentOptions(cwd=str(tmp_path))))

    assert "model" not in client.options.kwargs
    assert "env" not in client.options.kwargs
    assert client.options.kwargs["permission_mode"] == "default"
