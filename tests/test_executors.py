from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from src.config.load_config import AppConfig
from src.executors.base import ExecuteOptions
from src.executors.cli import ClaudeCLIExecutor, CodexCLIExecutor, GeminiCLIExecutor, SubprocessExecutor
from src.executors.dry_run import DryRunExecutor
from src.executors.openai_compat import LLMConfigError, OpenAICompatExecutor
from src.executors.registry import ExecutorRegistry, UnknownExecutorError
from src.runtime.errors import CancellationError, ExecutorError
from src.utils.cancel import CancellationToken


class PythonScriptExecutor(SubprocessExecutor):
    def __init__(self, code: str, **kwargs: Any) -> None:
        super().__init__(name="py", command=sys.executable, **kwargs)
        self.code = code

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        return [self.command, "-c", self.code, prompt]


def _ndjson(*events: dict) -> str:
    return "\n".join(json.dumps(e) for e in events)


def test_subprocess_captures_stdout() -> None:
    ex = PythonScriptExecutor("import sys; print('echo:' + sys.argv[1])")
    result = ex.execute("hello", ExecuteOptions())
    assert result.exit_code == 0
    assert result.output == "echo:hello"
    assert result.continuation_token is None


def test_subprocess_nonzero_exit_falls_back_to_stderr() -> None:
    ex = PythonScriptExecutor("import sys; sys.stderr.write('bad things'); sys.exit(3)")
    result = ex.execute("x", ExecuteOptions())
    assert result.exit_code == 3
    assert result.output == "bad things"


def test_subprocess_output_is_capped() -> None:
    ex = PythonScriptExecutor("print('a' * 5000)", max_output_bytes=100)
    result = ex.execute("x", ExecuteOptions())
    assert len(result.output) == 100


def test_subprocess_cancel_terminates_child() -> None:
    token = CancellationToken()
    ex = PythonScriptExecutor("import time; time.sleep(30)", kill_grace_s=1.0)
    timer = threading.Timer(0.3, token.request_cancel, args=("user",))
    timer.start()
    try:
        with pytest.raises(CancellationError, match="user"):
            ex.execute("x", ExecuteOptions(cancel=token))
    finally:
        timer.cancel()


def test_subprocess_spawn_failure_is_executor_error(tmp_path: Path) -> None:
    ex = ClaudeCLIExecutor(command=str(tmp_path / "no-such-binary"))
    with pytest.raises(ExecutorError):
        ex.execute("x", ExecuteOptions())


def test_subprocess_without_pipes_is_executor_error(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = SimpleNamespace(stdout=None, stderr=None, pid=0, poll=lambda: 0)
    monkeypatch.setattr("src.executors.cli.subprocess.Popen", lambda *a, **kw: fake)
    ex = PythonScriptExecutor("print(1)")
    with pytest.raises(ExecutorError, match="without output pipes"):
        ex.execute("x", ExecuteOptions())


def test_claude_args_and_stream_parsing() -> None:
    ex = ClaudeCLIExecutor(model="sonnet")
    args = ex.build_args("do it", ExecuteOptions(continuation_token="sess-1"))
    assert args[0] == "claude"
    assert args[args.index("--model") + 1] == "sonnet"
    assert args[args.index("--resume") + 1] == "sess-1"
    assert args[-1] == "do it"

    stdout = _ndjson(
        {"type": "system", "subtype": "init", "session_id": "sess-2"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "partial"}]}},
        {"type": "result", "result": "final answer", "session_id": "sess-2"},
    )
    assert ex.parse_output("warning: noise\n" + stdout) == ("final answer", "sess-2")

    only_text = _ndjson({"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}})
    assert ex.parse_output(only_text) == ("hi", None)


def test_gemini_args_and_stream_parsing() -> None:
    ex = GeminiCLIExecutor()
    args = ex.build_args("q", ExecuteOptions(model="flash"))
    assert args[:3] == ["gemini", "-p", "q"]
    assert args[args.index("-m") + 1] == "flash"
    assert "--resume" not in args

    stdout = _ndjson(
        {"type": "init", "session_id": "g-1"},
        {"type": "message", "role": "user", "content": "q"},
        {"type": "message", "role": "assistant", "content": "Hel"},
        {"type": "message", "role": "assistant", "content": "lo"},
    )
    assert ex.parse_output(stdout) == ("Hello", "g-1")
    assert ex.parse_output("plain text\n") == ("plain text", None)


def test_codex_has_no_continuation_and_reads_agent_file(tmp_path: Path) -> None:
    agent = tmp_path / "AGENTS.md"
    agent.write_text("You are terse.\n", encoding="utf-8")
    ex = CodexCLIExecutor(agent_file=str(agent))
    assert ex.supports_continuation is False
    assert ex.uses_memory_hint is True
    assert ex.system_context() == "You are terse."
    assert ex.build_args("q", ExecuteOptions(continuation_token="ignored"))[-1] == "q"
    assert CodexCLIExecutor(agent_file=str(tmp_path / "missing.md")).system_context() == ""


def test_dry_run_echoes_query_and_keeps_token() -> None:
    ex = DryRunExecutor()
    first = ex.execute("context\n\nwhat time is it", ExecuteOptions())
    assert first.output == "[dry-run:dry-run] what time is it"
    assert first.continuation_token.startswith("dry_")
    again = ex.execute("x", ExecuteOptions(continuation_token=first.continuation_token))
    assert again.continuation_token == first.continuation_token

    token = CancellationToken()
    token.request_cancel("stop")
    with pytest.raises(CancellationError):
        DryRunExecutor(delay_s=5.0).execute("x", ExecuteOptions(cancel=token))


def test_openai_executor_requires_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(LLMConfigError):
        OpenAICompatExecutor().execute("x", ExecuteOptions())


def test_openai_executor_uses_client() -> None:
    calls: list[dict] = []

    def create(**payload: Any) -> Any:
        calls.append(payload)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=" answer "))])

    ex = OpenAICompatExecutor(api_key="k", model="m1")
    ex._client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    result = ex.execute("prompt", ExecuteOptions(model="m2"))
    assert result.output == "answer"
    assert result.exit_code == 0
    assert calls[0]["model"] == "m2"
    assert calls[0]["messages"] == [{"role": "user", "content": "prompt"}]


def test_registry_from_config(app_config: AppConfig) -> None:
    registry = ExecutorRegistry.from_config(app_config)
    assert registry.names() == ["dry_run"]
    assert registry.default == "dry_run"
    assert isinstance(registry.get("dry_run"), DryRunExecutor)
    assert "dry_run" in registry
    with pytest.raises(UnknownExecutorError):
        registry.get("claude")
