from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Any

from src.executors.base import ExecuteOptions, Executor, ExecutorResult
from src.runtime.errors import CancellationError, ExecutorError


logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 1024 * 1024
MAX_STDERR_BYTES = 64 * 1024
KILL_GRACE_S = 5.0
POLL_INTERVAL_S = 0.1


class _CappedReader(threading.Thread):
    """Drain a pipe into memory, keeping at most `limit` bytes.

    The pipe is always read to EOF so the child never blocks on a full buffer.
    """

    def __init__(self, stream: IO[bytes], *, limit: int) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._limit = int(limit)
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    def run(self) -> None:
        while True:
            chunk = self._stream.read(8192)
            if not chunk:
                break
            room = self._limit - self._size
            if room <= 0:
                self.truncated = True
                continue
            if len(chunk) > room:
                chunk = chunk[:room]
                self.truncated = True
            self._chunks.append(chunk)
            self._size += len(chunk)
        self._stream.close()

    def text(self) -> str:
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _terminate(proc: subprocess.Popen[bytes], *, grace_s: float) -> None:
    """SIGTERM the process group, escalating to SIGKILL after `grace_s`."""
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        proc.wait(timeout=grace_s)
    except subprocess.TimeoutExpired:
        logger.warning("executor pid=%s ignored SIGTERM; sending SIGKILL", proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        proc.wait()


class SubprocessExecutor(Executor):
    """Runs a CLI agent as a child process and parses its stdout.

    Subclasses provide `build_args` and `parse_output`.
    """

    def __init__(
        self,
        *,
        name: str,
        command: str,
        model: str | None = None,
        env: dict[str, str] | None = None,
        kill_grace_s: float = KILL_GRACE_S,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ) -> None:
        self.name = name
        self.command = command
        self.default_model = model
        self.env = env
        self.kill_grace_s = float(kill_grace_s)
        self.max_output_bytes = int(max_output_bytes)

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        raise NotImplementedError

    def parse_output(self, stdout: str) -> tuple[str, str | None]:
        """Return (output text, continuation token)."""
        return stdout.strip(), None

    def execute(self, prompt: str, options: ExecuteOptions) -> ExecutorResult:
        options.cancel.raise_if_cancelled()

        args = self.build_args(prompt, options)
        cwd = str(Path(options.cwd).expanduser()) if options.cwd else None
        env = {**os.environ, **self.env} if self.env else None
        started = time.monotonic()
        logger.debug("spawning executor=%s argv0=%s cwd=%s", self.name, args[0], cwd)
        try:
            proc = subprocess.Popen(
                args,
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutorError(
                f"Failed to start {self.name}: {e}",
                details={"command": args[0], "cwd": cwd},
            ) from e

        if proc.stdout is None or proc.stderr is None:
            _terminate(proc, grace_s=self.kill_grace_s)
            raise ExecutorError(f"{self.name} started without output pipes.", details={"command": args[0]})

        out_reader = _CappedReader(proc.stdout, limit=self.max_output_bytes)
        err_reader = _CappedReader(proc.stderr, limit=MAX_STDERR_BYTES)
        out_reader.start()
        err_reader.start()

        cancelled = False
        while proc.poll() is None:
            if options.cancel.wait(POLL_INTERVAL_S):
                cancelled = True
                _terminate(proc, grace_s=self.kill_grace_s)
                break

        out_reader.join()
        err_reader.join()
        duration_s = time.monotonic() - started

        if cancelled:
            raise CancellationError(options.cancel.reason or "cancelled")
        if out_reader.truncated:
            logger.warning("executor=%s output truncated at %d bytes", self.name, self.max_output_bytes)

        output, token = self.parse_output(out_reader.text())
        exit_code = int(proc.returncode)
        if exit_code < 0:
            # Killed by a signal we did not send.
            exit_code = 128 + (-exit_code)
        if exit_code != 0:
            stderr = err_reader.text().strip()
            if not output:
                output = stderr
            logger.info("executor=%s exited with %d: %s", self.name, exit_code, stderr[:500])
        return ExecutorResult(
            output=output,
            exit_code=exit_code,
            duration_s=duration_s,
            continuation_token=token,
        )


def _iter_json_lines(stdout: str) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            # CLIs interleave warnings with NDJSON.
            continue
        if isinstance(obj, dict):
            events.append(obj)
    return events


class ClaudeCLIExecutor(SubprocessExecutor):
    supports_continuation = True

    def __init__(self, *, name: str = "claude", command: str = "claude", **kwargs: Any) -> None:
        super().__init__(name=name, command=command, **kwargs)

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        args = [
            self.command,
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
            "--dangerously-skip-permissions",
        ]
        model = options.model or self.default_model
        if model:
            args.extend(["--model", model])
        if options.continuation_token:
            args.extend(["--resume", options.continuation_token])
        args.append(prompt)
        return args

    def parse_output(self, stdout: str) -> tuple[str, str | None]:
        session_id: str | None = None
        result: str | None = None
        texts: list[str] = []
        for event in _iter_json_lines(stdout):
            etype = event.get("type")
            if etype in {"system", "init"} and event.get("session_id"):
                session_id = str(event["session_id"])
            elif etype == "assistant":
                for block in (event.get("message") or {}).get("content") or []:
                    if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                        texts.append(str(block["text"]))
            elif etype == "result":
                if event.get("result"):
                    result = str(event["result"])
                if event.get("session_id"):
                    session_id = str(event["session_id"])
        if result is None:
            result = "\n".join(texts) if texts else stdout.strip()
        return result.strip(), session_id


class GeminiCLIExecutor(SubprocessExecutor):
    uses_memory_hint = True
    supports_continuation = True

    def __init__(self, *, name: str = "gemini", command: str = "gemini", **kwargs: Any) -> None:
        super().__init__(name=name, command=command, **kwargs)

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        args = [self.command, "-p", prompt, "--output-format", "stream-json"]
        model = options.model or self.default_model
        if model:
            args.extend(["-m", model])
        if options.continuation_token:
            args.extend(["--resume", options.continuation_token])
        return args

    def parse_output(self, stdout: str) -> tuple[str, str | None]:
        session_id: str | None = None
        chunks: list[str] = []
        for event in _iter_json_lines(stdout):
            etype = event.get("type")
            if etype == "init" and event.get("session_id"):
                session_id = str(event["session_id"])
            elif etype == "message" and event.get("role") == "assistant" and event.get("content"):
                chunks.append(str(event["content"]))
        if not chunks and not session_id:
            return stdout.strip(), None
        return "".join(chunks).strip(), session_id


class CodexCLIExecutor(SubprocessExecutor):
    uses_memory_hint = True

    def __init__(
        self,
        *,
        name: str = "codex",
        command: str = "codex",
        agent_file: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name=name, command=command, **kwargs)
        self.agent_file = agent_file

    def system_context(self) -> str:
        if not self.agent_file:
            return ""
        path = Path(self.agent_file).expanduser()
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.warning("codex agent file unreadable: %s (%s)", path, e)
            return ""

    def build_args(self, prompt: str, options: ExecuteOptions) -> list[str]:
        args = [self.command, "--dangerously-bypass-approvals-and-sandbox"]
        model = options.model or self.default_model
        if model:
            args.extend(["--model", model])
        args.append(prompt)
        return args
