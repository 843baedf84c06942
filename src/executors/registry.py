from __future__ import annotations

from typing import Iterable

from src.config.load_config import AppConfig, ExecutorConfig
from src.executors.base import Executor
from src.executors.cli import ClaudeCLIExecutor, CodexCLIExecutor, GeminiCLIExecutor
from src.executors.dry_run import DryRunExecutor
from src.executors.openai_compat import OpenAICompatExecutor


class UnknownExecutorError(KeyError):
    pass


def build_executor(cfg: ExecutorConfig) -> Executor:
    if cfg.kind == "claude_cli":
        return ClaudeCLIExecutor(name=cfg.name, command=cfg.command or "claude", model=cfg.model)
    if cfg.kind == "gemini_cli":
        return GeminiCLIExecutor(name=cfg.name, command=cfg.command or "gemini", model=cfg.model)
    if cfg.kind == "codex_cli":
        return CodexCLIExecutor(
            name=cfg.name,
            command=cfg.command or "codex",
            model=cfg.model,
            agent_file=cfg.agent_file,
        )
    if cfg.kind == "openai_compat":
        return OpenAICompatExecutor(
            name=cfg.name,
            base_url=cfg.base_url,
            model=cfg.model,
            timeout_s=cfg.timeout_s,
            temperature=float(cfg.options.get("temperature", 0.2)),
            system_prompt=str(cfg.options.get("system_prompt", "")),
        )
    if cfg.kind == "dry_run":
        return DryRunExecutor(
            name=cfg.name,
            model=cfg.model or "dry-run",
            delay_s=float(cfg.options.get("delay_s", 0.0)),
        )
    raise ValueError(f"Unsupported executor kind: {cfg.kind!r}")


class ExecutorRegistry:
    """Name -> executor instance. New backends register here; callers never branch on kind."""

    def __init__(self, executors: Iterable[Executor] = (), *, default: str | None = None) -> None:
        self._by_name: dict[str, Executor] = {}
        for ex in executors:
            self.register(ex)
        self.default = default

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "ExecutorRegistry":
        return cls(
            (build_executor(ec) for ec in cfg.executors.values()),
            default=cfg.default_executor,
        )

    def register(self, executor: Executor) -> None:
        self._by_name[executor.name] = executor

    def get(self, name: str) -> Executor:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownExecutorError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def names(self) -> list[str]:
        return sorted(self._by_name)
