from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from src.utils.cancel import CancellationToken


@dataclass(frozen=True)
class ExecuteOptions:
    cwd: str | None = None
    continuation_token: str | None = None
    model: str | None = None
    cancel: CancellationToken = field(default_factory=CancellationToken)


@dataclass(frozen=True)
class ExecutorResult:
    output: str
    exit_code: int
    duration_s: float
    continuation_token: str | None = None


class Executor(ABC):
    """Interface every backend implements.

    `execute` blocks until the backend finishes. Implementations must observe
    `options.cancel` and return promptly (raising `CancellationError`) once it
    is set.
    """

    name: str = "executor"
    default_model: str | None = None
    uses_memory_hint: bool = False
    supports_continuation: bool = False

    def system_context(self) -> str:
        return ""

    @abstractmethod
    def execute(self, prompt: str, options: ExecuteOptions) -> ExecutorResult:
        raise NotImplementedError
