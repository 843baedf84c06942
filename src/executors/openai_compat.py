from __future__ import annotations

import os
import time
from typing import Any

from src.executors.base import ExecuteOptions, Executor, ExecutorResult
from src.runtime.errors import EXIT_OK, ExecutorError


class LLMConfigError(ExecutorError):
    pass


class OpenAICompatExecutor(Executor):
    """Executor backed by any OpenAI-compatible chat completions endpoint.

    We keep this small on purpose:
    - providers/models are swapped via OpenAI-compatible gateways
    - there is no server-side session, so no continuation token
    - the HTTP call cannot be interrupted; cancellation is observed before the
      request and again when it returns
    """

    uses_memory_hint = True

    @staticmethod
    def _env_bool(name: str, default: bool = False) -> bool:
        raw = os.getenv(name)
        if raw is None:
            return default
        v = raw.strip().lower()
        if v in {"1", "true", "yes", "y", "on"}:
            return True
        if v in {"0", "false", "no", "n", "off"}:
            return False
        return default

    def __init__(
        self,
        *,
        name: str = "openai",
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
        temperature: float = 0.2,
        system_prompt: str = "",
    ) -> None:
        self.name = name
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.default_model = model or os.getenv("HOMER_OPENAI_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.timeout_s = timeout_s
        self.temperature = float(temperature)
        self.system_prompt = system_prompt
        # DashScope-style hybrid thinking; only sent when explicitly enabled.
        self.enable_thinking = self._env_bool("HOMER_LLM_ENABLE_THINKING", False)
        self._client: Any = None

    def _get_client(self) -> Any:
        # Built on first use so a daemon without OPENAI_API_KEY can still start.
        if self._client is not None:
            return self._client
        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        from openai import OpenAI

        self._client = OpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s)
        return self._client

    def system_context(self) -> str:
        return self.system_prompt

    def execute(self, prompt: str, options: ExecuteOptions) -> ExecutorResult:
        options.cancel.raise_if_cancelled()

        client = self._get_client()
        payload: dict[str, Any] = {
            "model": options.model or self.default_model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
        }
        if self.enable_thinking:
            payload["extra_body"] = {"enable_thinking": True}

        started = time.monotonic()
        try:
            resp = client.chat.completions.create(**payload)
        except Exception as e:
            raise ExecutorError(
                f"{self.name} request failed: {e}",
                details={"type": type(e).__name__, "base_url": self.base_url},
            ) from e

        options.cancel.raise_if_cancelled()

        content = (resp.choices[0].message.content or "").strip() if resp.choices else ""
        return ExecutorResult(
            output=content,
            exit_code=EXIT_OK,
            duration_s=time.monotonic() - started,
        )
