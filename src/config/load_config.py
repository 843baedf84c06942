from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


DEFAULT_LANE = "default"
DEFAULT_JOB_TIMEOUT_S = 600.0
EXECUTOR_KINDS = ("claude_cli", "gemini_cli", "codex_cli", "openai_compat", "dry_run")


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_opt_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _positive(value: float, *, key: str) -> float:
    if value <= 0:
        raise ConfigError(f"{key} must be > 0, got {value!r}")
    return value


def _resolve_path(value: Any, *, key: str, base_dir: Path) -> Path:
    p = Path(_as_str(value, key=key)).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclass(frozen=True)
class DaemonConfig:
    db_path: str
    max_concurrent_runs: int
    cancel_grace_s: float
    persist_retries: int


@dataclass(frozen=True)
class LaneConfig:
    name: str
    executor: str | None = None
    model: str | None = None
    cwd: str | None = None


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    tick_interval_s: float
    default_timeout_s: float
    schedule_files: tuple[str, ...]


@dataclass(frozen=True)
class QueueConfig:
    enabled: bool
    poll_interval_s: float
    max_attempts: int
    backoff_base_s: float
    backoff_max_s: float
    busy_lane_delay_s: float


@dataclass(frozen=True)
class ExecutorConfig:
    """One configured backend. `kind` selects the implementation class."""

    name: str
    kind: str
    command: str | None = None
    model: str | None = None
    agent_file: str | None = None
    base_url: str | None = None
    timeout_s: float | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AppConfig:
    daemon: DaemonConfig
    default_lane: str
    lanes: dict[str, LaneConfig]
    scheduler: SchedulerConfig
    queue: QueueConfig
    executors: dict[str, ExecutorConfig]
    default_executor: str

    def lane(self, name: str) -> LaneConfig:
        return self.lanes.get(name) or LaneConfig(name=name)


def repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    raw = os.getenv("HOMER_CONFIG_PATH")
    if raw:
        return Path(raw).expanduser().resolve()
    local = Path("config/default.toml").resolve()
    if local.exists():
        return local
    return repo_root() / "config" / "default.toml"


def _parse_executor(name: str, raw: dict[str, Any], *, base_dir: Path) -> ExecutorConfig:
    kind = _as_str(raw.get("kind", name), key=f"executors.{name}.kind").strip()
    if kind not in EXECUTOR_KINDS:
        raise ConfigError(f"Unknown executor kind for executors.{name}: {kind!r} (expected one of {EXECUTOR_KINDS})")
    agent_file = raw.get("agent_file")
    timeout_s = raw.get("timeout_s")
    known = {"kind", "command", "model", "agent_file", "base_url", "timeout_s"}
    return ExecutorConfig(
        name=name,
        kind=kind,
        command=_as_opt_str(raw.get("command")),
        model=_as_opt_str(raw.get("model")),
        agent_file=str(_resolve_path(agent_file, key=f"executors.{name}.agent_file", base_dir=base_dir))
        if agent_file
        else None,
        base_url=_as_opt_str(raw.get("base_url")),
        timeout_s=_positive(_as_float(timeout_s, key=f"executors.{name}.timeout_s"), key=f"executors.{name}.timeout_s")
        if timeout_s is not None
        else None,
        options={k: v for k, v in raw.items() if k not in known},
    )


def _parse_lane(name: str, raw: dict[str, Any], *, executors: dict[str, ExecutorConfig]) -> LaneConfig:
    executor = _as_opt_str(raw.get("executor"))
    if executor is not None and executor not in executors:
        raise ConfigError(f"lanes.{name}.executor refers to unknown executor {executor!r}")
    return LaneConfig(
        name=name,
        executor=executor,
        model=_as_opt_str(raw.get("model")),
        cwd=_as_opt_str(raw.get("cwd")),
    )


def parse_app_config(raw: dict[str, Any], *, base_dir: Path) -> AppConfig:
    daemon = raw.get("daemon", {})
    scheduler = raw.get("scheduler", {})
    queue = raw.get("queue", {})
    lanes_raw = raw.get("lanes", {})
    executors_raw = raw.get("executors", {})

    executors = {
        str(name): _parse_executor(str(name), dict(cfg or {}), base_dir=base_dir)
        for name, cfg in executors_raw.items()
    }
    if "dry_run" not in executors:
        executors["dry_run"] = ExecutorConfig(name="dry_run", kind="dry_run")

    default_executor = _as_str(daemon.get("default_executor", "dry_run"), key="daemon.default_executor")
    if default_executor not in executors:
        raise ConfigError(f"daemon.default_executor refers to unknown executor {default_executor!r}")

    lanes = {
        str(name): _parse_lane(str(name), dict(cfg or {}), executors=executors)
        for name, cfg in lanes_raw.items()
    }
    default_lane = _as_str(daemon.get("default_lane", DEFAULT_LANE), key="daemon.default_lane")
    lanes.setdefault(default_lane, LaneConfig(name=default_lane))

    db_path = os.getenv("HOMER_SQLITE_PATH") or str(
        _resolve_path(daemon.get("db_path", "data/homer.db"), key="daemon.db_path", base_dir=base_dir.parent)
    )

    schedule_files = tuple(
        str(_resolve_path(p, key="scheduler.schedule_files", base_dir=base_dir.parent))
        for p in (scheduler.get("schedule_files") or [])
    )

    max_attempts = _as_int(queue.get("max_attempts", 3), key="queue.max_attempts")
    if max_attempts < 1:
        raise ConfigError(f"queue.max_attempts must be >= 1, got {max_attempts}")
    max_concurrent = _as_int(daemon.get("max_concurrent_runs", 4), key="daemon.max_concurrent_runs")
    if max_concurrent < 1:
        raise ConfigError(f"daemon.max_concurrent_runs must be >= 1, got {max_concurrent}")

    return AppConfig(
        daemon=DaemonConfig(
            db_path=db_path,
            max_concurrent_runs=max_concurrent,
            cancel_grace_s=_positive(
                _as_float(daemon.get("cancel_grace_s", 10.0), key="daemon.cancel_grace_s"), key="daemon.cancel_grace_s"
            ),
            persist_retries=max(1, _as_int(daemon.get("persist_retries", 3), key="daemon.persist_retries")),
        ),
        default_lane=default_lane,
        lanes=lanes,
        scheduler=SchedulerConfig(
            enabled=_env_bool(
                "HOMER_ENABLE_SCHEDULER",
                _as_bool(scheduler.get("enabled", True), key="scheduler.enabled"),
            ),
            tick_interval_s=_positive(
                _as_float(scheduler.get("tick_interval_s", 30.0), key="scheduler.tick_interval_s"),
                key="scheduler.tick_interval_s",
            ),
            default_timeout_s=_positive(
                _as_float(scheduler.get("default_timeout_s", DEFAULT_JOB_TIMEOUT_S), key="scheduler.default_timeout_s"),
                key="scheduler.default_timeout_s",
            ),
            schedule_files=schedule_files,
        ),
        queue=QueueConfig(
            enabled=_env_bool("HOMER_ENABLE_WORKER", _as_bool(queue.get("enabled", True), key="queue.enabled")),
            poll_interval_s=_positive(
                _as_float(queue.get("poll_interval_s", 1.0), key="queue.poll_interval_s"), key="queue.poll_interval_s"
            ),
            max_attempts=max_attempts,
            backoff_base_s=_positive(
                _as_float(queue.get("backoff_base_s", 1.0), key="queue.backoff_base_s"), key="queue.backoff_base_s"
            ),
            backoff_max_s=_positive(
                _as_float(queue.get("backoff_max_s", 300.0), key="queue.backoff_max_s"), key="queue.backoff_max_s"
            ),
            busy_lane_delay_s=_positive(
                _as_float(queue.get("busy_lane_delay_s", 5.0), key="queue.busy_lane_delay_s"),
                key="queue.busy_lane_delay_s",
            ),
        ),
        executors=executors,
        default_executor=default_executor,
    )


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e

    return parse_app_config(raw, base_dir=cfg_path.parent)
