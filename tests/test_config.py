from __future__ import annotations

from pathlib import Path

import pytest

from src.config.load_config import ConfigError, load_app_config, parse_app_config, repo_root


def _write(tmp_path: Path, text: str) -> Path:
    cfg_dir = tmp_path / "config"
    cfg_dir.mkdir(exist_ok=True)
    path = cfg_dir / "app.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_repo_default_config_loads() -> None:
    cfg = load_app_config(repo_root() / "config" / "default.toml")
    assert cfg.default_lane == "default"
    assert cfg.default_executor == "claude"
    assert {"claude", "gemini", "codex", "openai", "dry_run"} <= set(cfg.executors)
    assert cfg.executors["gemini"].model == "gemini-2.5-pro"
    assert cfg.lane("work").executor == "claude"
    assert cfg.queue.max_attempts == 3
    assert cfg.scheduler.schedule_files[0].endswith("default.json")
    assert Path(cfg.daemon.db_path).is_absolute()


def test_minimal_config_fills_defaults(tmp_path: Path) -> None:
    cfg = load_app_config(_write(tmp_path, "[daemon]\n"))
    assert cfg.default_executor == "dry_run"
    assert "default" in cfg.lanes
    assert cfg.daemon.db_path == str((tmp_path / "data" / "homer.db").resolve())
    assert cfg.daemon.cancel_grace_s == 10.0
    assert cfg.queue.backoff_max_s == 300.0
    assert cfg.scheduler.default_timeout_s == 600.0
    # Lanes that are not configured still resolve.
    assert cfg.lane("adhoc").executor is None


def test_executor_extras_land_in_options(tmp_path: Path) -> None:
    cfg = load_app_config(
        _write(
            tmp_path,
            """
[executors.local]
kind = "openai_compat"
base_url = "http://localhost:8000/v1"
temperature = 0.2
""",
        )
    )
    local = cfg.executors["local"]
    assert local.base_url == "http://localhost:8000/v1"
    assert local.options == {"temperature": 0.2}


@pytest.mark.parametrize(
    "text",
    [
        "[executors.x]\nkind = \"telepathy\"\n",
        "[lanes.work]\nexecutor = \"missing\"\n",
        "[daemon]\ndefault_executor = \"missing\"\n",
        "[queue]\nmax_attempts = 0\n",
        "[daemon]\ncancel_grace_s = -1\n",
        "[scheduler]\nenabled = \"yes\"\n",
    ],
)
def test_invalid_config_is_rejected(tmp_path: Path, text: str) -> None:
    with pytest.raises(ConfigError):
        load_app_config(_write(tmp_path, text))


def test_invalid_toml_and_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_app_config(_write(tmp_path, "[daemon\n"))
    with pytest.raises(ConfigError):
        load_app_config(tmp_path / "nope.toml")


def test_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOMER_SQLITE_PATH", str(tmp_path / "other.db"))
    monkeypatch.setenv("HOMER_ENABLE_SCHEDULER", "0")
    monkeypatch.setenv("HOMER_ENABLE_WORKER", "off")
    cfg = parse_app_config({}, base_dir=tmp_path / "config")
    assert cfg.daemon.db_path == str(tmp_path / "other.db")
    assert cfg.scheduler.enabled is False
    assert cfg.queue.enabled is False


def test_config_path_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = _write(tmp_path, "[daemon]\ndefault_lane = \"inbox\"\n")
    monkeypatch.setenv("HOMER_CONFIG_PATH", str(path))
    assert load_app_config().default_lane == "inbox"
