from __future__ import annotations

import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest


# Ensure `import src...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.config.load_config import AppConfig  # noqa: E402
from tests.stubs import make_config  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "HOMER_SQLITE_PATH",
        "HOMER_CONFIG_PATH",
        "HOMER_ENABLE_WORKER",
        "HOMER_ENABLE_SCHEDULER",
        "HOMER_RECONCILE_ON_STARTUP",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path() -> Iterator[str]:
    with tempfile.TemporaryDirectory() as td:
        yield str(Path(td) / "homer.db")


@pytest.fixture()
def app_config(db_path: str) -> AppConfig:
    return make_config(db_path)
