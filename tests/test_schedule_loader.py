from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from src.runtime.schedule_loader import ScheduleFileError, ScheduleSource, load_schedule_file, parse_schedule


def _write(path: Path, doc: dict) -> Path:
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


def test_parse_applies_defaults_and_skips_invalid_jobs() -> None:
    doc = {
        "version": "1",
        "lane": "work",
        "jobs": [
            {"id": "ok", "name": "OK", "cron": "*/5 * * * *", "query": "ping"},
            {"id": "bad-cron", "name": "Bad", "cron": "whenever", "query": "x"},
            {"id": "no-query", "name": "Q", "cron": "* * * * *"},
            {
                "id": "full",
                "name": "Full",
                "cron": "0 8 * * 1-5",
                "query": "brief",
                "lane": "life",
                "timeout": 30000,
                "executor": "gemini",
                "enabled": False,
                "notifyOnSuccess": False,
                "contextFiles": ["notes.md"],
            },
        ],
    }
    loaded = parse_schedule(doc, source_file="s.json", default_lane="default", default_timeout_s=600)
    assert [j.job_id for j in loaded.jobs] == ["ok", "full"]
    assert len(loaded.errors) == 2

    ok, full = loaded.jobs
    assert ok.lane == "work"
    assert ok.timeout_s == 600
    assert ok.enabled and ok.notify_on_success and ok.notify_on_failure
    assert ok.source_file == "s.json"

    assert full.lane == "life"
    assert full.timeout_s == 30.0
    assert full.executor == "gemini"
    assert not full.enabled
    assert not full.notify_on_success
    assert full.context_files == ["notes.md"]


def test_file_lane_falls_back_to_default() -> None:
    doc = {"jobs": [{"id": "a", "name": "A", "cron": "* * * * *", "query": "q"}]}
    loaded = parse_schedule(doc, source_file="s.json", default_lane="default", default_timeout_s=600)
    assert loaded.jobs[0].lane == "default"


def test_missing_jobs_array_is_file_error(tmp_path: Path) -> None:
    with pytest.raises(ScheduleFileError):
        load_schedule_file(_write(tmp_path / "s.json", {"version": "1"}), default_lane="d", default_timeout_s=1)
    (tmp_path / "broken.json").write_text("{nope", encoding="utf-8")
    with pytest.raises(ScheduleFileError):
        load_schedule_file(tmp_path / "broken.json", default_lane="d", default_timeout_s=1)


def test_source_detects_changes_and_dedupes(tmp_path: Path) -> None:
    a = _write(tmp_path / "a.json", {"jobs": [{"id": "x", "name": "A", "cron": "* * * * *", "query": "from a"}]})
    b = _write(tmp_path / "b.json", {"jobs": [{"id": "x", "name": "B", "cron": "* * * * *", "query": "from b"}]})
    source = ScheduleSource([str(a), str(b), str(tmp_path / "missing.json")], default_lane="d", default_timeout_s=60)

    assert source.changed()
    jobs = source.load()
    assert [j.query for j in jobs] == ["from a"]
    assert not source.changed()

    _write(a, {"jobs": []})
    st = os.stat(a)
    os.utime(a, (st.st_atime, st.st_mtime + 10))
    assert source.changed()
    assert [j.query for j in source.load()] == ["from b"]
