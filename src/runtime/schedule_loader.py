from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.runtime.cron import InvalidCronError, validate_cron
from src.storage.sqlite_store import ScheduledJobRecord


logger = logging.getLogger(__name__)


class ScheduleFileError(ValueError):
    pass


class ScheduleJobModel(BaseModel):
    """One entry of a schedule file's `jobs` array (camelCase keys accepted)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    cron: str
    query: str = Field(min_length=1)
    lane: str | None = None
    enabled: bool = True
    timeout_ms: int | None = Field(default=None, alias="timeout", gt=0)
    model: str | None = None
    executor: str | None = None
    context_files: list[str] = Field(default_factory=list, alias="contextFiles")
    notify_on_success: bool = Field(default=True, alias="notifyOnSuccess")
    notify_on_failure: bool = Field(default=True, alias="notifyOnFailure")

    @field_validator("cron")
    @classmethod
    def _check_cron(cls, v: str) -> str:
        try:
            return validate_cron(v)
        except InvalidCronError as e:
            raise ValueError(str(e)) from e


@dataclass(frozen=True)
class LoadedSchedule:
    path: str
    jobs: list[ScheduledJobRecord]
    errors: list[str] = field(default_factory=list)


def _to_record(
    job: ScheduleJobModel,
    *,
    source_file: str,
    default_lane: str,
    default_timeout_s: float,
) -> ScheduledJobRecord:
    lane = (job.lane or "").strip() or default_lane
    return ScheduledJobRecord(
        job_id=job.id,
        name=job.name,
        cron=job.cron,
        lane=lane,
        query=job.query,
        executor=job.executor,
        model=job.model,
        timeout_s=job.timeout_ms / 1000.0 if job.timeout_ms else float(default_timeout_s),
        enabled=job.enabled,
        notify_on_success=job.notify_on_success,
        notify_on_failure=job.notify_on_failure,
        context_files=list(job.context_files),
        source_file=source_file,
    )


def parse_schedule(
    raw: Any,
    *,
    source_file: str,
    default_lane: str,
    default_timeout_s: float,
) -> LoadedSchedule:
    """Validate a decoded schedule document.

    Invalid jobs are reported in `errors` and skipped; the rest still load.
    """
    if not isinstance(raw, dict):
        raise ScheduleFileError(f"{source_file}: expected a JSON object")
    jobs_raw = raw.get("jobs")
    if not isinstance(jobs_raw, list):
        raise ScheduleFileError(f"{source_file}: missing 'jobs' array")

    file_lane = str(raw.get("lane") or "").strip() or default_lane
    jobs: list[ScheduledJobRecord] = []
    errors: list[str] = []
    for idx, item in enumerate(jobs_raw):
        try:
            model = ScheduleJobModel.model_validate(item)
        except ValidationError as e:
            ident = item.get("id") if isinstance(item, dict) else None
            errors.append(f"jobs[{idx}] ({ident or '?'}): {e.errors(include_url=False)}")
            continue
        jobs.append(
            _to_record(model, source_file=source_file, default_lane=file_lane, default_timeout_s=default_timeout_s)
        )
    return LoadedSchedule(path=source_file, jobs=jobs, errors=errors)


def load_schedule_file(path: str | Path, *, default_lane: str, default_timeout_s: float) -> LoadedSchedule:
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ScheduleFileError(f"{p}: invalid JSON ({e})") from e
    return parse_schedule(raw, source_file=str(p), default_lane=default_lane, default_timeout_s=default_timeout_s)


class ScheduleSource:
    """Set of schedule files, re-read when their mtime changes."""

    def __init__(self, paths: Sequence[str], *, default_lane: str, default_timeout_s: float) -> None:
        self.paths = [str(p) for p in paths]
        self.default_lane = default_lane
        self.default_timeout_s = float(default_timeout_s)
        self._mtimes: dict[str, float | None] = {}

    def _current_mtimes(self) -> dict[str, float | None]:
        out: dict[str, float | None] = {}
        for p in self.paths:
            try:
                out[p] = os.stat(p).st_mtime
            except FileNotFoundError:
                out[p] = None
        return out

    def changed(self) -> bool:
        return self._current_mtimes() != self._mtimes

    def load(self) -> list[ScheduledJobRecord]:
        """Load every file; the first definition of a job id wins."""
        self._mtimes = self._current_mtimes()
        seen: dict[str, ScheduledJobRecord] = {}
        for p in self.paths:
            if self._mtimes.get(p) is None:
                logger.info("schedule file not found, skipping: %s", p)
                continue
            try:
                loaded = load_schedule_file(p, default_lane=self.default_lane, default_timeout_s=self.default_timeout_s)
            except (OSError, ScheduleFileError) as e:
                logger.error("failed to load schedule file %s: %s", p, e)
                continue
            for err in loaded.errors:
                logger.warning("invalid job in %s: %s", p, err)
            for job in loaded.jobs:
                if job.job_id in seen:
                    logger.warning("duplicate job id %r in %s ignored", job.job_id, p)
                    continue
                seen[job.job_id] = job
        return list(seen.values())
