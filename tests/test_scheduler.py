from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import pytest

from stagehand.errors import PipelineExecutionFailed, StagehandError
from stagehand.pipeline import PipelineSpec
from stagehand.scheduler import Scheduler, TickOutcome
from stagehand.state import StateStore

UTC = timezone.utc
NOW = datetime(2019, 7, 1, 12, 0, tzinfo=UTC)


class RecordingExecutor:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.ran: List[str] = []

    def run(self, pipeline: PipelineSpec) -> list:
        self.ran.append(pipeline.id)
        if self.fail:
            raise PipelineExecutionFailed(pipeline.id)
        return []


class StopLoop(Exception):
    pass


def _write_state(pipeline_path: Path, active: bool, timestamp: str) -> None:
    (pipeline_path.parent / "state.json").write_text(
        json.dumps({"id": pipeline_path.parent.name, "active": active, "timestamp": timestamp}),
        encoding="utf-8",
    )


def _read_state(pipeline_path: Path) -> dict:
    return json.loads((pipeline_path.parent / "state.json").read_text(encoding="utf-8"))


def _scheduler(root: Path, executor: RecordingExecutor) -> Scheduler:
    return Scheduler(
        pipelines_root=root,
        refresh_seconds=60,
        executor=executor,
        store=StateStore(),
        clock=lambda: NOW,
    )


def test_fresh_pipeline_starts_and_records_success(make_pipeline, pipelines_root: Path) -> None:
    path = make_pipeline(name="fresh")
    executor = RecordingExecutor()
    scheduler = _scheduler(pipelines_root, executor)

    outcomes = scheduler.tick()
    scheduler.shutdown(wait=True)

    assert outcomes == {"fresh": TickOutcome.STARTED}
    assert executor.ran == ["fresh"]
    state = _read_state(path)
    assert state["active"] is False
    assert state["timestamp"] == NOW.isoformat()


def test_failed_run_clears_active_but_keeps_timestamp(make_pipeline, pipelines_root: Path) -> None:
    path = make_pipeline(name="flaky")
    _write_state(path, active=False, timestamp="2019-06-01T00:00:00Z")
    scheduler = _scheduler(pipelines_root, RecordingExecutor(fail=True))

    assert scheduler.tick() == {"flaky": TickOutcome.STARTED}
    scheduler.shutdown(wait=True)

    state = _read_state(path)
    assert state["active"] is False
    assert state["timestamp"] == "2019-06-01T00:00:00+00:00"


def test_pipeline_not_due_is_skipped(make_pipeline, pipelines_root: Path) -> None:
    path = make_pipeline(name="daily", expression="0 0 * * *")
    _write_state(path, active=False, timestamp="2019-07-01T00:00:00Z")
    executor = RecordingExecutor()
    scheduler = _scheduler(pipelines_root, executor)

    assert scheduler.tick() == {"daily": TickOutcome.SKIPPED_NOT_DUE}
    assert executor.ran == []


def test_active_pipeline_is_not_started_twice(make_pipeline, pipelines_root: Path) -> None:
    path = make_pipeline(name="busy")
    _write_state(path, active=True, timestamp="2019-06-01T00:00:00Z")
    executor = RecordingExecutor()
    scheduler = _scheduler(pipelines_root, executor)

    assert scheduler.tick(first_tick=False) == {"busy": TickOutcome.SKIPPED_ALREADY_ACTIVE}
    assert executor.ran == []
    assert _read_state(path)["active"] is True


def test_first_tick_overrides_stale_active_flag(make_pipeline, pipelines_root: Path) -> None:
    path = make_pipeline(name="stale")
    _write_state(path, active=True, timestamp="2019-06-01T00:00:00Z")
    executor = RecordingExecutor()
    scheduler = _scheduler(pipelines_root, executor)

    assert scheduler.tick(first_tick=True) == {"stale": TickOutcome.STARTED}
    scheduler.shutdown(wait=True)

    assert executor.ran == ["stale"]
    assert _read_state(path) == {"id": "stale", "active": False, "timestamp": NOW.isoformat()}


def test_invalid_pipeline_is_skipped_and_others_run(make_pipeline, pipelines_root: Path) -> None:
    make_pipeline(name="good")
    make_pipeline(name="bad", expression="not an expression")
    executor = RecordingExecutor()
    scheduler = _scheduler(pipelines_root, executor)

    outcomes = scheduler.tick()
    scheduler.shutdown(wait=True)

    assert outcomes == {"good": TickOutcome.STARTED}
    assert executor.ran == ["good"]


def test_missing_root_yields_empty_tick(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path / "missing", RecordingExecutor())
    assert scheduler.tick() == {}


def test_run_forever_ignores_active_on_first_tick_only(pipelines_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: List[bool] = []
    sleeps: List[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 3:
            raise StopLoop()

    scheduler = Scheduler(pipelines_root, refresh_seconds=7, executor=RecordingExecutor(), sleep=fake_sleep)
    monkeypatch.setattr(scheduler, "tick", lambda first_tick=False: seen.append(first_tick) or {})

    with pytest.raises(StopLoop):
        scheduler.run_forever()

    assert seen == [True, False, False]
    assert sleeps == [7, 7, 7]


def test_run_once_runs_even_when_not_due(make_pipeline, pipelines_root: Path) -> None:
    path = make_pipeline(name="yearly", expression="0 0 1 1 *")
    _write_state(path, active=False, timestamp="2019-07-01T11:00:00Z")
    executor = RecordingExecutor()
    scheduler = _scheduler(pipelines_root, executor)

    assert scheduler.run_once("yearly") is True
    assert executor.ran == ["yearly"]
    assert _read_state(path)["timestamp"] == NOW.isoformat()


def test_run_once_reports_failure(make_pipeline, pipelines_root: Path) -> None:
    make_pipeline(name="broken")
    scheduler = _scheduler(pipelines_root, RecordingExecutor(fail=True))
    assert scheduler.run_once("broken") is False


def test_run_once_respects_active_flag_unless_forced(make_pipeline, pipelines_root: Path) -> None:
    path = make_pipeline(name="held")
    _write_state(path, active=True, timestamp="2019-06-01T00:00:00Z")
    executor = RecordingExecutor()
    scheduler = _scheduler(pipelines_root, executor)

    assert scheduler.run_once("held") is False
    assert executor.ran == []

    assert scheduler.run_once("held", force=True) is True
    assert executor.ran == ["held"]
    assert _read_state(path)["active"] is False


def test_run_once_unknown_pipeline(pipelines_root: Path) -> None:
    scheduler = _scheduler(pipelines_root, RecordingExecutor())
    with pytest.raises(StagehandError, match='Unknown pipeline "nope"'):
        scheduler.run_once("nope")


def test_pipelines_run_for_real_through_the_executor(make_pipeline, pipelines_root: Path) -> None:
    path = make_pipeline(name="real", scripts={"mark.sh": 'touch "$(dirname "$0")/done"\n'})
    scheduler = Scheduler(pipelines_root, refresh_seconds=60, clock=lambda: NOW)

    assert scheduler.tick() == {"real": TickOutcome.STARTED}
    scheduler.shutdown(wait=True)

    assert (path.parent / "done").exists()
    assert scheduler.active_threads() == []


def test_unreadable_timestamp_does_not_block_other_pipelines(make_pipeline, pipelines_root: Path) -> None:
    ancient = make_pipeline(name="a-ancient")
    _write_state(ancient, active=False, timestamp="0001-01-01T00:00:00+01:00")
    make_pipeline(name="b-good")
    executor = RecordingExecutor()
    scheduler = _scheduler(pipelines_root, executor)

    outcomes = scheduler.tick()
    scheduler.shutdown(wait=True)

    assert outcomes == {"a-ancient": TickOutcome.STARTED, "b-good": TickOutcome.STARTED}
    assert sorted(executor.ran) == ["a-ancient", "b-good"]
    assert _read_state(ancient)["timestamp"] == NOW.isoformat()


class BrokenStore(StateStore):
    def __init__(self, broken_id: str):
        self.broken_id = broken_id

    def load(self, pipeline: PipelineSpec):
        if pipeline.id == self.broken_id:
            raise RuntimeError("disk on fire")
        return super().load(pipeline)


def test_error_evaluating_one_pipeline_is_contained(make_pipeline, pipelines_root: Path) -> None:
    make_pipeline(name="a-broken")
    make_pipeline(name="b-good")
    executor = RecordingExecutor()
    scheduler = Scheduler(
        pipelines_root,
        refresh_seconds=60,
        executor=executor,
        store=BrokenStore("a-broken"),
        clock=lambda: NOW,
    )

    outcomes = scheduler.tick()
    scheduler.shutdown(wait=True)

    assert outcomes == {"a-broken": TickOutcome.FAILED, "b-good": TickOutcome.STARTED}
    assert executor.ran == ["b-good"]


def test_run_forever_keeps_polling_after_a_failed_tick(pipelines_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ticks: List[bool] = []

    def flaky_tick(first_tick: bool = False) -> dict:
        ticks.append(first_tick)
        if len(ticks) == 1:
            raise RuntimeError("tick exploded")
        return {}

    def fake_sleep(seconds: float) -> None:
        if len(ticks) == 2:
            raise StopLoop()

    scheduler = Scheduler(pipelines_root, refresh_seconds=1, executor=RecordingExecutor(), sleep=fake_sleep)
    monkeypatch.setattr(scheduler, "tick", flaky_tick)

    with pytest.raises(StopLoop):
        scheduler.run_forever()

    assert ticks == [True, False]
