"""
Polling scheduler.

Every tick reloads the pipeline definitions from disk, so edits and new
pipeline directories are picked up without a restart. Each due pipeline runs
on its own thread; the loop never waits for a pipeline before sleeping and
polling again.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from stagehand.errors import InvalidPipelineFolder, StagehandError
from stagehand.executor import Executor
from stagehand.pipeline import PipelineSpec, pipelines_by_id, read_pipeline_dir, split_results
from stagehand.state import LockResult, PipelineLock, StateStore

logger = logging.getLogger(__name__)
UTC = timezone.utc

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class TickOutcome(str, Enum):
    SKIPPED_NOT_DUE = "skipped-not-due"
    SKIPPED_ALREADY_ACTIVE = "skipped-already-active"
    STARTED = "started"
    FAILED = "failed"


class Scheduler:
    def __init__(
        self,
        pipelines_root: Path,
        refresh_seconds: float,
        executor: Optional[Executor] = None,
        store: Optional[StateStore] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.pipelines_root = Path(pipelines_root)
        self.refresh_seconds = refresh_seconds
        self.executor = executor or Executor()
        self.store = store or StateStore()
        self.clock = clock
        self.sleep = sleep
        self._threads: List[threading.Thread] = []
        self._threads_lock = threading.Lock()

    def run_forever(self) -> None:
        logger.info(
            "Scheduler started (pipelines=%s, refresh_seconds=%s)",
            self.pipelines_root,
            self.refresh_seconds,
        )
        # A stale active flag from a killed process is ignored on the first tick only.
        first_tick = True
        while True:
            try:
                self.tick(first_tick)
            except Exception:
                logger.exception("Scheduler tick failed")
            first_tick = False
            self.sleep(self.refresh_seconds)

    def load_pipelines(self) -> List[PipelineSpec]:
        try:
            results = read_pipeline_dir(self.pipelines_root)
        except InvalidPipelineFolder as exc:
            logger.error("%s (%s)", exc, exc.__cause__)
            return []
        pipelines, errors = split_results(results)
        for error in errors:
            if error.__cause__ is not None:
                logger.error("%s (%s)", error, error.__cause__)
            else:
                logger.error("%s", error)
        for pipeline in pipelines:
            logger.debug("Pipeline loaded: %s", pipeline.id)
        return pipelines

    def tick(self, first_tick: bool = False) -> Dict[str, TickOutcome]:
        logger.debug("Reloading pipelines")
        pipelines = self.load_pipelines()
        if not pipelines:
            logger.debug("No pipeline loaded")
        outcomes: Dict[str, TickOutcome] = {}
        for pipeline in pipelines:
            try:
                outcomes[pipeline.id] = self.evaluate(pipeline, first_tick)
            except Exception:
                logger.exception("Error evaluating pipeline %s", pipeline.id)
                outcomes[pipeline.id] = TickOutcome.FAILED
        return outcomes

    def evaluate(self, pipeline: PipelineSpec, first_tick: bool = False) -> TickOutcome:
        lock = PipelineLock(self.store, pipeline)
        result = lock.acquire(self.clock(), ignore_active=first_tick)
        if result is LockResult.NOT_DUE:
            return TickOutcome.SKIPPED_NOT_DUE
        if result is LockResult.ALREADY_ACTIVE:
            return TickOutcome.SKIPPED_ALREADY_ACTIVE
        self.launch(pipeline, lock)
        return TickOutcome.STARTED

    def launch(self, pipeline: PipelineSpec, lock: PipelineLock) -> threading.Thread:
        thread = threading.Thread(
            target=self.run_pipeline,
            args=(pipeline, lock),
            name=f"stagehand-{pipeline.id}",
            daemon=True,
        )
        with self._threads_lock:
            self._threads = [item for item in self._threads if item.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    def run_pipeline(self, pipeline: PipelineSpec, lock: PipelineLock) -> bool:
        started_at = self.clock()
        logger.info("Running pipeline: %s", pipeline.id)
        success = False
        try:
            self.executor.run(pipeline)
            success = True
        except StagehandError as exc:
            logger.error("%s", exc)
        except Exception:  # pragma: no cover - task boundary
            logger.exception("Unexpected error running pipeline %s", pipeline.id)
        finally:
            lock.release(success, started_at)
        logger.info(
            "Pipeline %s finished with success=%s in %.2fs",
            pipeline.id,
            success,
            (self.clock() - started_at).total_seconds(),
        )
        return success

    def run_once(self, pipeline_id: str, force: bool = False) -> bool:
        """Run one pipeline now, in the foreground, whether or not it is due."""
        pipeline = pipelines_by_id(self.load_pipelines()).get(pipeline_id)
        if pipeline is None:
            raise StagehandError(f'Unknown pipeline "{pipeline_id}".')
        lock = PipelineLock(self.store, pipeline)
        result = lock.acquire(self.clock(), ignore_active=force, require_due=False)
        if result is LockResult.ALREADY_ACTIVE:
            logger.warning(
                "Pipeline %s is marked active; use --force to run it anyway.",
                pipeline_id,
            )
            return False
        return self.run_pipeline(pipeline, lock)

    def active_threads(self) -> List[threading.Thread]:
        with self._threads_lock:
            return [item for item in self._threads if item.is_alive()]

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        threads = self.active_threads()
        if not wait or not threads:
            return
        logger.info("Waiting for %s running pipeline(s) to finish", len(threads))
        for thread in threads:
            thread.join(timeout=timeout)
