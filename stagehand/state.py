"""
Per-pipeline run state.

``state.json`` sits beside ``pipeline.json`` and records whether a run is in
flight (``active``) and when the last fully successful run started
(``timestamp``). The ``active`` flag is the only guard against overlapping
runs of one pipeline, so it is written to disk before a run starts and again
as soon as the run ends.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from stagehand.errors import InvalidStateFile
from stagehand.interval import EPOCH, ensure_aware_utc
from stagehand.pipeline import PipelineSpec

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    id: str
    path: Path
    active: bool = False
    timestamp: datetime = EPOCH

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "active": self.active,
            "timestamp": self.timestamp.isoformat(),
        }


def parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be an ISO-8601 string, got {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware_utc(datetime.fromisoformat(text))


class StateStore:
    """Reads and writes ``RunState`` records next to pipeline definitions."""

    def load(self, pipeline: PipelineSpec) -> RunState:
        state_path = pipeline.state_path
        try:
            state = self.read_file(state_path)
        except InvalidStateFile as exc:
            logger.warning("%s", exc)
            logger.warning("State created: %s", pipeline.id)
            return RunState(id=pipeline.id, path=state_path)
        logger.debug("State loaded: %s", pipeline.id)
        return state

    def read_file(self, state_path: Path) -> RunState:
        try:
            payload = json.loads(Path(state_path).read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("state must be a JSON object")
            active = payload.get("active", False)
            if not isinstance(active, bool):
                raise ValueError("active must be true or false")
            timestamp = payload.get("timestamp")
            return RunState(
                id=str(payload.get("id", "")),
                path=Path(state_path),
                active=active,
                timestamp=EPOCH if timestamp is None else parse_timestamp(timestamp),
            )
        except (OSError, UnicodeDecodeError, ValueError, OverflowError) as exc:
            raise InvalidStateFile(str(state_path)) from exc

    def persist(self, state: RunState) -> None:
        try:
            data = json.dumps(state.to_payload(), indent=2)
            Path(state.path).write_text(data + "\n", encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            raise InvalidStateFile(str(state.path)) from exc
        logger.debug("State exported: %s", state.id)

    def persist_quietly(self, state: RunState) -> bool:
        try:
            self.persist(state)
        except InvalidStateFile as exc:
            logger.error("%s (%s)", exc, exc.__cause__)
            return False
        return True


class LockResult(str, Enum):
    ACQUIRED = "acquired"
    NOT_DUE = "not-due"
    ALREADY_ACTIVE = "already-active"


class PipelineLock:
    """
    Advisory lock over one pipeline's ``active`` flag.

    ``acquire`` succeeds only when the pipeline is due and not already
    running. ``ignore_active`` lets a stale ``active=True`` left behind by a
    killed process through; the scheduler passes it on its first tick only.
    ``require_due=False`` skips the schedule check for manual runs.
    """

    def __init__(self, store: StateStore, pipeline: PipelineSpec):
        self.store = store
        self.pipeline = pipeline
        self.state: Optional[RunState] = None

    @property
    def held(self) -> bool:
        return self.state is not None

    def acquire(
        self,
        now: datetime,
        ignore_active: bool = False,
        require_due: bool = True,
    ) -> LockResult:
        if self.state is not None:
            raise RuntimeError(f"Lock for {self.pipeline.id} is already held")
        state = self.store.load(self.pipeline)
        if require_due and not self.pipeline.interval.should_run(state.timestamp, now):
            return LockResult.NOT_DUE
        if state.active and not ignore_active:
            logger.debug("Pipeline is already running: %s", self.pipeline.id)
            return LockResult.ALREADY_ACTIVE
        if state.active:
            logger.warning("Ignoring active flag left by a previous process: %s", self.pipeline.id)

        state.active = True
        self.store.persist_quietly(state)
        self.state = state
        return LockResult.ACQUIRED

    def release(self, success: bool, started_at: datetime) -> RunState:
        if self.state is None:
            raise RuntimeError(f"Lock for {self.pipeline.id} released without being acquired")
        state = self.state
        if success:
            state.timestamp = ensure_aware_utc(started_at)
        state.active = False
        self.store.persist_quietly(state)
        self.state = None
        return state
