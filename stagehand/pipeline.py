"""
Pipeline definitions and the directory loader.

A pipelines root holds one directory per pipeline, each with a
``pipeline.json`` file:

    {
      "id": "nightly-report",
      "expression": "0 2 * * *",
      "stages": ["extract", "publish"],
      "jobs": [{"id": "pull", "stage": "extract", "script": "pull.sh"}]
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

from stagehand.errors import (
    InvalidIntervalExpression,
    InvalidPipelineFile,
    InvalidPipelineFolder,
    StagehandError,
)
from stagehand.interval import Interval

logger = logging.getLogger(__name__)

PIPELINE_FILE = "pipeline.json"
STATE_FILE = "state.json"


@dataclass(frozen=True)
class JobSpec:
    id: str
    stage: str
    script: str
    breadcrumb: str
    resolved_path: Path


@dataclass(frozen=True)
class PipelineSpec:
    id: str
    expression: str
    interval: Interval
    stages: List[str]
    jobs: List[JobSpec]
    path: Path

    @property
    def directory(self) -> Path:
        return self.path.parent

    @property
    def state_path(self) -> Path:
        return self.directory / STATE_FILE

    def jobs_for_stage(self, stage: str) -> List[JobSpec]:
        return [job for job in self.jobs if job.stage == stage]


LoadResult = Union[PipelineSpec, StagehandError]


def ensure_str(value: Any, field_path: str, source: Path) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidPipelineFile(f"{source}: {field_path} must be a non-empty string")
    return value.strip()


def ensure_list(value: Any, field_path: str, source: Path) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidPipelineFile(f"{source}: {field_path} must be a list")
    return value


def read_pipeline_dir(pipelines_root: Path) -> List[LoadResult]:
    """
    Load every ``<root>/<dir>/pipeline.json``.

    Raises ``InvalidPipelineFolder`` when the root itself cannot be listed.
    Per-pipeline failures are returned in place of the pipeline so the
    caller can log them and carry on with the rest.
    """
    root = Path(pipelines_root)
    try:
        entries = sorted(root.iterdir())
    except OSError as exc:
        raise InvalidPipelineFolder(str(root)) from exc

    results: List[LoadResult] = []
    for entry in entries:
        pipeline_file = entry / PIPELINE_FILE
        if not entry.is_dir() or not pipeline_file.is_file():
            continue
        try:
            results.append(read_pipeline_file(pipeline_file))
        except InvalidPipelineFile as exc:
            results.append(exc)
    return results


def read_pipeline_file(pipeline_path: Path) -> PipelineSpec:
    pipeline_path = Path(pipeline_path).resolve()
    try:
        payload = json.loads(pipeline_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, RecursionError) as exc:
        raise InvalidPipelineFile(str(pipeline_path)) from exc
    if not isinstance(payload, dict):
        raise InvalidPipelineFile(f"{pipeline_path}: top-level value must be an object")

    pipeline_id = ensure_str(payload.get("id"), "id", pipeline_path)
    expression = ensure_str(payload.get("expression"), "expression", pipeline_path)
    try:
        interval = Interval.parse(expression)
    except InvalidIntervalExpression as exc:
        raise InvalidPipelineFile(str(pipeline_path)) from exc

    stages: List[str] = []
    for idx, stage in enumerate(ensure_list(payload.get("stages"), "stages", pipeline_path)):
        stages.append(ensure_str(stage, f"stages[{idx}]", pipeline_path))

    jobs = parse_jobs(payload.get("jobs"), pipeline_id, stages, pipeline_path)

    return PipelineSpec(
        id=pipeline_id,
        expression=expression,
        interval=interval,
        stages=stages,
        jobs=jobs,
        path=pipeline_path,
    )


def parse_jobs(raw: Any, pipeline_id: str, stages: List[str], source: Path) -> List[JobSpec]:
    jobs: List[JobSpec] = []
    for idx, job_raw in enumerate(ensure_list(raw, "jobs", source)):
        item_path = f"jobs[{idx}]"
        if not isinstance(job_raw, dict):
            raise InvalidPipelineFile(f"{source}: {item_path} must be an object")
        job_id = ensure_str(job_raw.get("id"), f"{item_path}.id", source)
        stage = ensure_str(job_raw.get("stage"), f"{item_path}.stage", source)
        if stage not in stages:
            raise InvalidPipelineFile(
                f'{source}: {item_path}.stage "{stage}" is not one of {stages}'
            )
        script = ensure_str(job_raw.get("script"), f"{item_path}.script", source)
        jobs.append(
            JobSpec(
                id=job_id,
                stage=stage,
                script=script,
                breadcrumb=f"{pipeline_id}/{stage}/{job_id}",
                resolved_path=(source.parent / script).resolve(),
            )
        )
    return jobs


def split_results(results: List[LoadResult]) -> Tuple[List[PipelineSpec], List[StagehandError]]:
    pipelines = [item for item in results if isinstance(item, PipelineSpec)]
    errors = [item for item in results if isinstance(item, StagehandError)]
    return pipelines, errors


def pipelines_by_id(pipelines: List[PipelineSpec]) -> Dict[str, PipelineSpec]:
    return {pipeline.id: pipeline for pipeline in pipelines}
