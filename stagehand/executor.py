"""
Stage-by-stage pipeline execution.

Stages run in declaration order. Every job of a stage is spawned before any
of them is waited on, so the jobs run side by side as separate processes; the
next stage starts only after all of them have exited. One failed job fails
the stage, and a failed stage ends the pipeline.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from stagehand.errors import (
    JobExecutionFailed,
    JobStartFailed,
    JobWaitFailed,
    PipelineExecutionFailed,
    StageExecutionFailed,
    StagehandError,
)
from stagehand.pipeline import JobSpec, PipelineSpec

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "sh"


@dataclass
class JobResult:
    job: JobSpec
    success: bool
    return_code: Optional[int]
    duration_seconds: float
    stdout: str = ""
    stderr: str = ""
    error: Optional[StagehandError] = None


@dataclass
class StageResult:
    pipeline_id: str
    stage: str
    job_results: List[JobResult] = field(default_factory=list)

    @property
    def successful_count(self) -> int:
        return sum(1 for result in self.job_results if result.success)

    @property
    def success(self) -> bool:
        return self.successful_count == len(self.job_results)


@dataclass
class _StartedJob:
    job: JobSpec
    started: float
    process: Optional["subprocess.Popen[str]"] = None
    error: Optional[StagehandError] = None


def build_job_env(pipeline: PipelineSpec, job: JobSpec) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(
        {
            "STAGEHAND_PIPELINE_ID": pipeline.id,
            "STAGEHAND_STAGE": job.stage,
            "STAGEHAND_JOB_ID": job.id,
            "STAGEHAND_BREADCRUMB": job.breadcrumb,
        }
    )
    return env


class Executor:
    def __init__(self, shell: str = DEFAULT_SHELL):
        self.shell = shell

    def run(self, pipeline: PipelineSpec) -> List[StageResult]:
        """
        Run every stage of ``pipeline`` in order.

        Raises ``PipelineExecutionFailed`` (caused by the
        ``StageExecutionFailed`` of the first failing stage) and never starts
        the stages after it.
        """
        stage_results: List[StageResult] = []
        for stage in pipeline.stages:
            logger.debug("Running stage: %s/%s", pipeline.id, stage)
            result = self.run_stage(pipeline, stage)
            stage_results.append(result)
            if not result.success:
                stage_error = StageExecutionFailed(f"{pipeline.id}/{stage}")
                logger.error("%s", stage_error)
                raise PipelineExecutionFailed(pipeline.id) from stage_error
            logger.debug("Stage completed: %s/%s", pipeline.id, stage)
        return stage_results

    def run_stage(self, pipeline: PipelineSpec, stage: str) -> StageResult:
        jobs = pipeline.jobs_for_stage(stage)
        started = [self.start_job(pipeline, job) for job in jobs]
        return StageResult(
            pipeline_id=pipeline.id,
            stage=stage,
            job_results=[self.wait_job(item) for item in started],
        )

    def start_job(self, pipeline: PipelineSpec, job: JobSpec) -> _StartedJob:
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                [self.shell, str(job.resolved_path)],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=build_job_env(pipeline, job),
            )
        except (OSError, ValueError) as exc:
            error = JobStartFailed(job.breadcrumb)
            error.__cause__ = exc
            logger.error("%s (%s)", error, exc)
            return _StartedJob(job=job, started=started, error=error)
        logger.debug("Running job: %s (pid=%s)", job.breadcrumb, process.pid)
        return _StartedJob(job=job, started=started, process=process)

    def wait_job(self, item: _StartedJob) -> JobResult:
        job = item.job
        if item.process is None:
            return JobResult(
                job=job,
                success=False,
                return_code=None,
                duration_seconds=time.monotonic() - item.started,
                error=item.error,
            )

        try:
            stdout, stderr = item.process.communicate()
        except (OSError, ValueError) as exc:
            error = JobWaitFailed(job.breadcrumb)
            error.__cause__ = exc
            logger.error("%s (%s)", error, exc)
            return JobResult(
                job=job,
                success=False,
                return_code=item.process.returncode,
                duration_seconds=time.monotonic() - item.started,
                error=error,
            )

        duration = time.monotonic() - item.started
        return_code = item.process.returncode
        if return_code == 0:
            logger.debug("Job completed: %s (%.2fs)", job.breadcrumb, duration)
            return JobResult(
                job=job,
                success=True,
                return_code=return_code,
                duration_seconds=duration,
                stdout=stdout or "",
                stderr=stderr or "",
            )

        error = JobExecutionFailed(job.breadcrumb, (stderr or "").strip())
        logger.error("%s (code=%s, duration=%.2fs)", error, return_code, duration)
        return JobResult(
            job=job,
            success=False,
            return_code=return_code,
            duration_seconds=duration,
            stdout=stdout or "",
            stderr=stderr or "",
            error=error,
        )
