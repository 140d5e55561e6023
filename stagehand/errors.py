"""
Error taxonomy for stagehand.

Every failure kind is its own exception class so each boundary (job, stage,
pipeline, scheduler tick) can catch exactly what it recovers from. The
underlying cause, when there is one, travels as ``__cause__`` via
``raise ... from exc``.
"""

from __future__ import annotations


class StagehandError(Exception):
    """Base error for stagehand."""

    label = ""

    def __init__(self, subject: str):
        self.subject = subject
        super().__init__(f"{self.label}: {subject}" if self.label else subject)


class ConfigError(StagehandError):
    """Settings file or command line validation error."""


class InvalidPipelineFolder(StagehandError):
    label = "Invalid pipeline folder"


class InvalidPipelineFile(StagehandError):
    label = "Invalid pipeline file"


class InvalidStateFile(StagehandError):
    label = "Invalid state file"


class InvalidIntervalExpression(StagehandError):
    label = "Invalid interval expression"


class PipelineExecutionFailed(StagehandError):
    label = "Error executing pipeline"


class StageExecutionFailed(StagehandError):
    label = "Error executing stage"


class JobStartFailed(StagehandError):
    label = "Error starting job"


class JobWaitFailed(StagehandError):
    label = "Error waiting job"


class JobExecutionFailed(StagehandError):
    label = "Error executing job"

    def __init__(self, subject: str, stderr: str):
        self.stderr = stderr
        super().__init__(subject)

    def __str__(self) -> str:
        return f"{self.label}: {self.subject}\nError:\n{self.stderr}"
