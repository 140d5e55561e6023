"""stagehand: a polling scheduler for staged shell-script pipelines."""

__version__ = "0.1.0"
