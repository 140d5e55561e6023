"""
stagehand command line.

    stagehand daemon --pipelines ./pipelines --refresh 60 --log info
    stagehand validate
    stagehand preview --pipeline nightly-report --count 5
    stagehand run --pipeline nightly-report
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from typing import List, Optional

from stagehand.config import DEFAULT_SETTINGS_FILE, Settings, load_settings
from stagehand.errors import ConfigError, StagehandError
from stagehand.executor import Executor
from stagehand.log import LOG_LEVELS, LOGGER_NAME, setup_logging
from stagehand.pipeline import pipelines_by_id, read_pipeline_dir, split_results
from stagehand.scheduler import Scheduler
from stagehand.state import StateStore

logger = logging.getLogger(LOGGER_NAME)
UTC = timezone.utc
DEFAULT_PREVIEW_COUNT = 5


def build_scheduler(settings: Settings) -> Scheduler:
    return Scheduler(
        pipelines_root=settings.pipelines,
        refresh_seconds=settings.refresh_seconds,
        executor=Executor(shell=settings.shell),
        store=StateStore(),
    )


def command_validate(settings: Settings) -> int:
    results = read_pipeline_dir(settings.pipelines)
    pipelines, errors = split_results(results)
    print(f"Pipelines root: {settings.pipelines}")
    print(f"Total pipelines: {len(results)}")
    print(f"Valid pipelines: {len(pipelines)}")
    for pipeline in pipelines:
        print(
            f"- {pipeline.id}: {pipeline.expression} "
            f"(stages={', '.join(pipeline.stages) or 'none'}; jobs={len(pipeline.jobs)})"
        )
    for error in errors:
        detail = f" ({error.__cause__})" if error.__cause__ is not None else ""
        print(f"! {error}{detail}")
    return 0 if not errors else 1


def command_preview(settings: Settings, pipeline_id: str, count: int) -> int:
    pipelines, _ = split_results(read_pipeline_dir(settings.pipelines))
    pipeline = pipelines_by_id(pipelines).get(pipeline_id)
    if pipeline is None:
        raise StagehandError(f'Unknown pipeline "{pipeline_id}".')

    state = StateStore().load(pipeline)
    now = datetime.now(tz=UTC)
    due_at = pipeline.interval.next_run(state.timestamp)

    print("=" * 80)
    print(f"Pipeline: {pipeline.id}")
    print(f"Expression: {pipeline.expression}")
    print(f"Parsed: {pipeline.interval}")
    print(f"Stages: {', '.join(pipeline.stages) or 'none'}")
    for stage in pipeline.stages:
        for job in pipeline.jobs_for_stage(stage):
            print(f"- {job.breadcrumb} -> {job.resolved_path}")
    print(f"Active: {state.active}")
    print(f"Last success: {state.timestamp.isoformat()}")
    print(f"Next due: {due_at.isoformat()}" + (" (due now)" if due_at <= now else ""))
    print(f"Next {count} run(s):")
    for run_at in pipeline.interval.upcoming(now, count):
        print(f"- {run_at.isoformat()}")
    print("=" * 80)
    return 0


def command_run(settings: Settings, pipeline_id: str, force: bool) -> int:
    scheduler = build_scheduler(settings)
    return 0 if scheduler.run_once(pipeline_id, force=force) else 1


def command_daemon(settings: Settings) -> int:
    scheduler = build_scheduler(settings)
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Scheduler interrupted by user.")
        scheduler.shutdown(wait=True)
        return 130
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--settings",
        help=f"Path to a YAML settings file (default: ./{DEFAULT_SETTINGS_FILE} when present)",
    )
    common.add_argument("--pipelines", help="Pipelines root directory")
    common.add_argument("--log", choices=sorted(LOG_LEVELS), help="Log verbosity")
    common.add_argument("--log-file", help="Also write logs to this file")
    common.add_argument("--shell", help="Interpreter used to run job scripts (default: sh)")

    parser = argparse.ArgumentParser(
        description="stagehand pipeline scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    daemon_parser = subparsers.add_parser("daemon", parents=[common], help="Run the scheduler loop")
    daemon_parser.add_argument("--refresh", type=int, help="Seconds between pipeline scans")

    subparsers.add_parser("validate", parents=[common], help="Load and check every pipeline")

    preview_parser = subparsers.add_parser("preview", parents=[common], help="Show upcoming runs")
    preview_parser.add_argument("--pipeline", required=True, help="Pipeline id")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    run_parser = subparsers.add_parser("run", parents=[common], help="Run one pipeline now")
    run_parser.add_argument("--pipeline", required=True, help="Pipeline id")
    run_parser.add_argument(
        "--force",
        action="store_true",
        help="Run even if the pipeline's state file says it is already running",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(
            settings_file=args.settings,
            pipelines=args.pipelines,
            refresh_seconds=getattr(args, "refresh", None),
            log_level=args.log,
            log_file=args.log_file,
            shell=args.shell,
        )
        setup_logging(settings.log_level, settings.log_file)

        if args.command == "validate":
            return command_validate(settings)
        if args.command == "preview":
            if args.count <= 0:
                raise ConfigError("--count must be >= 1")
            return command_preview(settings, pipeline_id=args.pipeline, count=args.count)
        if args.command == "run":
            return command_run(settings, pipeline_id=args.pipeline, force=args.force)
        if args.command == "daemon":
            return command_daemon(settings)
        raise StagehandError(f"Unsupported command: {args.command}")
    except StagehandError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - last resort
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
