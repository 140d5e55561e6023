from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

PipelineFactory = Callable[..., Path]


def _write_script(path: Path, body: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")


@pytest.fixture
def pipelines_root(tmp_path: Path) -> Path:
    root = tmp_path / "pipelines"
    root.mkdir()
    return root


@pytest.fixture
def make_pipeline(pipelines_root: Path) -> PipelineFactory:
    """
    Write ``<root>/<name>/pipeline.json`` plus any job scripts.

    ``scripts`` maps a script path (relative to the pipeline directory) to
    its shell body. Jobs default to one job per script, all in stage
    ``build``.
    """

    def factory(
        name: str = "demo",
        expression: str = "* * * * *",
        stages: Optional[List[str]] = None,
        jobs: Optional[List[Dict[str, str]]] = None,
        scripts: Optional[Dict[str, str]] = None,
        pipeline_id: Optional[str] = None,
    ) -> Path:
        directory = pipelines_root / name
        directory.mkdir(parents=True, exist_ok=True)
        scripts = scripts or {}
        for rel_path, body in scripts.items():
            _write_script(directory / rel_path, body)
        if stages is None:
            stages = ["build"]
        if jobs is None:
            jobs = [
                {"id": Path(rel_path).stem, "stage": stages[0], "script": rel_path}
                for rel_path in scripts
            ]
        payload = {
            "id": pipeline_id or name,
            "expression": expression,
            "stages": stages,
            "jobs": jobs,
        }
        path = directory / "pipeline.json"
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path

    return factory
