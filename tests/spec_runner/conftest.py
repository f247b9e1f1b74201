from __future__ import annotations

import io
from pathlib import Path

import pytest
from rich.console import Console


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    (project / ".runner").mkdir(parents=True)
    return project


@pytest.fixture()
def run_dir(project_dir: Path) -> Path:
    return project_dir / ".runner"


@pytest.fixture()
def source_path(run_dir: Path) -> Path:
    return run_dir / "items.json"


@pytest.fixture()
def quiet_console() -> Console:
    return Console(file=io.StringIO(), width=120)
