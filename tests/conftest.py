import shlex
import sys
from pathlib import Path

import pytest

from matrixci.model import Run
from matrixci.ui.console import Console, set_console

PY = shlex.quote(sys.executable)


def py(code: str) -> str:
    """Shell command running `code` with the test interpreter."""
    return f"{PY} -c {shlex.quote(code)}"


def write_dist(filename: str, content: str = "x") -> str:
    """Step command that drops `filename` into $MATRIXCI_WORKSPACE/dist."""
    return py(
        "import os, pathlib; "
        "d = pathlib.Path(os.environ['MATRIXCI_WORKSPACE'], 'dist'); "
        "d.mkdir(exist_ok=True); "
        f"(d / {filename!r}).write_text({content!r})"
    )


@pytest.fixture(autouse=True)
def console():
    c = Console()
    set_console(c)
    return c


@pytest.fixture(autouse=True)
def no_publish_token(monkeypatch):
    for name in ("PYPI_TOKEN", "TWINE_USERNAME", "TWINE_PASSWORD"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def roots(tmp_path: Path) -> dict:
    return {
        "repo_root": tmp_path,
        "artifact_root": tmp_path / "artifacts",
        "work_root": tmp_path / "work",
    }


@pytest.fixture
def tag_run() -> Run:
    return Run(event="push", ref="v1.2.3", is_tag=True)


@pytest.fixture
def main_run() -> Run:
    return Run(event="push", ref="main")
