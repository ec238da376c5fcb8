# step_workflows/publish.py
from __future__ import annotations

from ..model import Step


def publish_step(
    name: str = "Publish to PyPI",
    *,
    path: str = "dist",
    repository: str = "pypi",
    repository_url: str | None = None,
    secret: str | None = "pypi",
) -> Step:
    """
    Upload every wheel/sdist found in `path` (relative to the job workspace).

    Not compiled to shell: the runner hands it to matrixci.publish.Publisher,
    which uploads artifact by artifact with skip-existing semantics.
    """
    data = {
        "path": path,
        "repository": repository,
        "repository_url": repository_url,
    }
    return Step(name=name, run=f"publish {path} -> {repository_url or repository}", kind="publish", data=data, secret=secret)
