# publish.py
from __future__ import annotations

import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol
from urllib.parse import urlparse

from .model import Credentials

ARTIFACT_GLOBS = ("*.whl", "*.tar.gz")


class PublishConflict(Exception):
    """An artifact with the same identity already exists at the destination. Not a failure."""

    def __init__(self, artifact: str, destination: str):
        super().__init__(f"{artifact} already exists at {destination}")
        self.artifact = artifact
        self.destination = destination


class PublishError(Exception):
    """Uploading one artifact failed."""

    def __init__(self, artifact: str, message: str, exit_code: int | None = None):
        super().__init__(f"{artifact}: {message}")
        self.artifact = artifact
        self.message = message
        self.exit_code = exit_code


class PackageIndex(Protocol):
    name: str

    def upload(self, artifact: Path, credentials: Optional[Credentials] = None) -> None:
        """Upload one file; raise PublishConflict if present, PublishError on failure."""
        ...


class DirectoryIndex:
    """
    Append-only package index in a local directory (also used for file:// URLs).

    Files are hard-linked into place from a temp copy, so two concurrent
    uploads of the same file cannot both win.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.name = str(self.root)

    def upload(self, artifact: Path, credentials: Optional[Credentials] = None) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.root / artifact.name
        if target.exists():
            raise PublishConflict(artifact.name, self.name)

        tmp = self.root / f".{artifact.name}.{os.getpid()}.tmp"
        try:
            shutil.copy2(artifact, tmp)
            try:
                os.link(tmp, target)
            except FileExistsError:
                raise PublishConflict(artifact.name, self.name) from None
        except OSError as e:
            raise PublishError(artifact.name, str(e)) from e
        finally:
            tmp.unlink(missing_ok=True)


class TwineIndex:
    """Upload through `python -m twine upload --skip-existing`, one file at a time."""

    def __init__(
        self,
        repository: str = "pypi",
        repository_url: str | None = None,
        python: str = sys.executable,
    ):
        self.repository = repository
        self.repository_url = repository_url
        self.python = python
        self.name = repository_url or repository

    def command(self, artifact: Path) -> List[str]:
        cmd = [self.python, "-m", "twine", "upload", "--non-interactive", "--skip-existing"]
        if self.repository_url:
            cmd += ["--repository-url", self.repository_url]
        else:
            cmd += ["--repository", self.repository]
        cmd.append(str(artifact))
        return cmd

    def upload(self, artifact: Path, credentials: Optional[Credentials] = None) -> None:
        env = os.environ.copy()
        if credentials is not None:
            env.update(credentials.env())

        proc = subprocess.run(
            self.command(artifact),
            env=env,
            text=True,
            capture_output=True,
        )
        output = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode != 0:
            raise PublishError(artifact.name, output.strip()[-4000:] or "twine upload failed", proc.returncode)
        # twine prints "Skipping <file> because it appears to already exist"
        if "Skipping" in output and "already exist" in output:
            raise PublishConflict(artifact.name, self.name)


def index_for(repository: str = "pypi", repository_url: str | None = None) -> PackageIndex:
    """file:// URLs and plain local paths map to a DirectoryIndex, everything else to twine."""
    if repository_url:
        parsed = urlparse(repository_url)
        if parsed.scheme == "file":
            return DirectoryIndex(parsed.path)
        if parsed.scheme == "":
            return DirectoryIndex(repository_url)
    return TwineIndex(repository=repository, repository_url=repository_url)


def collect_artifacts(directory: str | Path) -> List[Path]:
    directory = Path(directory)
    found = {p for pattern in ARTIFACT_GLOBS for p in directory.glob(pattern) if p.is_file()}
    return sorted(found, key=lambda p: p.name)


@dataclass
class PublishResult:
    artifact: str
    status: str  # "uploaded" | "exists" | "failed"
    detail: str = ""


class Publisher:
    """
    Idempotent, best-effort publish: every artifact is attempted, an existing
    artifact counts as success, and the caller decides what failures mean.
    """

    def __init__(self, index: PackageIndex, credentials: Optional[Credentials] = None):
        self.index = index
        self.credentials = credentials

    def publish(self, directory: str | Path) -> List[PublishResult]:
        results: List[PublishResult] = []
        for artifact in collect_artifacts(directory):
            try:
                self.index.upload(artifact, self.credentials)
                results.append(PublishResult(artifact.name, "uploaded"))
            except PublishConflict as e:
                results.append(PublishResult(artifact.name, "exists", str(e)))
            except PublishError as e:
                results.append(PublishResult(artifact.name, "failed", e.message))
        return results
