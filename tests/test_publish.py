from pathlib import Path

import pytest

from matrixci.model import Credentials
from matrixci.publish import (
    DirectoryIndex,
    PublishConflict,
    PublishError,
    Publisher,
    TwineIndex,
    collect_artifacts,
    index_for,
)


def _dist(tmp_path: Path) -> Path:
    d = tmp_path / "dist"
    d.mkdir()
    for name in ("pkg-1.0-cp37-abi3-win_amd64.whl", "pkg-1.0-cp37-abi3-macosx_universal2.whl", "pkg-1.0.tar.gz"):
        (d / name).write_text(name)
    (d / "notes.txt").write_text("not an artifact")
    return d


class FlakyIndex:
    """Fails the upload of one artifact, records every attempt."""

    name = "flaky"

    def __init__(self, fail_on: str):
        self.fail_on = fail_on
        self.attempts = []

    def upload(self, artifact, credentials=None):
        self.attempts.append((artifact.name, credentials))
        if artifact.name == self.fail_on:
            raise PublishError(artifact.name, "HTTP 500", 1)


def test_collect_artifacts_is_sorted_and_filtered(tmp_path):
    names = [p.name for p in collect_artifacts(_dist(tmp_path))]
    assert names == [
        "pkg-1.0-cp37-abi3-macosx_universal2.whl",
        "pkg-1.0-cp37-abi3-win_amd64.whl",
        "pkg-1.0.tar.gz",
    ]


def test_publishing_twice_is_idempotent(tmp_path):
    dist = _dist(tmp_path)
    index = DirectoryIndex(tmp_path / "index")

    first = Publisher(index).publish(dist)
    second = Publisher(index).publish(dist)

    assert {r.status for r in first} == {"uploaded"}
    assert {r.status for r in second} == {"exists"}
    assert sorted(p.name for p in (tmp_path / "index").iterdir()) == sorted(r.artifact for r in first)


def test_directory_index_reports_conflicts(tmp_path):
    dist = _dist(tmp_path)
    index = DirectoryIndex(tmp_path / "index")
    wheel = dist / "pkg-1.0.tar.gz"
    index.upload(wheel)
    with pytest.raises(PublishConflict):
        index.upload(wheel)


def test_best_effort_attempts_every_artifact(tmp_path):
    dist = _dist(tmp_path)
    creds = Credentials("__token__", "pypi-secret")
    index = FlakyIndex(fail_on="pkg-1.0-cp37-abi3-win_amd64.whl")

    results = Publisher(index, creds).publish(dist)

    assert len(index.attempts) == 3
    assert all(c is creds for _name, c in index.attempts)
    by_name = {r.artifact: r for r in results}
    assert by_name["pkg-1.0-cp37-abi3-win_amd64.whl"].status == "failed"
    assert by_name["pkg-1.0-cp37-abi3-win_amd64.whl"].detail == "HTTP 500"
    assert by_name["pkg-1.0.tar.gz"].status == "uploaded"


def test_empty_directory_publishes_nothing(tmp_path):
    (tmp_path / "dist").mkdir()
    assert Publisher(DirectoryIndex(tmp_path / "index")).publish(tmp_path / "dist") == []


def test_index_for_picks_destination(tmp_path):
    local = index_for("pypi", (tmp_path / "index").as_uri())
    assert isinstance(local, DirectoryIndex)
    assert local.root == (tmp_path / "index").resolve()

    assert isinstance(index_for("pypi", str(tmp_path / "index")), DirectoryIndex)

    remote = index_for("testpypi", "https://test.pypi.org/legacy/")
    assert isinstance(remote, TwineIndex)
    assert remote.name == "https://test.pypi.org/legacy/"

    named = index_for("testpypi")
    assert isinstance(named, TwineIndex)
    assert named.name == "testpypi"


def test_twine_command_uses_skip_existing(tmp_path):
    cmd = TwineIndex(repository="pypi", python="python").command(tmp_path / "pkg-1.0.tar.gz")
    assert cmd[:4] == ["python", "-m", "twine", "upload"]
    assert "--skip-existing" in cmd
    assert "--non-interactive" in cmd
    assert cmd[-3:] == ["--repository", "pypi", str(tmp_path / "pkg-1.0.tar.gz")]


def test_credentials_never_show_the_token():
    creds = Credentials("__token__", "pypi-AgEIcHlwaS5vcmc")
    assert "pypi-AgEIcHlwaS5vcmc" not in repr(creds)
    assert "pypi-AgEIcHlwaS5vcmc" not in str(creds)
    assert creds.env() == {"TWINE_USERNAME": "__token__", "TWINE_PASSWORD": "pypi-AgEIcHlwaS5vcmc"}
