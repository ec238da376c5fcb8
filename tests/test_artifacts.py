import io
import json
import tarfile
from pathlib import Path

import pytest

from matrixci.artifacts import ArtifactChannel, ArtifactCollision, ArtifactNotFound, DuplicateWriteError


def _dist(root: Path, *names: str) -> Path:
    d = root / "dist"
    d.mkdir(parents=True, exist_ok=True)
    for n in names:
        (d / n).write_text(n)
    return d


@pytest.fixture
def channel(tmp_path):
    return ArtifactChannel(tmp_path / "store", "run1")


def test_put_then_get_exact_key(tmp_path, channel):
    src = _dist(tmp_path / "job", "pkg-1.0-cp37-abi3-manylinux_x86_64.whl")
    slot = channel.put("wheels-linux-x86_64", "linux-x86_64", src)

    assert slot.files == ("pkg-1.0-cp37-abi3-manylinux_x86_64.whl",)
    assert slot.archive.exists()

    manifest = json.loads((slot.archive.parent / "linux-x86_64.manifest.json").read_text())
    assert manifest["digest"] == slot.digest
    assert manifest["files"][0]["name"] == "pkg-1.0-cp37-abi3-manylinux_x86_64.whl"
    assert len(manifest["files"][0]["sha256"]) == 64

    dest = tmp_path / "out"
    got = channel.get("wheels-linux-x86_64", dest)
    assert [s.key for s in got] == ["wheels-linux-x86_64"]
    assert (dest / "pkg-1.0-cp37-abi3-manylinux_x86_64.whl").read_text() == "pkg-1.0-cp37-abi3-manylinux_x86_64.whl"


def test_second_write_of_same_pair_is_rejected(tmp_path, channel):
    src = _dist(tmp_path / "job", "a.whl")
    channel.put("wheels", "linux", src)
    with pytest.raises(DuplicateWriteError):
        channel.put("wheels", "linux", src)
    # a different producer may still write the same key
    channel.put("wheels", "macos", src)
    assert [s.producer for s in channel.slots("wheels")] == ["linux", "macos"]


def test_nothing_to_archive_commits_nothing(tmp_path, channel):
    empty = tmp_path / "empty"
    empty.mkdir()
    with pytest.raises(FileNotFoundError):
        channel.put("wheels", "linux", empty)
    with pytest.raises(FileNotFoundError):
        channel.put("wheels", "linux", tmp_path / "missing")
    assert channel.slots() == []
    # the failed attempt did not reserve the pair
    channel.put("wheels", "linux", _dist(tmp_path / "job", "a.whl"))


def test_no_temp_files_left_after_commit(tmp_path, channel):
    slot = channel.put("sdist", "sdist", _dist(tmp_path / "job", "pkg-1.0.tar.gz"))
    names = sorted(p.name for p in slot.archive.parent.iterdir())
    assert names == ["sdist.manifest.json", "sdist.tar.gz"]


def test_glob_merges_every_matching_slot(tmp_path, channel):
    channel.put("wheels-linux-x86_64", "linux-x86_64", _dist(tmp_path / "a", "pkg-x86_64.whl"))
    channel.put("wheels-linux-i686", "linux-i686", _dist(tmp_path / "b", "pkg-i686.whl"))
    channel.put("sdist", "sdist", _dist(tmp_path / "c", "pkg.tar.gz"))

    dest = tmp_path / "merged"
    got = channel.get("wheels-*", dest, merge=True)
    assert [s.key for s in got] == ["wheels-linux-i686", "wheels-linux-x86_64"]
    assert sorted(p.name for p in dest.iterdir()) == ["pkg-i686.whl", "pkg-x86_64.whl"]

    split = tmp_path / "split"
    channel.get("wheels-*", split, merge=False)
    assert (split / "wheels-linux-i686" / "pkg-i686.whl").exists()
    assert (split / "wheels-linux-x86_64" / "pkg-x86_64.whl").exists()


def test_directory_structure_is_preserved(tmp_path, channel):
    src = tmp_path / "job" / "dist"
    (src / "sub").mkdir(parents=True)
    (src / "sub" / "nested.txt").write_text("n")
    channel.put("docs", "docs", src)

    dest = tmp_path / "out"
    channel.get("docs", dest)
    assert (dest / "sub" / "nested.txt").read_text() == "n"


def test_single_file_source(tmp_path, channel):
    f = tmp_path / "report.txt"
    f.write_text("ok")
    slot = channel.put("report", "test", f)
    assert slot.files == ("report.txt",)


def test_missing_exact_key_raises_but_empty_glob_does_not(tmp_path, channel):
    with pytest.raises(ArtifactNotFound):
        channel.get("sdist", tmp_path / "out")
    assert channel.get("wheels-*", tmp_path / "out") == []


def test_destroy_removes_the_run_store(tmp_path, channel):
    channel.put("sdist", "sdist", _dist(tmp_path / "job", "pkg.tar.gz"))
    assert channel.root.exists()
    channel.destroy()
    assert not channel.root.exists()
    assert channel.slots() == []


def test_runs_do_not_share_slots(tmp_path):
    a = ArtifactChannel(tmp_path / "store", "run-a")
    b = ArtifactChannel(tmp_path / "store", "run-b")
    a.put("sdist", "sdist", _dist(tmp_path / "job", "pkg.tar.gz"))
    b.put("sdist", "sdist", _dist(tmp_path / "job", "pkg.tar.gz"))
    assert a.root != b.root
    with pytest.raises(ArtifactNotFound):
        ArtifactChannel(tmp_path / "store", "run-c").get("sdist", tmp_path / "out")


def test_merge_refuses_to_overwrite_a_different_file(tmp_path, channel):
    for producer, content in (("macos-x86_64", "x86"), ("macos-universal2", "fat")):
        d = tmp_path / producer / "dist"
        d.mkdir(parents=True)
        (d / "pkg.whl").write_text(content)
        channel.put(f"wheels-{producer}", producer, d)

    dest = tmp_path / "out"
    with pytest.raises(ArtifactCollision, match="pkg.whl"):
        channel.get("wheels-*", dest)
    # the first slot was restored untouched
    assert (dest / "pkg.whl").read_text() == "fat"

    # separate directories never collide
    channel.get("wheels-*", tmp_path / "split", merge=False)
    assert (tmp_path / "split" / "wheels-macos-x86_64" / "pkg.whl").read_text() == "x86"


def test_merge_accepts_identical_files(tmp_path, channel):
    channel.put("wheels-a", "a", _dist(tmp_path / "a", "LICENSE", "a.whl"))
    channel.put("wheels-b", "b", _dist(tmp_path / "b", "LICENSE", "b.whl"))

    dest = tmp_path / "out"
    channel.get("wheels-*", dest)
    assert sorted(p.name for p in dest.iterdir()) == ["LICENSE", "a.whl", "b.whl"]


def test_discard_withdraws_a_committed_slot(tmp_path, channel):
    slot = channel.put("sdist", "sdist", _dist(tmp_path / "job", "pkg-1.0.tar.gz"))
    channel.discard("sdist", "sdist")

    assert channel.slots() == []
    assert not slot.archive.exists()
    assert not (slot.archive.parent / "sdist.manifest.json").exists()
    with pytest.raises(ArtifactNotFound):
        channel.get("sdist", tmp_path / "out")
    # the pair may be written again
    channel.put("sdist", "sdist", _dist(tmp_path / "job", "pkg-1.0.tar.gz"))


def test_extraction_stays_inside_the_destination(tmp_path, channel):
    slot = channel.put("sdist", "sdist", _dist(tmp_path / "job", "pkg-1.0.tar.gz"))
    with tarfile.open(str(slot.archive), mode="w:gz") as tar:
        info = tarfile.TarInfo("../escape.txt")
        info.size = 3
        tar.addfile(info, io.BytesIO(b"bad"))

    with pytest.raises(tarfile.TarError):
        channel.get("sdist", tmp_path / "out" / "dest")
    assert not (tmp_path / "out" / "escape.txt").exists()
