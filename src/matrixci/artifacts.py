# artifacts.py
from __future__ import annotations

import hashlib
import json
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# One channel per run. A producer (job instance) commits a directory or file
# under a slot key once its steps succeeded:
#
#   root/<run_id>/<slot_key>/<producer>.tar.gz
#   root/<run_id>/<slot_key>/<producer>.manifest.json
#
# The archive is written to a temp file and renamed, so a slot is either fully
# committed or absent. Consumers read by exact key or glob ("wheels-*").
# Ordering is the scheduler's job: get() never waits for a producer.
# ---------------------------------------------------------------------


class DuplicateWriteError(Exception):
    """A (slot key, producer) pair was written twice in one run."""

    def __init__(self, key: str, producer: str):
        super().__init__(f"artifact slot '{key}' already written by '{producer}' in this run")
        self.key = key
        self.producer = producer


class ArtifactNotFound(LookupError):
    pass


class ArtifactCollision(Exception):
    """A restored file would replace a different file of the same name."""

    def __init__(self, key: str, path: Path):
        super().__init__(f"artifact slot '{key}' would overwrite {path} with different content")
        self.key = key
        self.path = path


@dataclass(frozen=True)
class ArtifactSlot:
    key: str
    producer: str
    digest: str
    archive: Path
    files: Tuple[str, ...] = field(default_factory=tuple)


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _iter_files(source: Path) -> Iterable[Tuple[Path, str]]:
    """(absolute path, archive name) pairs; deterministic order."""
    if source.is_file():
        yield source, source.name
        return
    for p in sorted(source.rglob("*")):
        if p.is_file():
            yield p, p.relative_to(source).as_posix()


def _has_glob(pattern: str) -> bool:
    return any(c in pattern for c in "*?[")


def _check_collisions(tar: tarfile.TarFile, target: Path, key: str) -> None:
    for member in tar.getmembers():
        existing = target / member.name
        if not member.isfile() or not existing.is_file():
            continue
        f = tar.extractfile(member)
        h = hashlib.sha256()
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
        if h.hexdigest() != _sha256_file(existing):
            raise ArtifactCollision(key, existing)


class ArtifactChannel:
    """Per-run, write-once-per-producer, read-many artifact store."""

    def __init__(self, root: str | Path, run_id: str):
        self.run_id = run_id
        self.root = Path(root).resolve() / run_id
        self._lock = threading.Lock()
        self._committed: Dict[Tuple[str, str], ArtifactSlot] = {}
        self._in_progress: set[Tuple[str, str]] = set()

    def _slot_dir(self, key: str) -> Path:
        d = self.root / key
        d.mkdir(parents=True, exist_ok=True)
        return d

    def put(self, key: str, producer: str, source: str | Path) -> ArtifactSlot:
        """
        Archive `source` (file or directory contents) as slot (key, producer).

        Raises DuplicateWriteError on a second write of the same pair and
        FileNotFoundError when there is nothing to archive.
        """
        ident = (key, producer)
        with self._lock:
            if ident in self._committed or ident in self._in_progress:
                raise DuplicateWriteError(key, producer)
            self._in_progress.add(ident)

        try:
            slot = self._write(key, producer, Path(source))
        finally:
            with self._lock:
                self._in_progress.discard(ident)

        with self._lock:
            self._committed[ident] = slot
        return slot

    def _write(self, key: str, producer: str, source: Path) -> ArtifactSlot:
        source = source.resolve()
        files = list(_iter_files(source)) if source.exists() else []
        if not files:
            raise FileNotFoundError(f"no files to archive for slot '{key}' at {source}")

        entries = [(arcname, _sha256_file(p), p.stat().st_size) for p, arcname in files]
        digest = hashlib.sha256(_json_dumps_stable(entries).encode("utf-8")).hexdigest()

        d = self._slot_dir(key)
        art = d / f"{producer}.tar.gz"
        man = d / f"{producer}.manifest.json"
        tmp = d / f".{producer}.tar.gz.tmp"

        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for p, arcname in files:
                    tar.add(str(p), arcname=arcname, recursive=False)
            tmp.replace(art)
            manifest = {
                "run_id": self.run_id,
                "key": key,
                "producer": producer,
                "digest": digest,
                "files": [{"name": n, "sha256": h, "size": s} for n, h, s in entries],
                "committed_at_unix": int(time.time()),
            }
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        return ArtifactSlot(
            key=key,
            producer=producer,
            digest=digest,
            archive=art,
            files=tuple(n for n, _h, _s in entries),
        )

    def slots(self, pattern: str = "*") -> List[ArtifactSlot]:
        with self._lock:
            committed = list(self._committed.values())
        return sorted(
            (s for s in committed if fnmatchcase(s.key, pattern)),
            key=lambda s: (s.key, s.producer),
        )

    def get(self, pattern: str, dest: str | Path, *, merge: bool = True) -> List[ArtifactSlot]:
        """
        Extract every committed slot matching `pattern` into `dest`.

        merge=True flattens all slots into `dest`; otherwise each slot lands in
        `dest/<slot key>/`. An exact key with no slot raises ArtifactNotFound;
        a glob matching nothing returns [].

        Raises ArtifactCollision before extracting a slot that would replace
        an existing file with different content; identical files are fine.
        """
        matched = self.slots(pattern)
        if not matched and not _has_glob(pattern):
            raise ArtifactNotFound(f"no artifact slot named '{pattern}' in run {self.run_id}")

        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        for slot in matched:
            target = dest if merge else dest / slot.key
            target.mkdir(parents=True, exist_ok=True)
            with tarfile.open(str(slot.archive), mode="r:gz") as tar:
                _check_collisions(tar, target, slot.key)
                tar.extractall(path=str(target), filter="data")
        return matched

    def discard(self, key: str, producer: str) -> None:
        """Withdraw a committed slot whose producer did not finish."""
        with self._lock:
            slot = self._committed.pop((key, producer), None)
        if slot is None:
            return
        slot.archive.unlink(missing_ok=True)
        slot.archive.with_name(f"{producer}.manifest.json").unlink(missing_ok=True)

    def destroy(self) -> None:
        """Drop the whole run store (run archived)."""
        with self._lock:
            self._committed.clear()
        if self.root.exists():
            shutil.rmtree(self.root)
