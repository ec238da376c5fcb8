# step_workflows/maturin.py
from __future__ import annotations

import shlex
from typing import Callable, Dict, List, Sequence, Tuple

from ..model import Step, StepContext


# (platform, short target) -> rust target triple understood by `maturin --target`
TARGET_TRIPLES: Dict[Tuple[str, str], str] = {
    ("linux", "x86_64"): "x86_64-unknown-linux-gnu",
    ("linux", "i686"): "i686-unknown-linux-gnu",
    ("linux", "aarch64"): "aarch64-unknown-linux-gnu",
    ("linux", "armv7"): "armv7-unknown-linux-gnueabihf",
    ("macos", "x86_64"): "x86_64-apple-darwin",
    ("macos", "aarch64"): "aarch64-apple-darwin",
    ("macos", "universal2"): "universal2-apple-darwin",
    ("windows", "x64"): "x86_64-pc-windows-msvc",
    ("windows", "x86"): "i686-pc-windows-msvc",
    ("windows", "aarch64"): "aarch64-pc-windows-msvc",
}

DEFAULT_OUT = "{{ workspace }}/dist"


def target_triple(target: str, platform: str | None = None) -> str:
    """Map a short target name to a triple; full triples pass through."""
    if "-" in target:
        return target
    return TARGET_TRIPLES.get((platform or "linux", target), target)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def build_wheels(
    name: str = "Build wheels",
    *,
    target: str | None = None,
    python: str | None = None,
    features: Sequence[str] | None = None,
    manylinux: str | None = None,
    release: bool = True,
    out: str = DEFAULT_OUT,
    args: str | None = None,
    cwd: str | None = None,
    when: Callable[[StepContext], bool] | None = None,
) -> Step:
    """Build wheels with `maturin build`. `target` may use {{ matrix.<axis> }}."""
    data = {
        "target": target,
        "python": python,
        "features": list(features or []),
        "manylinux": manylinux,
        "release": release,
        "out": out,
        "args": args,
    }
    return Step(name=name, run="maturin build", cwd=cwd, kind="maturin", data=data, when=when)


def build_sdist(
    name: str = "Build sdist",
    *,
    out: str = DEFAULT_OUT,
    args: str | None = None,
    cwd: str | None = None,
) -> Step:
    data = {"out": out, "args": args}
    return Step(name=name, run="maturin sdist", cwd=cwd, kind="sdist", data=data)


# ---------------------------------------------------------------------
# Compilation to shell steps
# ---------------------------------------------------------------------

def compile_build(step: Step, *, platform: str | None = None) -> List[Step]:
    data = step.data or {}
    parts = ["maturin", "build"]
    if data.get("release", True):
        parts.append("--release")
    if data.get("target"):
        parts += ["--target", target_triple(str(data["target"]), platform)]
    if data.get("manylinux"):
        parts += ["--manylinux", str(data["manylinux"])]
    if data.get("python"):
        parts += ["-i", f"python{data['python']}"]
    if data.get("features"):
        parts += ["--features", ",".join(data["features"])]
    parts += ["--out", data.get("out") or DEFAULT_OUT]
    if data.get("args"):
        parts += shlex.split(data["args"])

    return [Step(name=step.name, run=shlex.join(parts), cwd=step.cwd, when=step.when, secret=step.secret)]


def compile_sdist(step: Step, *, platform: str | None = None) -> List[Step]:
    data = step.data or {}
    parts = ["maturin", "sdist", "--out", data.get("out") or DEFAULT_OUT]
    if data.get("args"):
        parts += shlex.split(data["args"])
    return [Step(name=step.name, run=shlex.join(parts), cwd=step.cwd, when=step.when, secret=step.secret)]
