# step_workflows/smoke.py
from __future__ import annotations

import shlex
from typing import Callable, List, Sequence

from ..model import Step, StepContext

VENV_DIR = "{{ workspace }}/venv"

# Run by the venv interpreter: expand the artifact pattern itself (neither
# cmd.exe nor pip expands globs) and install the matches.
INSTALL_SCRIPT = """\
import glob, subprocess, sys
files = sorted(glob.glob(sys.argv[1]))
if not files:
    sys.exit("no artifact matches " + sys.argv[1])
sys.exit(subprocess.call([sys.executable, "-m", "pip", "install", "--disable-pip-version-check", "--force-reinstall", *files]))
"""


def venv_python(platform: str | None = None, venv: str = VENV_DIR) -> str:
    if platform == "windows":
        return f"{venv}/Scripts/python.exe"
    return f"{venv}/bin/python"


def install_and_import(
    package: str,
    *,
    name: str = "Install and test built wheel",
    artifact: str | None = None,
    module: str | None = None,
    scripts: Sequence[str] = (),
    python: str = "python",
    cwd: str | None = None,
    when: Callable[[StepContext], bool] | None = None,
) -> Step:
    """
    Install a freshly built artifact and smoke-test it.

    Compiles to: a fresh venv in the job workspace, install (force-reinstall)
    of every file matching `artifact`, `import <module>`, then one step per
    example script, all with the venv interpreter. `python` only creates the
    venv. `artifact` defaults to the package's wheels in the job workspace.
    """
    data = {
        "package": package,
        "artifact": artifact or f"{{{{ workspace }}}}/dist/{package}-*.whl",
        "module": module or package.replace("-", "_"),
        "scripts": list(scripts),
        "python": python,
    }
    return Step(name=name, run=f"smoke-test {package}", cwd=cwd, kind="smoke", data=data, when=when)


def compile_smoke(step: Step, *, platform: str | None = None) -> List[Step]:
    data = step.data or {}
    python = data.get("python") or "python"
    module = data["module"]
    venv_py = venv_python(platform)

    def make(suffix: str, argv: List[str]) -> Step:
        return Step(name=f"{step.name} ({suffix})", run=shlex.join(argv), cwd=step.cwd, when=step.when)

    out: List[Step] = [
        make("venv", [python, "-m", "venv", "--clear", VENV_DIR]),
        make("install", [venv_py, "-c", INSTALL_SCRIPT, data["artifact"]]),
        make("import", [venv_py, "-c", f"import {module}"]),
    ]
    for script in data.get("scripts") or []:
        out.append(make(script, [venv_py, script]))
    return out
