from __future__ import annotations

from typing import Callable, Dict, List

from ..model import Step
from . import maturin, smoke

# Typed steps compiled into shell steps. The runner never sees these kinds.
COMPILERS: Dict[str, Callable[..., List[Step]]] = {
    "maturin": maturin.compile_build,
    "sdist": maturin.compile_sdist,
    "smoke": smoke.compile_smoke,
}


def compile_steps(steps: List[Step], *, platform: str | None = None) -> List[Step]:
    out: List[Step] = []
    for step in steps:
        compiler = COMPILERS.get(step.kind or "")
        if compiler is None:
            out.append(step)
        else:
            out.extend(compiler(step, platform=platform))
    return out
