# runner.py
from __future__ import annotations

import os
import runpy
import shutil
import signal
import subprocess
import tarfile
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Collection, Dict, List, Mapping, Optional

from . import gate, settings
from .artifacts import ArtifactChannel, ArtifactCollision, ArtifactNotFound, ArtifactSlot, DuplicateWriteError
from .dag import validate
from .matrix import expand_all, substitute
from .model import (
    Credentials,
    Job,
    JobInstance,
    JobState,
    Run,
    RunResult,
    Step,
    StepContext,
    StepResult,
    Workflow,
    utc_now,
)
from .publish import Publisher, index_for
from .ui.console import get_console


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


TOOL_HINTS = {
    "maturin": "Install maturin (e.g., pip install maturin).",
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "rustc": "Install the Rust toolchain (rustup) or fix PATH.",
    "twine": "Install twine (e.g., pip install twine).",
    "pip": "Install pip or fix PATH.",
    "python": "Install Python or fix PATH (python).",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# Credential variables never handed to steps that are not scoped to a secret.
SECRET_ENV_VARS = ("TWINE_USERNAME", "TWINE_PASSWORD")

OUTPUT_TAIL = 4000
POLL_SECONDS = 0.2


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define one of:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    obj = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        obj = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        obj = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        obj = globals_dict["JOBS"]

    if isinstance(obj, list) and all(isinstance(j, Job) for j in obj):
        obj = Workflow(name=wf_path.stem, jobs=obj)

    if not isinstance(obj, Workflow):
        raise TypeError(
            "Workflow file must return/define a Workflow or a List[Job]. "
            "Define workflow() -> Workflow, WORKFLOW = wf(...) or JOBS = [Job, ...]."
        )
    return obj


# ----------------------------------------------------------------------
# Errors and cancellation
# ----------------------------------------------------------------------

@dataclass
class StepFailure(Exception):
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class StepCancelled(Exception):
    pass


class CancelToken:
    """Set once to cancel a run; every worker checks it between and during steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()


@dataclass
class JobOutcome:
    """What a worker reports back; only the scheduler applies it to the instance."""
    state: JobState
    step_results: List[StepResult] = field(default_factory=list)
    failed_step: str | None = None
    exit_code: int | None = None
    output: str = ""
    reason: str | None = None
    slot: ArtifactSlot | None = None


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _step_env(
    instance: JobInstance,
    step: Step,
    run: Run,
    workspace: Path,
    workflow_env: Mapping[str, str],
    secrets: Mapping[str, Credentials],
) -> Dict[str, str]:
    env = os.environ.copy()
    for name in (*SECRET_ENV_VARS, settings.PUBLISH_TOKEN_ENV):
        env.pop(name, None)

    env.update(workflow_env)
    env.update(instance.env)
    env.update({
        "MATRIXCI": "true",
        "MATRIXCI_RUN_ID": run.run_id,
        "MATRIXCI_EVENT": run.event,
        "MATRIXCI_REF": run.ref,
        "MATRIXCI_IS_TAG": "true" if run.is_tag else "false",
        "MATRIXCI_JOB": instance.id,
        "MATRIXCI_WORKSPACE": str(workspace),
        "MATRIXCI_PLATFORM": instance.job.platform or "",
    })
    for axis, value in instance.matrix.items():
        env[f"MATRIXCI_MATRIX_{axis.upper()}"] = value

    if step.secret:
        env.update(_credentials_for(instance, step, secrets).env())
    return env


def _credentials_for(instance: JobInstance, step: Step, secrets: Mapping[str, Credentials]) -> Credentials:
    creds = secrets.get(step.secret or "")
    if creds is None:
        raise CIError(
            kind="secret_missing",
            job=instance.id,
            step=step.name,
            message=f"secret '{step.secret}' was not provided to this run",
            details={"hint": f"export {settings.PUBLISH_TOKEN_ENV}=<token> before running"},
        )
    return creds


def _shell_argv(command: str) -> tuple[list[str] | str, bool]:
    """(Popen args, shell flag) for a step command. Steps are POSIX shell syntax."""
    shell = settings.SHELL
    if shell is None and os.name == "nt":
        shell = shutil.which("bash")
    if shell:
        return [shell, "-c", command], False
    return command, True


def _signal(proc: subprocess.Popen, sig: int) -> None:
    """Signal the step's whole process group (the shell and whatever it started)."""
    if os.name == "posix":
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
    elif sig == signal.SIGTERM:
        proc.terminate()
    else:
        proc.kill()


def _run_shell_step(
    instance: JobInstance,
    step: Step,
    repo_root: Path,
    workspace: Path,
    env: Dict[str, str],
    cancel: CancelToken,
) -> str:
    runtime = {"workspace": workspace.as_posix()}
    where = f"job '{instance.id}' step '{step.name}'"
    command = substitute(step.run, runtime, where=where, keep=())

    cwd = (repo_root / substitute(step.cwd or ".", runtime, where=where, keep=())).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{instance.id}] step '{step.name}' cwd not found: {cwd}")

    args, use_shell = _shell_argv(command)
    proc = subprocess.Popen(
        args,
        shell=use_shell,
        cwd=str(cwd),
        env=env,
        text=True,
        errors="replace",
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=(os.name == "posix"),
    )

    while True:
        try:
            out, _ = proc.communicate(timeout=POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if cancel.is_set():
                _signal(proc, signal.SIGTERM)
                try:
                    proc.communicate(timeout=5)
                except subprocess.TimeoutExpired:
                    _signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
                    proc.communicate()
                raise StepCancelled(step.name)

    output = out or ""
    if proc.returncode != 0:
        raise StepFailure(
            job=instance.id,
            step=step.name,
            cmd=command,
            exit_code=proc.returncode,
            output=output[-OUTPUT_TAIL:],
        )
    return output


def _run_publish_step(
    instance: JobInstance,
    step: Step,
    workspace: Path,
    secrets: Mapping[str, Credentials],
) -> str:
    console = get_console()
    data = step.data or {}
    directory = workspace / data.get("path", "dist")
    creds = _credentials_for(instance, step, secrets) if step.secret else None

    publisher = Publisher(index_for(data.get("repository", "pypi"), data.get("repository_url")), creds)
    results = publisher.publish(directory)

    if not results:
        raise StepFailure(
            job=instance.id, step=step.name, cmd=step.run, exit_code=1,
            output=f"no artifacts to publish in {directory}",
        )

    lines = []
    for r in results:
        console.print_publish_result(instance.id, r.artifact, r.status, r.detail)
        lines.append(f"{r.artifact}: {r.status}" + (f" ({r.detail})" if r.detail else ""))

    failed = [r for r in results if r.status == "failed"]
    if failed:
        lines.append(f"{len(failed)} of {len(results)} artifact(s) failed to publish")
        raise StepFailure(job=instance.id, step=step.name, cmd=step.run, exit_code=1, output="\n".join(lines))
    return "\n".join(lines)


def run_instance(
    instance: JobInstance,
    run: Run,
    channel: ArtifactChannel,
    *,
    repo_root: str | Path = ".",
    work_root: str | Path = settings.WORK_ROOT,
    workflow_env: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, Credentials]] = None,
    cancel: Optional[CancelToken] = None,
) -> JobOutcome:
    """
    Run one job instance: restore downloads, run steps in order until the first
    failure, then commit the upload slot. Never raises for step failures.
    """
    console = get_console()
    cancel = cancel or CancelToken()
    secrets = secrets or {}
    workflow_env = workflow_env or {}
    repo_root_p = Path(repo_root).resolve()

    workspace = (Path(work_root) / instance.id).resolve()
    if workspace.exists():
        shutil.rmtree(workspace)
    workspace.mkdir(parents=True)

    console.print_job_start(instance.id)

    # ---- tools ----
    missing = [t for t in instance.job.requires if shutil.which(t) is None]
    if missing:
        hints = [TOOL_HINTS.get(t, f"Install {t} or fix PATH.") for t in missing]
        console.print_failure(instance.id, "\n".join(hints), hint=hints[0], is_job=True)
        return JobOutcome(JobState.FAILED, reason=f"missing tools: {', '.join(missing)}", output="\n".join(hints))

    # ---- downloads ----
    for d in instance.download:
        try:
            slots = channel.get(d.pattern, workspace / d.path, merge=d.merge)
        except (ArtifactNotFound, ArtifactCollision, OSError, tarfile.TarError) as e:
            console.print_failure(instance.id, str(e), is_job=True)
            return JobOutcome(JobState.FAILED, reason="artifact download failed", output=str(e))
        console.print_artifact_restored(instance.id, d.pattern, [s.key for s in slots])

    # ---- steps ----
    results: List[StepResult] = []
    ctx = StepContext(run=run, job=instance.id, matrix=dict(instance.matrix))
    for step in instance.steps:
        if cancel.is_set():
            return JobOutcome(JobState.SKIPPED, results, reason=cancel.reason)

        if step.when is not None and not step.when(ctx):
            console.print_step_skipped(instance.id, step.name)
            results.append(StepResult(step.name, "skipped"))
            continue

        console.print_step(instance.id, step.name)
        try:
            env = _step_env(instance, step, run, workspace, workflow_env, secrets)
            if step.kind == "publish":
                output = _run_publish_step(instance, step, workspace, secrets)
            else:
                output = _run_shell_step(instance, step, repo_root_p, workspace, env, cancel)
        except StepCancelled:
            results.append(StepResult(step.name, "skipped"))
            return JobOutcome(JobState.SKIPPED, results, reason=cancel.reason)
        except StepFailure as e:
            results.append(StepResult(step.name, "failed", e.exit_code))
            console.print_failure(f"{instance.id} / {step.name}", e.output or str(e), exit_code=e.exit_code)
            return JobOutcome(
                JobState.FAILED,
                results,
                failed_step=step.name,
                exit_code=e.exit_code,
                output=e.output,
                reason=f"step '{step.name}' failed",
            )
        except (CIError, OSError) as e:
            results.append(StepResult(step.name, "failed"))
            console.print_failure(f"{instance.id} / {step.name}", str(e))
            return JobOutcome(
                JobState.FAILED,
                results,
                failed_step=step.name,
                output=str(e),
                reason=f"step '{step.name}' could not run",
            )

        console.print_output(instance.id, output)
        results.append(StepResult(step.name, "ok", 0))

    # ---- upload ----
    slot = None
    if instance.upload is not None:
        if cancel.is_set():
            return JobOutcome(JobState.SKIPPED, results, reason=cancel.reason)
        try:
            slot = channel.put(instance.upload.name, instance.id, workspace / instance.upload.path)
        except (DuplicateWriteError, OSError, tarfile.TarError) as e:
            console.print_failure(instance.id, str(e), is_job=True)
            return JobOutcome(JobState.FAILED, results, reason="artifact upload failed", output=str(e))
        if cancel.is_set():
            channel.discard(slot.key, slot.producer)
            return JobOutcome(JobState.SKIPPED, results, reason=cancel.reason)
        console.print_artifact_committed(instance.id, slot.key, len(slot.files))

    console.print_success(instance.id)
    return JobOutcome(JobState.SUCCEEDED, results, slot=slot)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

def prepare(workflow: Workflow) -> Dict[str, JobInstance]:
    """Validate the job graph and expand it into wired job instances."""
    validate(workflow.jobs)
    return expand_all(workflow.jobs)


def run_pipeline(
    workflow: Workflow,
    run: Run,
    *,
    repo_root: str | Path = ".",
    artifact_root: str | Path | None = None,
    work_root: str | Path | None = None,
    secrets: Optional[Mapping[str, Credentials]] = None,
    max_workers: int | None = None,
    platforms: Optional[Collection[str]] = None,
    fail_fast: bool = False,
    keep_artifacts: bool = False,
    cancel: Optional[CancelToken] = None,
    instances: Optional[Dict[str, JobInstance]] = None,
) -> RunResult:
    """
    Execute one run over the workflow's job graph.

    Ready instances go to a thread pool; after every completion the gate is
    re-evaluated for the rest. Instance state is only written here, never by
    workers. Raises ConfigurationError before anything runs if the graph is
    invalid.
    """
    console = get_console()
    if instances is None:
        instances = prepare(workflow)
    cancel = cancel or CancelToken()
    secrets = dict(secrets or {})
    platform_set = set(platforms) if platforms is not None else None
    run_work_root = Path(work_root or settings.WORK_ROOT).resolve() / run.run_id

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = settings.MAX_WORKERS or max(1, c - 1)

    for creds in secrets.values():
        console.add_secret(creds.token)

    console.print_run_started(workflow.name, run, len(instances))
    channel = ArtifactChannel(artifact_root or settings.ARTIFACT_ROOT, run.run_id)

    in_flight: Dict[Future, str] = {}
    stop_scheduling = False

    def skip(inst: JobInstance, reason: str | None) -> None:
        inst.state = JobState.SKIPPED
        inst.reason = reason
        inst.finished_at = utc_now()
        console.print_job_skipped(inst.id, reason or "skipped")

    def admit() -> List[JobInstance]:
        ready: List[JobInstance] = []
        changed = True
        while changed:
            changed = False
            states = {iid: i.state for iid, i in instances.items()}
            for inst in instances.values():
                if inst.state not in (JobState.PENDING, JobState.BLOCKED):
                    continue
                try:
                    ok = gate.check(inst, states, run, platforms=platform_set)
                except gate.DependencyUnmet as e:
                    skip(inst, e.reason)
                    changed = True
                    continue
                if ok:
                    inst.state = JobState.RUNNING
                    inst.started_at = utc_now()
                    ready.append(inst)
                else:
                    inst.state = JobState.BLOCKED
        return ready

    def apply(inst: JobInstance, outcome: JobOutcome) -> None:
        inst.step_results = outcome.step_results
        inst.failed_step = outcome.failed_step
        inst.exit_code = outcome.exit_code
        inst.output = console.redact(outcome.output)
        if outcome.state is JobState.SKIPPED:
            skip(inst, outcome.reason)
            return
        inst.state = outcome.state
        inst.reason = outcome.reason
        inst.finished_at = utc_now()

    try:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            while True:
                if cancel.is_set() or stop_scheduling:
                    reason = cancel.reason if cancel.is_set() else "fail-fast"
                    for inst in instances.values():
                        if inst.state in (JobState.PENDING, JobState.BLOCKED):
                            skip(inst, reason)
                else:
                    for inst in admit():
                        fut = pool.submit(
                            run_instance,
                            inst,
                            run,
                            channel,
                            repo_root=repo_root,
                            work_root=run_work_root,
                            workflow_env=workflow.env,
                            secrets=secrets,
                            cancel=cancel,
                        )
                        in_flight[fut] = inst.id

                if not in_flight:
                    break

                try:
                    done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    cancel.cancel("cancelled by user")
                    continue

                for fut in done:
                    inst = instances[in_flight.pop(fut)]
                    try:
                        outcome = fut.result()
                    except Exception as e:
                        console.print_exception(e)
                        outcome = JobOutcome(JobState.FAILED, reason=f"{type(e).__name__}: {e}", output=str(e))
                    apply(inst, outcome)
                    if fail_fast and inst.state is JobState.FAILED:
                        stop_scheduling = True
    finally:
        if not keep_artifacts:
            channel.destroy()
            shutil.rmtree(run_work_root, ignore_errors=True)
        for creds in secrets.values():
            console.discard_secret(creds.token)

    if cancel.is_set():
        status = "cancelled"
    elif any(i.state is JobState.FAILED for i in instances.values()):
        status = "failure"
    else:
        status = "success"

    return RunResult(run=run, status=status, instances=instances)
