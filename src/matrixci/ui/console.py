"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from collections import Counter
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..model import JobInstance, Run, RunResult


REDACTED = "***"


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # value -> number of runs currently holding it
        self._secrets: Counter[str] = Counter()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Secret redaction
    # ------------------------------------------------------------------

    def add_secret(self, value: str) -> None:
        if value:
            with self._lock:
                self._secrets[value] += 1

    def discard_secret(self, value: str) -> None:
        """Drop one registration; the value stays redacted while another run holds it."""
        with self._lock:
            if self._secrets[value] > 1:
                self._secrets[value] -= 1
            else:
                self._secrets.pop(value, None)

    def redact(self, text: str) -> str:
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for s in secrets:
            text = text.replace(s, REDACTED)
        return text

    def _out(self, text: str = "", *, err: bool = False) -> None:
        print(self.redact(text), file=sys.stderr if err else sys.stdout, flush=True)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(self, workflow: str, run: "Run", job_count: int) -> None:
        """Print run start information."""
        kind = "tag" if run.is_tag else "branch"
        self._out("\nRUN STARTED")
        self._out(f"Workflow: {workflow}")
        self._out(f"Run ID: {run.run_id}")
        self._out(f"Event: {run.event} ({kind} {run.ref})")
        self._out(f"Jobs: {job_count}")
        self._out()

    def print_not_triggered(self, kind: str, ref: str) -> None:
        self._out(f"No run created: {kind} event for '{ref}' matches no trigger")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {name} (condition false)")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._out(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        self._out(f"{prefix}: {name}")
        if exit_code is not None:
            self._out(f"Exit code: {exit_code}")
        if hint:
            self._out(f"Hint: {hint}")
        if self.debug:
            self._out(f"Error details: {reason}")
        else:
            # Last lines of output are usually the useful ones
            tail = [line for line in (reason or "").splitlines() if line.strip()][-10:]
            for line in tail or ["Unknown error"]:
                self._out(f"  {line}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_artifact_committed(self, job: str, key: str, file_count: int) -> None:
        self._out(f"[{job}] ARTIFACT: committed '{key}' ({file_count} file(s))")

    def print_artifact_restored(self, job: str, pattern: str, slot_keys: Iterable[str]) -> None:
        keys = ", ".join(slot_keys) or "none"
        self._out(f"[{job}] ARTIFACT: restored '{pattern}' <- {keys}")

    def print_publish_result(self, job: str, artifact: str, status: str, detail: str = "") -> None:
        line = f"[{job}] PUBLISH: {artifact} {status}"
        if detail and (self.debug or status == "failed"):
            line += f" ({detail})"
        self._out(line)

    def print_output(self, job: str, output: str) -> None:
        """Print captured step output (debug mode only)."""
        if self.debug and output.strip():
            for line in output.rstrip().splitlines():
                self._out(f"[{job}] | {line}")

    # ------------------------------------------------------------------
    # Plans and results
    # ------------------------------------------------------------------

    def print_plan_level(self, index: int, names: list[str]) -> None:
        self._out(f"Stage {index}: {', '.join(names)}")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._out(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        self._out(f"  {name} (skipped: {reason})")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out("RESULTS")
        self._out("=" * 40)
        for iid, inst in result.instances.items():
            line = f"  {iid}: {inst.state.value.upper()}"
            if inst.reason:
                line += f" ({inst.reason})"
            self._out(line)
        for inst in result.failures():
            self._print_failure_summary(inst)
        self._out(f"\nRUN {result.status.upper()}")

    def _print_failure_summary(self, inst: "JobInstance") -> None:
        step = inst.failed_step or "<setup>"
        code = inst.exit_code if inst.exit_code is not None else "n/a"
        self._out(f"\n  {inst.id} failed at step '{step}' (exit={code})")
        for line in inst.output.rstrip().splitlines()[-10:]:
            self._out(f"    {line}")

    # ------------------------------------------------------------------
    # Errors and misc
    # ------------------------------------------------------------------

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        self._out(f"\nERROR: {title}", err=True)
        self._out(f"{message}", err=True)
        if details:
            for detail in details:
                self._out(f"  {detail}", err=True)
        if suggestion:
            self._out(f"\n{suggestion}", err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(exc)), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
