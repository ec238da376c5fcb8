from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .. import settings
from ..dag import ConfigurationError
from ..model import JobInstance, Run, RunResult, Workflow
from ..runner import CancelToken, load_workflow, prepare, run_pipeline
from ..trigger import EventPayload, evaluate, match_reason

# -------------------- Schemas --------------------

class EventResponse(BaseModel):
    triggered: bool
    reason: str | None = None
    run_id: str | None = None
    superseded: list[str] = Field(default_factory=list)


class JobStatus(BaseModel):
    id: str
    job: str
    state: str
    matrix: dict[str, str] = Field(default_factory=dict)
    reason: str | None = None
    failed_step: str | None = None
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RunStatus(BaseModel):
    run_id: str
    event: str
    ref: str
    is_tag: bool
    status: str  # running|success|failure|cancelled|error
    error: str | None = None
    jobs: list[JobStatus]


# -------------------- Run registry (in memory) --------------------

@dataclass
class RunRecord:
    run: Run
    instances: Dict[str, JobInstance]
    cancel: CancelToken
    result: Optional[RunResult] = None
    error: Optional[str] = None
    thread: Optional[threading.Thread] = None

    @property
    def status(self) -> str:
        if self.result is not None:
            return self.result.status
        if self.error is not None:
            return "error"
        return "running"

    def to_status(self) -> RunStatus:
        return RunStatus(
            run_id=self.run.run_id,
            event=self.run.event,
            ref=self.run.ref,
            is_tag=self.run.is_tag,
            status=self.status,
            error=self.error,
            jobs=[
                JobStatus(
                    id=inst.id,
                    job=inst.name,
                    state=inst.state.value,
                    matrix=inst.matrix,
                    reason=inst.reason,
                    failed_step=inst.failed_step,
                    exit_code=inst.exit_code,
                    started_at=inst.started_at,
                    finished_at=inst.finished_at,
                )
                for inst in list(self.instances.values())
            ],
        )


class RunRegistry:
    def __init__(self, keep_finished: int | None = None) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, RunRecord] = {}
        self.keep_finished = settings.KEEP_FINISHED_RUNS if keep_finished is None else keep_finished

    def admit(self, record: RunRecord, *, supersede: bool = True) -> list[str]:
        """
        Register a new run. With `supersede`, a push cancels the running pushes
        on its ref first; returns their run ids. Finished runs beyond
        `keep_finished` are forgotten, oldest first.
        """
        run = record.run
        superseded: list[str] = []
        with self._lock:
            if supersede and run.event == "push":
                for other in self._runs.values():
                    if other.status == "running" and other.run.event == "push" and other.run.ref == run.ref:
                        other.cancel.cancel(f"superseded by run {run.run_id}")
                        superseded.append(other.run.run_id)
            self._runs[run.run_id] = record

            finished = [run_id for run_id, r in self._runs.items() if r.status != "running"]
            for run_id in finished[: max(0, len(finished) - self.keep_finished)]:
                del self._runs[run_id]
        return superseded

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._runs.get(run_id)


# -------------------- App --------------------

def create_app(
    workflow: Workflow | None = None,
    *,
    cancel_superseded: bool = True,
    keep_finished: int | None = None,
    **run_options: Any,
) -> FastAPI:
    """
    Webhook receiver: POST an event, get a run (or not), poll its status.

    `run_options` are passed through to run_pipeline (artifact_root, work_root,
    repo_root, max_workers, platforms, ...). Without `workflow`, the file named
    by MATRIXCI_WORKFLOW is loaded on the first event.
    """
    app = FastAPI(title="matrixci trigger service")
    registry = RunRegistry(keep_finished)
    app.state.registry = registry
    loaded: Dict[str, Workflow] = {}
    if workflow is not None:
        loaded["workflow"] = workflow

    def get_workflow() -> Workflow:
        if "workflow" not in loaded:
            loaded["workflow"] = load_workflow(settings.WORKFLOW)
        return loaded["workflow"]

    def execute(record: RunRecord, wf: Workflow) -> None:
        try:
            record.result = run_pipeline(
                wf,
                record.run,
                instances=record.instances,
                cancel=record.cancel,
                secrets=settings.publish_credentials(),
                **run_options,
            )
        except Exception as e:
            record.error = f"{type(e).__name__}: {e}"

    @app.post("/events", response_model=EventResponse)
    def receive_event(event: EventPayload):
        wf = get_workflow()
        reason = match_reason(wf.triggers, event)
        run = evaluate(wf.triggers, event)
        if run is None:
            return EventResponse(triggered=False)

        try:
            instances = prepare(wf)
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        record = RunRecord(run=run, instances=instances, cancel=CancelToken())
        superseded = registry.admit(record, supersede=cancel_superseded)
        record.thread = threading.Thread(
            target=execute,
            args=(record, wf),
            name=f"matrixci-run-{run.run_id}",
            daemon=True,
        )
        record.thread.start()

        return EventResponse(triggered=True, reason=reason, run_id=run.run_id, superseded=superseded)

    @app.get("/runs/{run_id}", response_model=RunStatus)
    def get_run(run_id: str):
        record = registry.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return record.to_status()

    @app.post("/runs/{run_id}/cancel", response_model=RunStatus)
    def cancel_run(run_id: str):
        record = registry.get(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        if record.status == "running":
            record.cancel.cancel("cancelled via API")
        return record.to_status()

    return app
