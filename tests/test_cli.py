import json
import textwrap

import pytest
from click.testing import CliRunner

from matrixci.cli import cli

WORKFLOW = textwrap.dedent(
    """
    import shlex
    import sys

    from matrixci.dsl import job, matrix, sh, tag_push, wf

    PY = shlex.quote(sys.executable)


    def workflow():
        return wf(
            job("build", sh("Build {{ matrix.target }}", PY + " -c " + shlex.quote(BUILD)), matrix=matrix(target=["a", "b"])),
            job("release", sh("Publish", PY + " -c pass"), needs=["build"], when=tag_push("v*")),
            name="demo",
        )
    """
)

PASSING = "BUILD = 'pass'\n" + WORKFLOW
FAILING = "BUILD = 'import os, sys; sys.exit(4 if os.environ[\"MATRIXCI_MATRIX_TARGET\"] == \"b\" else 0)'\n" + WORKFLOW

CYCLIC = textwrap.dedent(
    """
    from matrixci.dsl import job, sh

    JOBS = [
        job("a", sh("a", "true"), needs=["b"]),
        job("b", sh("b", "true"), needs=["a"]),
    ]
    """
)


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    def write(source, name="matrixci_workflow.py"):
        path = tmp_path / name
        path.write_text(source)
        return path

    return write


def _invoke(*args):
    return CliRunner().invoke(cli, list(args))


def _run_args(tmp_path, *extra):
    return ["run", "--artifact-dir", str(tmp_path / "artifacts"), "--work-dir", str(tmp_path / "work"), *extra]


def test_validate_reports_jobs_and_instances(project):
    path = project(PASSING)
    result = _invoke("validate", "--workflow", str(path))
    assert result.exit_code == 0, result.output
    assert "Workflow OK: 2 job(s), 3 instance(s)" in result.output


def test_validate_discovers_default_workflow(project):
    project(PASSING)
    result = _invoke("validate")
    assert result.exit_code == 0, result.output
    assert "Workflow OK" in result.output


def test_validate_rejects_cyclic_graph(project):
    path = project(CYCLIC, "cyclic_workflow.py")
    result = _invoke("validate", "--workflow", str(path))
    assert result.exit_code == 1


def test_multiple_workflow_files_need_explicit_choice(project):
    project(PASSING, "a_workflow.py")
    project(PASSING, "b_workflow.py")
    assert _invoke("validate").exit_code == 1


def test_missing_workflow_file(project):
    assert _invoke("validate", "--workflow", "nope.py").exit_code == 1


def test_branch_push_runs_builds_and_skips_release(project, tmp_path):
    path = project(PASSING)
    result = _invoke(*_run_args(tmp_path, "--workflow", str(path), "--ref", "main"))
    assert result.exit_code == 0, result.output
    assert "build-a: SUCCEEDED" in result.output
    assert "release: SKIPPED (condition not met: tag push matching 'v*')" in result.output
    assert "RUN SUCCESS" in result.output


def test_tag_push_runs_release(project, tmp_path):
    path = project(PASSING)
    result = _invoke(*_run_args(tmp_path, "--workflow", str(path), "--ref", "v1.0", "--tag"))
    assert result.exit_code == 0, result.output
    assert "release: SUCCEEDED" in result.output


def test_event_file_with_full_tag_ref(project, tmp_path):
    path = project(PASSING)
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"kind": "push", "ref": "refs/tags/v2.0"}))
    result = _invoke(*_run_args(tmp_path, "--workflow", str(path), "--event-file", str(event)))
    assert result.exit_code == 0, result.output
    assert "Event: push (tag v2.0)" in result.output
    assert "release: SUCCEEDED" in result.output


def test_invalid_event_file(project, tmp_path):
    path = project(PASSING)
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"kind": "schedule", "ref": "main"}))
    result = _invoke(*_run_args(tmp_path, "--workflow", str(path), "--event-file", str(event)))
    assert result.exit_code == 1


def test_unmatched_event_is_not_an_error(project, tmp_path):
    path = project(PASSING)
    result = _invoke(*_run_args(tmp_path, "--workflow", str(path), "--ref", "feature/x"))
    assert result.exit_code == 0, result.output
    assert "No run created: push event for 'feature/x' matches no trigger" in result.output
    assert "RUN STARTED" not in result.output


def test_failed_job_exits_nonzero(project, tmp_path):
    path = project(FAILING)
    result = _invoke(*_run_args(tmp_path, "--workflow", str(path), "--ref", "v1.0", "--tag"))
    assert result.exit_code == 1
    assert "build-b: FAILED" in result.output
    assert "build-a: SUCCEEDED" in result.output
    assert "release: SKIPPED (upstream 'build-b' failed)" in result.output
    assert "RUN FAILURE" in result.output


def test_plan_shows_stages_and_skipped_release(project):
    path = project(PASSING)
    result = _invoke("plan", "--workflow", str(path), "--ref", "main")
    assert result.exit_code == 0, result.output
    assert "Trigger: push to 'main'" in result.output
    assert "Stage 1: build" in result.output
    assert "build-a, build-b (2 instance(s))" in result.output
    assert "release (skipped: condition not met: tag push matching 'v*')" in result.output


def test_plan_on_tag(project):
    path = project(PASSING)
    result = _invoke("plan", "--workflow", str(path), "--ref", "refs/tags/v1.0")
    assert result.exit_code == 0, result.output
    assert "release (1 instance(s), needs build)" in result.output


def test_plan_for_unmatched_event(project):
    path = project(PASSING)
    result = _invoke("plan", "--workflow", str(path), "--event", "pull_request", "--ref", "x", "--base-ref", "dev")
    assert result.exit_code == 0, result.output
    assert "No run created" in result.output
