from __future__ import annotations
import os
from typing import Dict

from .model import Credentials

ARTIFACT_ROOT = os.environ.get("MATRIXCI_ARTIFACT_ROOT", ".matrixci/artifacts")
WORK_ROOT = os.environ.get("MATRIXCI_WORK_ROOT", ".matrixci/work")
MAX_WORKERS = int(os.environ["MATRIXCI_MAX_WORKERS"]) if os.environ.get("MATRIXCI_MAX_WORKERS") else None
WORKFLOW = os.environ.get("MATRIXCI_WORKFLOW", "matrixci_workflow.py")
# Shell that runs step commands as `<shell> -c <command>`. Unset: /bin/sh on POSIX,
# bash from PATH on Windows (cmd.exe when there is none).
SHELL = os.environ.get("MATRIXCI_SHELL") or None
# Finished runs the trigger service keeps for status queries.
KEEP_FINISHED_RUNS = int(os.environ.get("MATRIXCI_KEEP_FINISHED_RUNS", "200"))

PUBLISH_SECRET = "pypi"
PUBLISH_USERNAME = os.environ.get("MATRIXCI_PUBLISH_USERNAME", "__token__")
PUBLISH_TOKEN_ENV = os.environ.get("MATRIXCI_PUBLISH_TOKEN_ENV", "PYPI_TOKEN")


def publish_credentials() -> Dict[str, Credentials]:
    """Credentials for the publish step, read at run start. Empty when no token is set."""
    token = os.environ.get(PUBLISH_TOKEN_ENV)
    if not token:
        return {}
    return {PUBLISH_SECRET: Credentials(username=PUBLISH_USERNAME, token=token)}
