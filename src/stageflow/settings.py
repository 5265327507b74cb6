from __future__ import annotations
import os


def _optional(name: str, cast):
    raw = os.environ.get(name, "").strip()
    return cast(raw) if raw else None


WORK_DIR = os.environ.get("STAGEFLOW_WORK_DIR", ".stageflow/work")
ARTIFACT_DIR = os.environ.get("STAGEFLOW_ARTIFACT_DIR", ".stageflow/artifacts")
MAX_WORKERS = _optional("STAGEFLOW_MAX_WORKERS", int)
APPROVAL_TIMEOUT = _optional("STAGEFLOW_APPROVAL_TIMEOUT", float)
WORKFLOW = os.environ.get("STAGEFLOW_WORKFLOW")
