"""
Runs API
========
POST /runs            — start a run in the background
GET  /runs            — stored runs, newest first (summaries)
GET  /runs/{number}   — full record of one run
GET  /pipeline        — the loaded pipeline definition

The RunManager lives on ``app.state.manager``; main.py builds one from
configuration on first use, tests inject their own.
"""
import re
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, field_validator

from cirunner.core.config import DEFAULT_BRANCH
from cirunner.core.exceptions import PipelineDefinitionError, RunNotFoundError
from cirunner.services.run_manager import RunInProgressError, RunManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Runs"])

_BRANCH_RE = re.compile(r"^[\w./-]+$")


class StartRunRequest(BaseModel):
    branch: str = DEFAULT_BRANCH
    changed_paths: Optional[List[str]] = None

    @field_validator("branch")
    @classmethod
    def validate_branch(cls, v: str) -> str:
        v = v.strip()
        if not v or not _BRANCH_RE.match(v) or ".." in v:
            raise ValueError("Invalid branch name")
        return v


class StartRunResponse(BaseModel):
    build_number: int
    pipeline: str
    branch: str
    status: str = "running"


def get_manager(request: Request) -> RunManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        factory = getattr(request.app.state, "manager_factory", None)
        if factory is None:
            raise HTTPException(status_code=503, detail="Runner not configured")
        try:
            manager = factory()
        except PipelineDefinitionError as e:
            raise HTTPException(status_code=503, detail=f"Invalid pipeline definition: {e}")
        request.app.state.manager = manager
    return manager


@router.post("/runs", response_model=StartRunResponse, status_code=202)
async def start_run(body: StartRunRequest, request: Request):
    manager = get_manager(request)
    try:
        build_number = manager.start_run(body.branch, body.changed_paths)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return StartRunResponse(
        build_number=build_number,
        pipeline=manager.definition.name,
        branch=body.branch,
    )


@router.get("/runs")
async def list_runs(request: Request):
    manager = get_manager(request)
    runs = [run.summary() for run in manager.history.list_runs()]
    active = manager.active_build()
    return {"pipeline": manager.definition.name, "active_build": active, "runs": runs}


@router.get("/runs/{build_number}")
async def get_run(build_number: int, request: Request):
    manager = get_manager(request)
    if manager.is_running(build_number):
        return {"build_number": build_number, "status": "running"}
    try:
        run = manager.history.get_run(build_number)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return run.model_dump(mode="json")


@router.get("/pipeline")
async def get_pipeline(request: Request):
    manager = get_manager(request)
    return manager.definition.model_dump(mode="json")
