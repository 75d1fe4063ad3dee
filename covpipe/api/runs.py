"""
GET /api/runs, GET /api/runs/{run_id}
Run status polling. The pass/fail check for a change is the run's
conclusion.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from covpipe.agents.orchestrator import Orchestrator
from covpipe.api.dependencies import get_orchestrator
from covpipe.models.pipeline_run import PipelineRun

router = APIRouter(prefix="/api", tags=["Runs"])


@router.get("/runs", response_model=List[PipelineRun])
async def list_runs(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.list_runs()


@router.get("/runs/{run_id}", response_model=PipelineRun)
async def get_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    run = orchestrator.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Unknown run {run_id}")
    return run
