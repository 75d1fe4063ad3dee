"""
GET /api/artifacts/{commit_sha}
Read-only view of the handoff artifact stored for a commit. Returns 404
when there is none; a missing artifact means nothing gets published.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from covpipe.agents.orchestrator import Orchestrator
from covpipe.agents.publication_reader import find_handoff
from covpipe.api.dependencies import get_orchestrator

router = APIRouter(prefix="/api", tags=["Artifacts"])


class HandoffView(BaseModel):
    run_id: str
    commit_sha: str
    pr_number: Optional[int] = None
    artifact_name: str


@router.get("/artifacts/{commit_sha}", response_model=HandoffView)
async def get_artifact(commit_sha: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    name = orchestrator.definition.artifact.name
    bundle = find_handoff(orchestrator.store, commit_sha, name=name)
    if bundle is None:
        raise HTTPException(status_code=404, detail=f"No artifact for {commit_sha}")
    return HandoffView(
        run_id=bundle.run_id,
        commit_sha=bundle.commit_sha,
        pr_number=bundle.pr_number,
        artifact_name=name,
    )
