"""
POST /api/webhook
=================
Trigger surface. Accepts hosting-platform webhooks and starts a run for:
    - a push to the primary branch
    - a pull request opened / synchronized / reopened against it

Responses:
    202 — run started, body carries run_id and group
    204 — valid event that does not start a run
    422 — payload missing required fields
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from pydantic import BaseModel

from covpipe.agents.orchestrator import Orchestrator
from covpipe.api.dependencies import get_orchestrator
from covpipe.core.errors import UnsupportedTrigger
from covpipe.models.trigger_event import TriggerEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Trigger"])


class TriggerAccepted(BaseModel):
    run_id: str
    group: str
    epoch: int
    event_kind: str
    commit_sha: str


@router.post("/webhook", status_code=202, response_model=TriggerAccepted)
async def receive_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    if not x_github_event:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=422, detail="Body is not JSON")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=422, detail="Body must be a JSON object")

    try:
        trigger = TriggerEvent.from_webhook(
            x_github_event, payload, orchestrator.definition.triggers.primary_branch,
        )
    except UnsupportedTrigger as e:
        logger.info("Ignoring %s event: %s", x_github_event, e)
        return Response(status_code=204)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Malformed {x_github_event} payload: {e}")

    if not getattr(orchestrator.definition.triggers, trigger.event_kind):
        logger.info("%s triggers are disabled in the definition", trigger.event_kind)
        return Response(status_code=204)

    run = orchestrator.submit(trigger)
    return TriggerAccepted(
        run_id=run.run_id,
        group=run.group,
        epoch=run.epoch,
        event_kind=trigger.event_kind,
        commit_sha=trigger.commit_sha,
    )
