"""
Trigger Event Model
===================
Immutable description of what started a run.

Fields:
    event_kind   — "push" | "pull_request"
    ref          — full git ref the run is grouped by (refs/heads/main,
                   refs/pull/42/merge)
    commit_sha   — commit that is checked out and recorded in the artifact;
                   for pull requests this is the PR head SHA
    pr_number    — reviewable-change number, None for pushes
    base_ref     — branch a pull request targets
    repository   — clone URL

Trust:
    Only pushes to the primary branch are trusted. A pull request is
    untrusted even when opened from a branch of the same repository.
"""
from typing import Literal, Optional

from pydantic import BaseModel

from covpipe.core.constants import PR_ACTIONS
from covpipe.core.errors import UnsupportedTrigger


class TriggerEvent(BaseModel):
    event_kind: Literal["push", "pull_request"]
    ref: str
    commit_sha: str
    pr_number: Optional[int] = None
    base_ref: str = ""
    repository: str = ""

    model_config = {"frozen": True}

    def is_trusted(self, primary_branch: str) -> bool:
        return self.event_kind == "push" and self.ref == f"refs/heads/{primary_branch}"

    @classmethod
    def from_webhook(cls, event_name: str, payload: dict, primary_branch: str) -> "TriggerEvent":
        """
        Build a TriggerEvent from a hosting-platform webhook.

        Raises
        ------
        UnsupportedTrigger
            Event kind, branch or action is outside the trigger surface.
        KeyError
            Payload is missing required fields.
        """
        repository = payload.get("repository", {}).get("clone_url", "")

        if event_name == "push":
            ref = payload["ref"]
            if ref != f"refs/heads/{primary_branch}":
                raise UnsupportedTrigger(f"push to {ref} does not start a run")
            return cls(
                event_kind="push",
                ref=ref,
                commit_sha=payload["after"],
                repository=repository,
            )

        if event_name == "pull_request":
            action = payload.get("action", "")
            if action not in PR_ACTIONS:
                raise UnsupportedTrigger(f"pull_request action '{action}' does not start a run")
            pr = payload["pull_request"]
            base_ref = pr["base"]["ref"]
            if base_ref != primary_branch:
                raise UnsupportedTrigger(f"pull request targets {base_ref}, not {primary_branch}")
            number = int(payload.get("number", pr.get("number")))
            return cls(
                event_kind="pull_request",
                ref=f"refs/pull/{number}/merge",
                commit_sha=pr["head"]["sha"],
                pr_number=number,
                base_ref=base_ref,
                repository=repository or pr["head"].get("repo", {}).get("clone_url", ""),
            )

        raise UnsupportedTrigger(f"event '{event_name}' does not start a run")
