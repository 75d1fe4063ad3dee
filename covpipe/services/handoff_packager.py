"""
Handoff Packager
================
Bundles the coverage report with the trigger metadata the privileged
publisher cannot otherwise see, and stores it as one named artifact.

Artifact contract (stable, read by the publisher):
    name:  codecov_report
    files: cobertura.xml   — the coverage report
           pr_number.txt   — pull request number, empty line for pushes
           commit_sha.txt  — commit the report was measured on

The packager runs on the host with no step environment and takes no
credentials. It never publishes anything.

Workspace boundary:
    The workspace is shared read-write with the job container that ran the
    untrusted code. Only the report is taken from it, and only if it is a
    regular file. The metadata files are written to a host-only staging
    directory, never into the workspace.
"""
import logging
import os
import tempfile
from typing import Callable, Optional

from covpipe.core.constants import COMMIT_SHA_FILE, PR_NUMBER_FILE, REPORT_FILE
from covpipe.models.trigger_event import TriggerEvent
from covpipe.parser.workflow_reader import ArtifactConfig
from covpipe.services.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


class HandoffPackager:

    def __init__(self, store: ArtifactStore, artifact: ArtifactConfig) -> None:
        self.store = store
        self.artifact = artifact

    def write_metadata(self, directory: str, trigger: TriggerEvent) -> None:
        pr_number = "" if trigger.pr_number is None else str(trigger.pr_number)
        logger.info("Storing PR number %s", pr_number or "<none>")
        with open(os.path.join(directory, PR_NUMBER_FILE), "x", encoding="utf-8") as f:
            f.write(f"{pr_number}\n")

        logger.info("Storing commit SHA %s", trigger.commit_sha)
        with open(os.path.join(directory, COMMIT_SHA_FILE), "x", encoding="utf-8") as f:
            f.write(f"{trigger.commit_sha}\n")

    def package(
        self,
        run_id: str,
        workspace_path: str,
        trigger: TriggerEvent,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> str:
        """
        Write the metadata files and store the three-file artifact.

        ``checkpoint`` is passed to the store and runs just before the
        artifact becomes visible.

        Raises
        ------
        PackagingError
            The report is absent or not a regular file; nothing is stored.
        """
        with tempfile.TemporaryDirectory(prefix=f"covpipe-handoff-{run_id}-") as staging:
            self.write_metadata(staging, trigger)
            files = {
                REPORT_FILE: os.path.join(workspace_path, REPORT_FILE),
                PR_NUMBER_FILE: os.path.join(staging, PR_NUMBER_FILE),
                COMMIT_SHA_FILE: os.path.join(staging, COMMIT_SHA_FILE),
            }
            path = self.store.upload(
                run_id=run_id,
                name=self.artifact.name,
                files=files,
                commit_sha=trigger.commit_sha,
                pr_number=trigger.pr_number,
                retention_days=self.artifact.retention_days,
                checkpoint=checkpoint,
            )
        logger.info("The coverage report was stored as artifact '%s'", self.artifact.name)
        return path
