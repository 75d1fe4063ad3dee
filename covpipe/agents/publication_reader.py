"""
Publication Reader
==================
The consumer side of the handoff contract, for the privileged publisher.

The publisher is triggered separately and is never parameterised by
untrusted input. It locates the artifact by the commit it is publishing
for and reads only the documented files. The only values taken from the
untrusted run are the identifiers in pr_number.txt and commit_sha.txt, and
commit_sha.txt must agree with the commit the store indexed the artifact
under.

No artifact for a commit (the producing run failed, was cancelled, or the
artifact expired) means nothing is published. That is a normal outcome,
not an error.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from covpipe.core.constants import (
    ARTIFACT_FILES,
    ARTIFACT_NAME,
    COMMIT_SHA_FILE,
    PR_NUMBER_FILE,
    REPORT_FILE,
)
from covpipe.services.artifact_store import ArtifactStore
from covpipe.utils.fingerprint import file_digest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandoffBundle:
    run_id: str
    commit_sha: str
    pr_number: Optional[int]
    report_path: str


def _read_line(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read().strip()


def find_handoff(
    store: ArtifactStore,
    commit_sha: str,
    name: str = ARTIFACT_NAME,
) -> Optional[HandoffBundle]:
    """
    Locate and verify the handoff artifact for ``commit_sha``.

    Returns
    -------
    HandoffBundle | None
        None when there is nothing to publish: no artifact, expired,
        tampered, or inconsistent metadata.
    """
    manifest = store.find(name, commit_sha)
    if manifest is None:
        logger.info("No %s artifact for %s; nothing to publish", name, commit_sha[:12])
        return None

    bundle_dir = store.bundle_dir(manifest["run_id"], name)
    if set(manifest.get("files", {})) != set(ARTIFACT_FILES):
        logger.warning("Artifact for run %s has unexpected files; skipping", manifest["run_id"])
        return None

    for fname, digest in manifest["files"].items():
        path = os.path.join(bundle_dir, fname)
        if not os.path.isfile(path) or file_digest(path) != digest:
            logger.warning("Artifact file %s of run %s failed verification", fname, manifest["run_id"])
            return None

    recorded_sha = _read_line(os.path.join(bundle_dir, COMMIT_SHA_FILE))
    if recorded_sha != commit_sha:
        logger.warning(
            "Artifact of run %s records commit %s, expected %s; skipping",
            manifest["run_id"], recorded_sha[:12], commit_sha[:12],
        )
        return None

    raw_pr = _read_line(os.path.join(bundle_dir, PR_NUMBER_FILE))
    pr_number = int(raw_pr) if raw_pr.isdigit() else None

    return HandoffBundle(
        run_id=manifest["run_id"],
        commit_sha=recorded_sha,
        pr_number=pr_number,
        report_path=os.path.join(bundle_dir, REPORT_FILE),
    )
