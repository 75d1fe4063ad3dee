"""
Artifact Store
==============
Name-addressed, durable store that connects the untrusted producer run with
the privileged publisher. The two sides never talk directly; the publisher
only ever reads what is here.

Layout:
    <root>/<run_id>/manifest.json
    <root>/<run_id>/<artifact_name>/<file>...

Manifest fields:
    name, run_id, commit_sha, pr_number, files {name: sha256},
    created_at, expires_at (ISO 8601, UTC)

Guarantees:
    - Upload is all-or-nothing: files are staged and the run directory is
      renamed into place only after every file copied.
    - A missing source file fails the upload (``if-no-files-found: error``).
    - Sources must be regular files. Symlinks, directories and fifos left in
      the shared workspace by the job container are rejected, so the store
      never copies host files the run could not see.
    - Expired artifacts are skipped by lookups and removed by purge_expired(),
      which the orchestrator runs at startup.
"""
import json
import logging
import os
import shutil
import stat
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from covpipe.core.config import ARTIFACT_RETENTION_DAYS, ARTIFACT_ROOT
from covpipe.core.constants import MANIFEST_FILE
from covpipe.core.errors import PackagingError
from covpipe.utils.fingerprint import file_digest, is_regular_file

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def copy_regular_file(src: str, dest: str) -> None:
    """
    Copy ``src`` to ``dest`` without following a symlink at ``src``.

    Raises
    ------
    PackagingError
        ``src`` is a symlink or not a regular file.
    """
    try:
        fd = os.open(src, os.O_RDONLY | os.O_NOFOLLOW | os.O_NONBLOCK)
    except OSError as e:
        raise PackagingError(f"Refusing to read {os.path.basename(src)}: {e}") from e

    with os.fdopen(fd, "rb") as fsrc:
        # lstat and open are two calls; re-check what was actually opened
        if not stat.S_ISREG(os.fstat(fsrc.fileno()).st_mode):
            raise PackagingError(f"{os.path.basename(src)} is not a regular file")
        with open(dest, "wb") as fdst:
            shutil.copyfileobj(fsrc, fdst)


class ArtifactStore:

    def __init__(self, root: str = ARTIFACT_ROOT, retention_days: int = ARTIFACT_RETENTION_DAYS) -> None:
        self.root = root
        self.retention_days = retention_days
        os.makedirs(self.root, exist_ok=True)

    def bundle_dir(self, run_id: str, name: str) -> str:
        return os.path.join(self.root, run_id, name)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------
    def upload(
        self,
        run_id: str,
        name: str,
        files: Dict[str, str],
        commit_sha: str,
        pr_number: Optional[int] = None,
        retention_days: Optional[int] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> str:
        """
        Store ``files`` (artifact file name → source path) as one artifact.

        ``checkpoint`` is called right before the staged artifact is renamed
        into place; if it raises, nothing is stored.

        Returns
        -------
        str
            Path of the stored bundle directory.

        Raises
        ------
        PackagingError
            A source file is missing or not a regular file, or the run
            already stored an artifact.
        """
        missing = sorted(fname for fname, src in files.items() if not os.path.lexists(src))
        if missing:
            raise PackagingError(
                f"Artifact '{name}' is missing file(s): {', '.join(missing)}"
            )
        irregular = sorted(fname for fname, src in files.items() if not is_regular_file(src))
        if irregular:
            raise PackagingError(
                f"Artifact '{name}' has non-regular file(s): {', '.join(irregular)}"
            )

        final_dir = os.path.join(self.root, run_id)
        if os.path.exists(final_dir):
            raise PackagingError(f"Run {run_id} already stored an artifact")

        staging = os.path.join(self.root, f".staging-{run_id}")
        shutil.rmtree(staging, ignore_errors=True)
        bundle = os.path.join(staging, name)
        os.makedirs(bundle)

        try:
            digests = {}
            for fname, src in sorted(files.items()):
                dest = os.path.join(bundle, fname)
                copy_regular_file(src, dest)
                digests[fname] = file_digest(dest)

            created = _now()
            days = retention_days if retention_days is not None else self.retention_days
            manifest = {
                "name": name,
                "run_id": run_id,
                "commit_sha": commit_sha,
                "pr_number": pr_number,
                "files": digests,
                "created_at": created.isoformat(),
                "expires_at": (created + timedelta(days=days)).isoformat(),
            }
            with open(os.path.join(staging, MANIFEST_FILE), "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2)

            if checkpoint is not None:
                checkpoint()
            os.rename(staging, final_dir)
        except OSError as e:
            raise PackagingError(f"Could not store artifact '{name}': {e}") from e
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Stored artifact %s for run %s (%d files)", name, run_id, len(files))
        return self.bundle_dir(run_id, name)

    def remove(self, run_id: str) -> bool:
        """Delete everything a run stored. Returns False if it stored nothing."""
        path = os.path.join(self.root, run_id)
        if not os.path.isdir(path):
            return False
        shutil.rmtree(path, ignore_errors=True)
        logger.info("Removed artifact of run %s", run_id)
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def manifests(self) -> List[dict]:
        """All readable manifests, newest first."""
        found = []
        for entry in os.listdir(self.root):
            if entry.startswith("."):
                continue
            path = os.path.join(self.root, entry, MANIFEST_FILE)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    found.append(json.load(f))
            except (OSError, ValueError):
                continue
        found.sort(key=lambda m: m.get("created_at", ""), reverse=True)
        return found

    def find(self, name: str, commit_sha: str, now: Optional[datetime] = None) -> Optional[dict]:
        """Newest unexpired manifest for ``commit_sha``, or None."""
        now = now or _now()
        for manifest in self.manifests():
            if manifest.get("name") != name or manifest.get("commit_sha") != commit_sha:
                continue
            if datetime.fromisoformat(manifest["expires_at"]) <= now:
                continue
            return manifest
        return None

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired artifacts. Returns how many were removed."""
        now = now or _now()
        removed = 0
        for manifest in self.manifests():
            if datetime.fromisoformat(manifest["expires_at"]) <= now:
                removed += self.remove(manifest["run_id"])
        if removed:
            logger.info("Purged %d expired artifact(s)", removed)
        return removed
