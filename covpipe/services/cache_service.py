"""
Cache Service
=============
Persists toolchain build and dependency caches across runs.

Cache key:
    <prefix>-<fingerprint(key_files, job image, toolchain command)>

Restore (best effort):
    1. Exact key match
    2. Newest entry named <prefix>-<16 hex>; a longer prefix that merely
       starts with this one does not match
    A miss, or any error while restoring, only costs time; the run goes on.

Save (trusted runs only):
    - Only when the run's ref is the primary branch. Pull request runs
      execute untrusted code and must leave the cache untouched.
    - An existing key is never overwritten.
    - Written to a staging directory and renamed into place, so readers
      never see a half-written entry.

Storage layout:
    <cache_root>/<key>/entry.json   — key, container paths, created_at
    <cache_root>/<key>/<n>.tar      — archive of paths[n] from the job container
"""
import json
import logging
import os
import re
import shlex
import shutil
import time
from typing import Optional

from docker.errors import APIError, NotFound

from covpipe.core.config import CACHE_ROOT, PRIMARY_BRANCH
from covpipe.core.errors import InfrastructureError
from covpipe.executor.job_container import JobContainer
from covpipe.parser.workflow_reader import CacheConfig
from covpipe.utils.fingerprint import project_fingerprint

logger = logging.getLogger(__name__)

_ENTRY_FILE = "entry.json"


class CacheController:
    """
    Filesystem-backed cache shared by all runs.

    Many readers, and a single writer per key (the primary-branch run that
    first computes it).
    """

    def __init__(self, cache_root: str = CACHE_ROOT, primary_branch: str = PRIMARY_BRANCH) -> None:
        self.cache_root = cache_root
        self.primary_branch = primary_branch
        os.makedirs(self.cache_root, exist_ok=True)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------
    def compute_key(self, cfg: CacheConfig, workspace_path: str, image: str, toolchain: str) -> str:
        return f"{cfg.prefix}-{project_fingerprint(workspace_path, cfg.key_files, image, toolchain)}"

    def should_save(self, ref: str) -> bool:
        return ref == f"refs/heads/{self.primary_branch}"

    def _entry_dir(self, key: str) -> str:
        return os.path.join(self.cache_root, key)

    def has(self, key: str) -> bool:
        return os.path.isfile(os.path.join(self._entry_dir(key), _ENTRY_FILE))

    def _read_entry(self, key: str) -> Optional[dict]:
        """The entry record for ``key``, or None if absent or malformed."""
        try:
            with open(os.path.join(self._entry_dir(key), _ENTRY_FILE), "r", encoding="utf-8") as f:
                entry = json.load(f)
        except (OSError, ValueError):
            return None
        if not isinstance(entry, dict):
            return None
        paths = entry.get("paths", [])
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            return None
        if not isinstance(entry.get("created_at", 0), (int, float)):
            return None
        return entry

    def lookup(self, key: str, prefix: str) -> Optional[str]:
        """Return the key to restore from: exact match, else newest with prefix."""
        if self._read_entry(key) is not None:
            return key

        pattern = re.compile(re.escape(prefix) + r"-[0-9a-f]{16}")
        candidates = []
        for name in os.listdir(self.cache_root):
            if not pattern.fullmatch(name):
                continue
            entry = self._read_entry(name)
            if entry is not None:
                candidates.append((entry.get("created_at", 0), name))
        if not candidates:
            return None
        return max(candidates)[1]

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------
    def restore(self, job: JobContainer, cfg: CacheConfig, key: str) -> Optional[str]:
        """
        Restore cached paths into the job container.

        Returns
        -------
        str | None
            The key that was restored, or None on a miss.
        """
        matched = self.lookup(key, cfg.prefix)
        if matched is None:
            logger.info("Cache miss for %s", key)
            return None

        entry = self._read_entry(matched)
        if entry is None:
            logger.warning("Cache entry %s is unreadable, continuing cold", matched)
            return None

        entry_dir = self._entry_dir(matched)
        try:
            for index, path in enumerate(entry.get("paths", [])):
                archive = os.path.join(entry_dir, f"{index}.tar")
                if not os.path.isfile(archive):
                    continue
                parent = os.path.dirname(path.rstrip("/")) or "/"
                created = job.exec(f"mkdir -p {shlex.quote(parent)}")
                if created.exit_code != 0:
                    logger.warning("Cache restore from %s could not create %s, continuing cold", matched, parent)
                    return None
                with open(archive, "rb") as f:
                    job.container.put_archive(parent, f.read())
        except (APIError, OSError, InfrastructureError) as e:
            logger.warning("Cache restore from %s failed, continuing cold: %s", matched, e)
            return None

        logger.info("Cache restored from %s%s", matched, "" if matched == key else " (prefix match)")
        return matched

    # ------------------------------------------------------------------
    # Save
    # ------------------------------------------------------------------
    def save(self, job: JobContainer, cfg: CacheConfig, key: str, ref: str) -> bool:
        """
        Archive the configured paths from the job container under ``key``.

        Returns True only when a new entry was written.
        """
        if not self.should_save(ref):
            logger.info("Skipping cache save for %s (not %s)", ref, self.primary_branch)
            return False
        if self.has(key):
            logger.info("Cache entry %s already exists, not overwriting", key)
            return False

        staging = os.path.join(self.cache_root, f".staging-{key}-{os.getpid()}")
        shutil.rmtree(staging, ignore_errors=True)
        os.makedirs(staging)
        try:
            for index, path in enumerate(cfg.paths):
                try:
                    stream, _ = job.container.get_archive(path)
                except NotFound:
                    logger.debug("Cache path %s missing in job container", path)
                    continue
                with open(os.path.join(staging, f"{index}.tar"), "wb") as f:
                    for chunk in stream:
                        f.write(chunk)

            with open(os.path.join(staging, _ENTRY_FILE), "w", encoding="utf-8") as f:
                json.dump({"key": key, "paths": cfg.paths, "created_at": time.time()}, f, indent=2)

            os.rename(staging, self._entry_dir(key))
        except (APIError, OSError) as e:
            logger.warning("Cache save for %s failed: %s", key, e)
            shutil.rmtree(staging, ignore_errors=True)
            return False

        logger.info("Cache saved as %s", key)
        return True
