"""
Fingerprint Utility
===================
Deterministic hashes used for cache keys and artifact manifests.

Rules:
    - SHA-256, truncated to 16 hex chars for cache keys.
    - Full hex digest for artifact file integrity.
    - Missing inputs contribute a fixed marker, so adding a lockfile later
      changes the key instead of raising.
    - Symlinked inputs count as missing; the checkout is untrusted.
"""
import hashlib
import os
import stat
from typing import Iterable


def is_regular_file(path: str) -> bool:
    """True only for a regular file that is not reached through a symlink."""
    try:
        return stat.S_ISREG(os.lstat(path).st_mode)
    except OSError:
        return False


def file_digest(path: str) -> str:
    """Full SHA-256 hex digest of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def project_fingerprint(workspace_path: str, key_files: Iterable[str], *extra: str) -> str:
    """
    Fingerprint of project state: the given files plus extra strings.

    Parameters
    ----------
    workspace_path : str
        Repository root on the host.
    key_files : iterable of str
        Paths relative to the root (lockfiles, toolchain pins).
    extra : str
        Additional inputs (toolchain command, job image).

    Returns
    -------
    str
        16-character hex hash.
    """
    digest = hashlib.sha256()
    for rel in sorted(key_files):
        digest.update(rel.encode("utf-8"))
        full = os.path.join(workspace_path, rel)
        if is_regular_file(full):
            digest.update(file_digest(full).encode("ascii"))
        else:
            digest.update(b"<missing>")
    for item in extra:
        digest.update(item.encode("utf-8"))
    return digest.hexdigest()[:16]
