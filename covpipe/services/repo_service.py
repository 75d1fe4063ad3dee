"""
Repo Service
============
Manages per-run checkouts on the host machine.

Philosophy:
    - One fresh clone per run under <WORKSPACE_ROOT>/<run_id>/.
    - Check out the exact commit the trigger names (the PR head SHA for pull
      requests), detached.
    - The clone token is only used on the host; it never reaches a step.
"""
import os
import shutil
import subprocess
import logging

from covpipe.core.config import GITHUB_TOKEN, WORKSPACE_ROOT
from covpipe.core.errors import InfrastructureError

logger = logging.getLogger(__name__)


def get_repo_name(repo_url: str) -> str:
    """Extract repository name from URL."""
    name = repo_url.rstrip("/").split("/")[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name


def _auth_url(repo_url: str, github_token: str) -> str:
    if github_token and "github.com" in repo_url and repo_url.startswith("https://"):
        return repo_url.replace("https://", f"https://x-access-token:{github_token}@")
    return repo_url


def _git(args: list, cwd: str = None) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


def checkout_commit(
    repo_url: str,
    commit_sha: str,
    run_id: str,
    workspace_root: str = WORKSPACE_ROOT,
    github_token: str = GITHUB_TOKEN or "",
) -> str:
    """
    Clone ``repo_url`` and check out ``commit_sha``.

    Returns
    -------
    str
        Absolute path to the checkout.

    Raises
    ------
    InfrastructureError
        Clone or checkout failed.
    """
    os.makedirs(workspace_root, exist_ok=True)
    dest_path = os.path.abspath(os.path.join(workspace_root, run_id))
    if os.path.exists(dest_path):
        shutil.rmtree(dest_path)

    logger.info("Checking out %s@%s into %s", get_repo_name(repo_url), commit_sha[:12], dest_path)
    try:
        _git(["clone", "--no-checkout", _auth_url(repo_url, github_token), dest_path])
        _git(["fetch", "origin", commit_sha], cwd=dest_path)
        _git(["checkout", "--detach", commit_sha], cwd=dest_path)
    except subprocess.CalledProcessError as e:
        # stderr may echo the authenticated URL
        stderr = (e.stderr or "").replace(github_token, "***") if github_token else e.stderr
        logger.error("Checkout failed: %s", stderr)
        raise InfrastructureError(f"Checkout of {commit_sha} failed: {stderr}") from e

    return dest_path


def clean_checkout(run_id: str, workspace_root: str = WORKSPACE_ROOT) -> None:
    """Remove a run's checkout."""
    path = os.path.join(workspace_root, run_id)
    if os.path.exists(path):
        logger.info("Cleaning checkout %s", path)
        shutil.rmtree(path, ignore_errors=True)
