"""
Job Container
=============
Ephemeral Docker sandbox that every environment and test step of a run
executes in. Returns structured execution results (logs, exit code, timing).

BOUNDARY RULES (CRITICAL):
    - The job container ONLY executes commands.
    - It never decides whether a non-zero exit is fatal; callers do.
    - It never receives host environment variables; each exec gets exactly
      the environment the caller passes.

DOCKER STRATEGY:
    - One container per run, kept alive with ``sleep infinity``.
    - Workspace mounted as volume at /workspace.
    - Steps run with ``exec_run`` so toolchain state persists between steps.
    - Container destroyed when the run ends, whatever the outcome.
"""
import time
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import docker
from docker.errors import APIError, ImageNotFound

from covpipe.core.config import JOB_CPU_COUNT, JOB_MEMORY_LIMIT
from covpipe.core.errors import InfrastructureError
from covpipe.models.pipeline_run import StepRecord

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"


# ---------------------------------------------------------------------------
# Execution Result
# ---------------------------------------------------------------------------
@dataclass
class ExecutionResult:
    """
    Structured output from a single step command.

    Fields
    ------
    exit_code : int
        Process exit code (0 = success, non-zero = failure).
    full_log : str
        Combined stdout + stderr.
    log_excerpt : str
        Abbreviated log (first + last N lines) for run records.
    execution_time_seconds : float
        Wall clock duration of the command.
    env_keys : list[str]
        Names of the variables the command ran with.
    """
    exit_code: int = -1
    full_log: str = ""
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0
    env_keys: list = field(default_factory=list)


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, it is returned as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------
class JobContainer:
    """
    Long-lived container for one run.

    Usage:
        with JobContainer(client, image, workspace, run_id) as job:
            result = job.exec("cargo build", env={"CI": "true"})
    """

    def __init__(
        self,
        client: docker.DockerClient,
        image: str,
        workspace_path: str,
        run_id: str,
    ) -> None:
        self.client = client
        self.image = image
        self.workspace_path = workspace_path
        self.run_id = run_id
        self.container = None

    def start(self) -> None:
        """Pull the image and start the idle job container."""
        logger.info("Starting job container | image=%s | run=%s", self.image, self.run_id)
        try:
            self.client.images.pull(self.image)
            self.container = self.client.containers.run(
                image=self.image,
                command=["sleep", "infinity"],
                volumes={
                    self.workspace_path: {"bind": CONTAINER_WORKSPACE, "mode": "rw"},
                },
                environment={"CI": "true"},
                working_dir=CONTAINER_WORKSPACE,
                mem_limit=JOB_MEMORY_LIMIT,
                nano_cpus=JOB_CPU_COUNT * 1_000_000_000,
                name=f"covpipe-job-{self.run_id}",
                labels={"project": "covpipe", "role": "job", "run": self.run_id},
                detach=True,
            )
        except ImageNotFound as e:
            raise InfrastructureError(f"Job image '{self.image}' not found: {e}") from e
        except APIError as e:
            raise InfrastructureError(f"Could not start job container: {e}") from e

    def exec(self, command: str, env: Optional[Dict[str, str]] = None) -> ExecutionResult:
        """
        Run ``command`` with bash inside the job container.

        A non-zero exit is returned, not raised. Docker API failures raise
        InfrastructureError.
        """
        if self.container is None:
            raise InfrastructureError("Job container is not running")

        env = env or {}
        result = ExecutionResult(env_keys=sorted(env))
        start_time = time.monotonic()
        try:
            exec_result = self.container.exec_run(
                ["bash", "-c", command],
                environment=env,
                workdir=CONTAINER_WORKSPACE,
            )
        except APIError as e:
            raise InfrastructureError(f"Docker exec failed: {e}") from e

        result.exit_code = exec_result.exit_code
        result.full_log = (exec_result.output or b"").decode("utf-8", errors="replace")
        result.execution_time_seconds = round(time.monotonic() - start_time, 3)
        result.log_excerpt = create_log_excerpt(result.full_log)

        logger.debug(
            "exec complete | exit=%d | time=%.2fs | cmd=%s",
            result.exit_code, result.execution_time_seconds, command,
        )
        return result

    def remove(self) -> None:
        """Destroy the container. Never raises."""
        if self.container is None:
            return
        try:
            self.container.remove(force=True)
            logger.info("Job container %s destroyed", self.container.short_id)
        except Exception:
            logger.warning("Failed to remove job container", exc_info=True)
        finally:
            self.container = None

    def __enter__(self) -> "JobContainer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.remove()


def to_step_record(name: str, result: ExecutionResult, ok: Optional[bool] = None) -> StepRecord:
    """Convert an ExecutionResult into the run's StepRecord."""
    if ok is None:
        ok = result.exit_code == 0
    return StepRecord(
        name=name,
        status="success" if ok else "failure",
        exit_code=result.exit_code,
        duration_seconds=result.execution_time_seconds,
        log_excerpt=result.log_excerpt,
        env_keys=list(result.env_keys),
    )
