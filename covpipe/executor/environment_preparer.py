"""
Environment Preparer
====================
Brings the job container to a state where the toolchain and the coverage
instrumentation tool are available.

Step order:
    1. install-system-packages   (native libraries, apt-get)
    2. install-toolchain
    3. delete-override-files     (checked-in config that interferes with
                                  caching or suppresses diagnostics)
    4. restore-cache             (best effort, never fatal)
    5. install-instrumentation

Every command step is idempotent, so re-running preparation on a prepared
container is harmless. Any failing command raises InfrastructureError and
no later step runs.
"""
import logging
import shlex
from typing import Callable, Dict, List, Optional

from covpipe.core.constants import (
    STEP_DELETE_OVERRIDES,
    STEP_INSTRUMENTATION,
    STEP_RESTORE_CACHE,
    STEP_SYSTEM_PACKAGES,
    STEP_TOOLCHAIN,
)
from covpipe.core.errors import InfrastructureError
from covpipe.executor.job_container import JobContainer, to_step_record
from covpipe.models.pipeline_run import StepRecord
from covpipe.parser.workflow_reader import PipelineDefinition
from covpipe.services.cache_service import CacheController
from covpipe.utils import env_guard

logger = logging.getLogger(__name__)


def build_prepare_commands(definition: PipelineDefinition) -> List[tuple]:
    """
    Resolve (step_name, shell_command) pairs for the command steps.

    Steps with nothing to do are returned with an empty command and are
    recorded as skipped.
    """
    env_cfg = definition.environment
    packages = " ".join(shlex.quote(p) for p in env_cfg.system_packages)
    overrides = " ".join(shlex.quote(p) for p in env_cfg.delete_files)
    return [
        (
            STEP_SYSTEM_PACKAGES,
            f"apt-get update && DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends {packages}"
            if packages else "",
        ),
        (STEP_TOOLCHAIN, env_cfg.toolchain),
        (STEP_DELETE_OVERRIDES, f"rm -f {overrides}" if overrides else ""),
    ]


class EnvironmentPreparer:
    """Runs the preparation steps for one run inside its job container."""

    def __init__(
        self,
        definition: PipelineDefinition,
        job: JobContainer,
        cache: Optional[CacheController] = None,
    ) -> None:
        self.definition = definition
        self.job = job
        self.cache = cache
        self.cache_key: Optional[str] = None
        self.cache_hit = False

    def _step_env(self) -> Dict[str, str]:
        return env_guard.scrub(self.definition.env)

    def _run(
        self,
        name: str,
        command: str,
        steps: List[StepRecord],
        checkpoint: Optional[Callable[[str], None]] = None,
    ) -> None:
        if checkpoint is not None:
            checkpoint(name)
        if not command:
            steps.append(StepRecord(name=name, status="skipped"))
            return

        env = self._step_env()
        env_guard.audit(name, list(env))
        logger.info("Step %s: %s", name, command)
        result = self.job.exec(command, env=env)
        steps.append(to_step_record(name, result))
        if result.exit_code != 0:
            raise InfrastructureError(
                f"Step '{name}' failed with exit code {result.exit_code}", step=name,
            )

    def prepare(
        self,
        workspace_path: str,
        steps: List[StepRecord],
        checkpoint: Optional[Callable[[str], None]] = None,
    ) -> None:
        """
        Run all preparation steps, appending a StepRecord for each.

        ``checkpoint`` is called with each step name before the step runs;
        it raises to abandon preparation (superseded run).

        Raises
        ------
        InfrastructureError
            A command step exited non-zero or Docker failed.
        """
        for name, command in build_prepare_commands(self.definition):
            self._run(name, command, steps, checkpoint)

        self._restore_cache(workspace_path, steps)

        self._run(STEP_INSTRUMENTATION, self.definition.environment.instrumentation, steps, checkpoint)

    def _restore_cache(self, workspace_path: str, steps: List[StepRecord]) -> None:
        cache_cfg = self.definition.environment.cache
        if self.cache is None or cache_cfg is None:
            steps.append(StepRecord(name=STEP_RESTORE_CACHE, status="skipped"))
            return

        self.cache_key = self.cache.compute_key(
            cache_cfg, workspace_path, self.job.image, self.definition.environment.toolchain,
        )
        restored = self.cache.restore(self.job, cache_cfg, self.cache_key)
        self.cache_hit = restored is not None
        steps.append(StepRecord(
            name=STEP_RESTORE_CACHE,
            status="success",
            log_excerpt=f"restored {restored}" if restored else f"miss {self.cache_key}",
        ))
