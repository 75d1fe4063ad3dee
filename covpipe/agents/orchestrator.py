"""
Orchestrator Agent
==================
Drives one coverage run from trigger to handoff artifact.

Flow (strictly sequential within a run):
    checkout → job container → Environment Preparer → Service Provisioner
    → Instrumented Test Runner → Handoff Packager → cache save

Error classification:
    InfrastructureError   → conclusion=failure, error_class=infrastructure,
                            no artifact
    test failures         → conclusion=failure, error_class=test,
                            artifact still produced
    PackagingError        → conclusion=failure, error_class=packaging,
                            nothing stored
    RunCancelled / task   → conclusion=cancelled, nothing stored
    cancellation
    anything else         → conclusion=failure, error_class=infrastructure,
                            logged with traceback
    Nothing is retried; a failed run needs a new trigger.

Handoff:
    Packaging runs in a worker thread that cannot be interrupted. A run
    cancelled meanwhile waits for the upload to settle; the store checks
    the run token right before the artifact becomes visible. Any run that
    does not reach the end withdraws an artifact it already stored.

Resources:
    The service container, run network, job container and checkout are
    released in ``finally`` whatever the outcome.

Startup:
    Run records from earlier processes are loaded; runs that never
    completed are marked as interrupted. Expired artifacts are purged.

Trust:
    Cache writes happen only for trusted runs (pushes to the primary
    branch). Every step env is built from the definition and audited for
    credentials.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import docker
from docker.errors import DockerException

from covpipe.agents.concurrency import ConcurrencyController, RunToken
from covpipe.core.config import JOB_IMAGE, SERVICE_READY_TIMEOUT
from covpipe.core.constants import (
    ERROR_INFRASTRUCTURE,
    ERROR_TEST,
    STEP_CHECKOUT,
    STEP_COVERAGE,
    STEP_PACKAGE,
    STEP_PROVISION,
    STEP_SAVE_CACHE,
)
from covpipe.core.errors import InfrastructureError, PipelineError, RunCancelled
from covpipe.executor.environment_preparer import EnvironmentPreparer
from covpipe.executor.job_container import JobContainer
from covpipe.executor.service_provisioner import ServiceProvisioner
from covpipe.executor.test_runner import InstrumentedTestRunner
from covpipe.models.pipeline_run import PipelineRun, StepRecord
from covpipe.models.trigger_event import TriggerEvent
from covpipe.parser.workflow_reader import PipelineDefinition
from covpipe.services.artifact_store import ArtifactStore
from covpipe.services.cache_service import CacheController
from covpipe.services.handoff_packager import HandoffPackager
from covpipe.services.repo_service import checkout_commit, clean_checkout
from covpipe.services.results_writer import ResultsWriter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """
    Runs the coverage pipeline for incoming triggers.

    One Orchestrator serves all runs. Runs of different groups execute
    concurrently as independent asyncio tasks; within a group a newer
    run cancels the older one.
    """

    def __init__(
        self,
        definition: PipelineDefinition,
        docker_client: Optional[docker.DockerClient] = None,
        cache: Optional[CacheController] = None,
        store: Optional[ArtifactStore] = None,
        concurrency: Optional[ConcurrencyController] = None,
        results_writer: Optional[ResultsWriter] = None,
        checkout: Callable[..., str] = checkout_commit,
        cleanup: Callable[[str], None] = clean_checkout,
        ready_timeout: Optional[int] = SERVICE_READY_TIMEOUT,
    ) -> None:
        self.definition = definition
        self._client = docker_client
        self.cache = cache or CacheController(primary_branch=definition.triggers.primary_branch)
        self.store = store or ArtifactStore(retention_days=definition.artifact.retention_days)
        self.concurrency = concurrency or ConcurrencyController()
        self.results_writer = results_writer or ResultsWriter()
        self.checkout = checkout
        self.cleanup = cleanup
        self.ready_timeout = ready_timeout
        self.runs: Dict[str, PipelineRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        self._load_history()
        self.store.purge_expired()

    def _load_history(self) -> None:
        """Seed run records from earlier processes; unfinished runs were interrupted."""
        for run in self.results_writer.load_runs():
            if run.status != "completed":
                logger.warning("Run %s was interrupted by a restart", run.run_id)
                run.status = "completed"
                run.conclusion = "failure"
                run.error_class = ERROR_INFRASTRUCTURE
                run.error_message = "Interrupted by service restart"
                run.finished_at = run.finished_at or _utcnow()
                self.results_writer.write_run(run)
            self.runs[run.run_id] = run
        if self.runs:
            logger.info("Loaded %d run record(s)", len(self.runs))

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise InfrastructureError(f"Docker daemon unavailable: {e}") from e
        return self._client

    @property
    def job_image(self) -> str:
        return self.definition.environment.image or JOB_IMAGE

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(self, trigger: TriggerEvent) -> PipelineRun:
        """
        Register a run for ``trigger`` and start it in the background.

        Must be called from a running event loop.
        """
        group = self.definition.group_for(trigger.ref)
        token = self.concurrency.acquire(group)
        run = PipelineRun(
            run_id=uuid.uuid4().hex[:12],
            group=group,
            epoch=token.epoch,
            trigger=trigger,
        )
        self.runs[run.run_id] = run

        task = asyncio.get_running_loop().create_task(self._execute(run, token))
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _: self._finish_unstarted(run, token))
        self.concurrency.bind(token, task)

        logger.info(
            "Submitted run %s | %s %s@%s | group=%s epoch=%d",
            run.run_id, trigger.event_kind, trigger.ref, trigger.commit_sha[:12],
            group, token.epoch,
        )
        return run

    def _finish_unstarted(self, run: PipelineRun, token: RunToken) -> None:
        """Close the record of a run cancelled before its first step."""
        if run.status != "queued":
            return
        logger.warning("Run %s superseded before it started", run.run_id)
        run.status = "completed"
        run.conclusion = "cancelled"
        run.error_message = "Superseded before it started"
        run.finished_at = _utcnow()
        self.concurrency.release(token)
        self.results_writer.write_run(run)

    async def wait(self, run_id: str) -> PipelineRun:
        """Wait for a submitted run to finish, cancelled or not."""
        task = self._tasks.get(run_id)
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self.runs[run_id]

    async def run(self, trigger: TriggerEvent) -> PipelineRun:
        """Submit a run and wait for it."""
        run = self.submit(trigger)
        return await self.wait(run.run_id)

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        return self.runs.get(run_id)

    def list_runs(self) -> List[PipelineRun]:
        return sorted(self.runs.values(), key=lambda r: r.started_at or _utcnow(), reverse=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def _execute(self, run: PipelineRun, token: RunToken) -> PipelineRun:
        run.status = "in_progress"
        run.started_at = _utcnow()
        trigger = run.trigger
        workspace: Optional[str] = None
        job: Optional[JobContainer] = None
        provisioner: Optional[ServiceProvisioner] = None
        cancelled_by_task = False
        finished = False

        try:
            await asyncio.to_thread(self.results_writer.write_run, run)

            # ===========================================================
            # 1. Checkout
            # ===========================================================
            token.ensure_current(STEP_CHECKOUT)
            logger.info("Run %s step 1: checkout %s", run.run_id, trigger.commit_sha[:12])
            workspace = await asyncio.to_thread(
                self.checkout, trigger.repository, trigger.commit_sha, run.run_id,
            )
            run.steps.append(StepRecord(name=STEP_CHECKOUT))

            # ===========================================================
            # 2. Environment preparation
            # ===========================================================
            job = JobContainer(self.client, self.job_image, workspace, run.run_id)
            await asyncio.to_thread(job.start)
            preparer = EnvironmentPreparer(self.definition, job, self.cache)
            logger.info("Run %s step 2: preparing environment", run.run_id)
            await asyncio.to_thread(preparer.prepare, workspace, run.steps, token.ensure_current)
            run.cache_hit = preparer.cache_hit

            # ===========================================================
            # 3. Service dependency
            # ===========================================================
            token.ensure_current(STEP_PROVISION)
            logger.info("Run %s step 3: provisioning %s", run.run_id, self.definition.service.name)
            provisioner = ServiceProvisioner(
                self.client, self.definition.service, run.run_id, ready_timeout=self.ready_timeout,
            )
            try:
                await asyncio.to_thread(provisioner.start)
                provisioner.attach(job.container)
            except InfrastructureError as e:
                run.steps.append(StepRecord(name=STEP_PROVISION, status="failure", log_excerpt=str(e)))
                raise
            run.steps.append(StepRecord(name=STEP_PROVISION, log_excerpt=provisioner.instance.internal_url))

            # ===========================================================
            # 4. Instrumented tests
            # ===========================================================
            token.ensure_current(STEP_COVERAGE)
            logger.info("Run %s step 4: running instrumented tests", run.run_id)
            runner = InstrumentedTestRunner(self.definition, job)
            outcome = await asyncio.to_thread(runner.run, workspace, run.steps)
            run.coverage = outcome.summary
            run.tests_passed = outcome.passed

            # ===========================================================
            # 5. Handoff
            # ===========================================================
            token.ensure_current(STEP_PACKAGE)
            logger.info("Run %s step 5: packaging handoff artifact", run.run_id)
            try:
                run.artifact_path = await self._package(run, token, workspace)
            except RunCancelled:
                run.steps.append(StepRecord(name=STEP_PACKAGE, status="cancelled"))
                raise
            except PipelineError as e:
                run.steps.append(StepRecord(name=STEP_PACKAGE, status="failure", log_excerpt=str(e)))
                raise
            run.steps.append(StepRecord(name=STEP_PACKAGE, log_excerpt=run.artifact_path))

            # ===========================================================
            # 6. Cache save (trusted runs only)
            # ===========================================================
            run.cache_saved = await self._save_cache(run, token, job, preparer)

            if outcome.passed:
                run.conclusion = "success"
            else:
                run.conclusion = "failure"
                run.error_class = ERROR_TEST
                run.error_message = "Test failures recorded in coverage report"
            finished = True

        except RunCancelled as e:
            logger.warning("Run %s cancelled: %s", run.run_id, e)
            run.conclusion = "cancelled"
            run.error_message = str(e)

        except asyncio.CancelledError:
            logger.warning("Run %s cancelled by a newer run in %s", run.run_id, run.group)
            run.conclusion = "cancelled"
            run.error_message = "Superseded by a newer run"
            cancelled_by_task = True

        except PipelineError as e:
            logger.error("Run %s failed (%s): %s", run.run_id, e.error_class, e)
            run.conclusion = "failure"
            run.error_class = e.error_class
            run.error_message = str(e)

        except Exception as e:
            logger.error("Run %s failed unexpectedly: %s", run.run_id, e, exc_info=True)
            run.conclusion = "failure"
            run.error_class = ERROR_INFRASTRUCTURE
            run.error_message = f"Unexpected error: {e}"

        finally:
            if not finished and run.artifact_path:
                logger.warning("Run %s did not finish; withdrawing its artifact", run.run_id)
                await asyncio.to_thread(self.store.remove, run.run_id)
                run.artifact_path = ""

            await asyncio.to_thread(self._teardown, run.run_id, provisioner, job, workspace)

            run.status = "completed"
            run.finished_at = _utcnow()
            self.concurrency.release(token)
            await asyncio.to_thread(self.results_writer.write_run, run)
            logger.info(
                "Run %s completed | conclusion=%s | coverage=%s | artifact=%s",
                run.run_id, run.conclusion,
                f"{run.coverage.percent}%" if run.coverage else "n/a",
                run.artifact_path or "none",
            )

        if cancelled_by_task:
            raise asyncio.CancelledError()
        return run

    async def _package(self, run: PipelineRun, token: RunToken, workspace: str) -> str:
        """
        Store the handoff artifact from a worker thread.

        If the run is cancelled while the upload is in flight, wait for the
        upload to settle, keep its path so the caller can withdraw it, and
        re-raise the cancellation.
        """
        packager = HandoffPackager(self.store, self.definition.artifact)
        packaging = asyncio.ensure_future(asyncio.to_thread(
            packager.package, run.run_id, workspace, run.trigger,
            lambda: token.ensure_current(STEP_PACKAGE),
        ))
        try:
            return await asyncio.shield(packaging)
        except asyncio.CancelledError:
            try:
                run.artifact_path = await packaging
            except PipelineError as e:
                logger.info("Run %s upload stopped after cancellation: %s", run.run_id, e)
            raise

    def _teardown(
        self,
        run_id: str,
        provisioner: Optional[ServiceProvisioner],
        job: Optional[JobContainer],
        workspace: Optional[str],
    ) -> None:
        if provisioner is not None:
            provisioner.stop()
        if job is not None:
            job.remove()
        if workspace is not None:
            self.cleanup(run_id)

    async def _save_cache(
        self,
        run: PipelineRun,
        token: RunToken,
        job: JobContainer,
        preparer: EnvironmentPreparer,
    ) -> bool:
        cache_cfg = self.definition.environment.cache
        trusted = run.trigger.is_trusted(self.cache.primary_branch)
        if cache_cfg is None or preparer.cache_key is None or not trusted:
            run.steps.append(StepRecord(name=STEP_SAVE_CACHE, status="skipped"))
            return False

        token.ensure_current(STEP_SAVE_CACHE)
        saved = await asyncio.to_thread(
            self.cache.save, job, cache_cfg, preparer.cache_key, run.trigger.ref,
        )
        run.steps.append(StepRecord(name=STEP_SAVE_CACHE, status="success" if saved else "skipped"))
        return saved
