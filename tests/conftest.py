"""
Shared fixtures: the bundled pipeline definition, trigger builders, and
fake Docker-side collaborators (job container, service provisioner).

No Docker daemon, network, or git is needed by any test.
"""
import os
import threading

import pytest

from covpipe.core.errors import InfrastructureError
from covpipe.executor.job_container import ExecutionResult
from covpipe.models.trigger_event import TriggerEvent
from covpipe.parser.workflow_reader import load_definition

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DEFINITION_FILE = os.path.join(REPO_ROOT, "workflows", "coverage.yml")

SAMPLE_REPORT = """<?xml version="1.0" ?>
<coverage line-rate="0.75" lines-covered="75" lines-valid="100" version="1.9" timestamp="0">
  <sources><source>/workspace</source></sources>
  <packages>
    <package name="crates/matrix-sdk" line-rate="0.8"/>
    <package name="crates/matrix-sdk-base" line-rate="0.7"/>
  </packages>
</coverage>
"""

PUSH_SHA = "a" * 40
PR_SHA = "b" * 40


@pytest.fixture
def definition():
    return load_definition(DEFINITION_FILE)


def push_trigger(sha=PUSH_SHA, ref="refs/heads/main"):
    return TriggerEvent(
        event_kind="push", ref=ref, commit_sha=sha,
        repository="https://github.com/org/repo.git",
    )


def pr_trigger(number=42, sha=PR_SHA):
    return TriggerEvent(
        event_kind="pull_request", ref=f"refs/pull/{number}/merge", commit_sha=sha,
        pr_number=number, base_ref="main",
        repository="https://github.com/org/repo.git",
    )


# ---------------------------------------------------------------------------
# Fake Docker collaborators
# ---------------------------------------------------------------------------
class FakeContainer:
    short_id = "job123"

    def __init__(self):
        self.put = []

    def get_archive(self, path):
        return iter([f"tar:{path}".encode()]), {"name": os.path.basename(path)}

    def put_archive(self, path, data):
        self.put.append((path, data))
        return True


class FakeJob:
    """
    Stands in for JobContainer.

    Commands succeed unless they contain ``fail_on``. The coverage command
    writes SAMPLE_REPORT (unless ``write_report`` is False) and exits with
    ``coverage_exit``. ``on_coverage`` is called first, from the worker
    thread, so tests can block a run mid-flight.
    """

    def __init__(self, client, image, workspace_path, run_id, *, coverage_command,
                 coverage_exit=0, write_report=True, fail_on=None, on_coverage=None):
        self.client = client
        self.image = image
        self.workspace_path = workspace_path
        self.run_id = run_id
        self.container = None
        self.coverage_command = coverage_command
        self.coverage_exit = coverage_exit
        self.write_report = write_report
        self.fail_on = fail_on
        self.on_coverage = on_coverage
        self.calls = []
        self.removed = False

    def start(self):
        self.container = FakeContainer()

    def exec(self, command, env=None):
        env = env or {}
        self.calls.append((command, dict(env)))
        if command == self.coverage_command:
            if self.on_coverage is not None:
                self.on_coverage(self)
            if self.write_report and os.path.isdir(self.workspace_path):
                with open(os.path.join(self.workspace_path, "cobertura.xml"), "w") as f:
                    f.write(SAMPLE_REPORT)
            return ExecutionResult(exit_code=self.coverage_exit, full_log="tarpaulin", env_keys=sorted(env))
        if self.fail_on and self.fail_on in command:
            return ExecutionResult(exit_code=100, full_log="E: failed", env_keys=sorted(env))
        return ExecutionResult(exit_code=0, full_log="ok", env_keys=sorted(env))

    def remove(self):
        self.removed = True
        self.container = None


class FakeInstance:
    internal_url = "http://synapse:8008"


class FakeProvisioner:
    def __init__(self, client, service, run_id, ready_timeout=None, *, fail=False):
        self.service = service
        self.run_id = run_id
        self.fail = fail
        self.instance = None
        self.attached = []
        self.stopped = False

    def start(self):
        if self.fail:
            raise InfrastructureError(f"Service '{self.service.name}' not ready after 0s")
        self.instance = FakeInstance()
        return self.instance

    def attach(self, container):
        self.attached.append(container)

    def stop(self):
        self.stopped = True


class Harness:
    """Records every fake created so tests can inspect them after a run."""

    def __init__(self, definition, **job_options):
        self.definition = definition
        self.job_options = job_options
        self.provisioner_fail = False
        self.jobs = []
        self.provisioners = []

    def job_factory(self, client, image, workspace_path, run_id):
        job = FakeJob(
            client, image, workspace_path, run_id,
            coverage_command=self.definition.coverage.command, **self.job_options,
        )
        self.jobs.append(job)
        return job

    def provisioner_factory(self, client, service, run_id, ready_timeout=None):
        provisioner = FakeProvisioner(client, service, run_id, ready_timeout, fail=self.provisioner_fail)
        self.provisioners.append(provisioner)
        return provisioner


@pytest.fixture
def workspaces(tmp_path):
    root = tmp_path / "workspace"
    root.mkdir()

    def checkout(repo_url, commit_sha, run_id):
        path = root / run_id
        path.mkdir()
        (path / "Cargo.lock").write_text(f"# lock for {commit_sha}\n")
        return str(path)

    return root, checkout


@pytest.fixture
def gate():
    """Threading events for holding a run inside the coverage step."""
    return threading.Event(), threading.Event()
