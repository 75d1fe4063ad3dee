"""
Pipeline Errors
===============
Exception taxonomy for a coverage run.

    PipelineError
    ├── DefinitionError       — pipeline definition invalid (before any run)
    ├── UnsupportedTrigger    — webhook event outside the trigger surface
    ├── InfrastructureError   — provisioning / toolchain / instrumentation failed
    ├── PackagingError        — handoff artifact incomplete
    │   └── CredentialLeakError
    └── RunCancelled          — superseded by a newer run in the same group

Test failures are NOT exceptions: they are recorded in the coverage report
and on the run record.
"""
from typing import Optional

from covpipe.core.constants import (
    ERROR_CONFIGURATION,
    ERROR_INFRASTRUCTURE,
    ERROR_PACKAGING,
)


class PipelineError(Exception):
    """Base class for every failure the orchestrator knows how to classify."""

    error_class: Optional[str] = None

    def __init__(self, message: str, step: str = "") -> None:
        super().__init__(message)
        self.step = step


class DefinitionError(PipelineError):
    error_class = ERROR_CONFIGURATION


class UnsupportedTrigger(PipelineError):
    """Event is valid but does not start a run (wrong branch, wrong action)."""


class InfrastructureError(PipelineError):
    error_class = ERROR_INFRASTRUCTURE


class PackagingError(PipelineError):
    error_class = ERROR_PACKAGING


class CredentialLeakError(PackagingError):
    """A publication credential reached an untrusted step environment."""


class RunCancelled(PipelineError):
    """Raised at an epoch check when a newer run owns the group."""
