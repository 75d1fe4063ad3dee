"""
Pipeline Run Model
==================
Pydantic models tracking one execution of the coverage pipeline.

PipelineRun fields:
    run_id          — short unique id
    group           — concurrency group (workflow + ref)
    epoch           — group epoch this run was started under
    trigger         — the TriggerEvent that started the run
    status          — "queued" | "in_progress" | "completed"
    conclusion      — "success" | "failure" | "cancelled" | None
    error_class     — "infrastructure" | "test" | "packaging" | "configuration" | None
    steps           — ordered StepRecord list
    coverage        — parsed CoverageSummary, if a report was produced
    artifact_path   — where the handoff bundle was stored
    cache_hit       — restore found an entry
    cache_saved     — save wrote a new entry

StepRecord.env_keys holds variable NAMES only. It is the audit trail used to
verify that untrusted runs never carried a publication credential.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from covpipe.models.trigger_event import TriggerEvent


class StepRecord(BaseModel):
    name: str
    status: str = "success"             # success / failure / skipped / cancelled
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0
    log_excerpt: str = ""
    env_keys: List[str] = []


class CoverageSummary(BaseModel):
    line_rate: float = 0.0
    lines_covered: int = 0
    lines_valid: int = 0
    packages: int = 0

    @property
    def percent(self) -> float:
        return round(self.line_rate * 100, 2)


class PipelineRun(BaseModel):
    run_id: str
    group: str
    epoch: int = 0
    trigger: TriggerEvent
    status: str = "queued"
    conclusion: Optional[str] = None
    error_class: Optional[str] = None
    error_message: str = ""
    steps: List[StepRecord] = []
    coverage: Optional[CoverageSummary] = None
    tests_passed: Optional[bool] = None
    artifact_path: str = ""
    cache_hit: bool = False
    cache_saved: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def step(self, name: str) -> Optional[StepRecord]:
        for record in self.steps:
            if record.name == name:
                return record
        return None
