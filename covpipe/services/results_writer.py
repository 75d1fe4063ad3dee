"""
Results Writer
==============
Serializes a finished PipelineRun into <runs_root>/<run_id>.json so run
history survives a service restart.
"""
import json
import logging
import os
from typing import List

from covpipe.core.config import RUNS_ROOT
from covpipe.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class ResultsWriter:
    """
    Service responsible for persisting run records for the status API.
    """

    def __init__(self, runs_root: str = RUNS_ROOT) -> None:
        self.runs_root = runs_root

    def write_run(self, run: PipelineRun) -> bool:
        """Write the run record. Returns False (and logs) on I/O failure."""
        try:
            os.makedirs(self.runs_root, exist_ok=True)
            path = os.path.join(self.runs_root, f"{run.run_id}.json")
            logger.info("Writing run record to %s", path)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(run.model_dump(mode="json"), f, indent=2)
            return True
        except OSError as e:
            logger.error("Failed to write run record %s: %s", run.run_id, e, exc_info=True)
            return False

    def load_runs(self) -> List[PipelineRun]:
        """Read every stored run record, skipping unreadable ones."""
        if not os.path.isdir(self.runs_root):
            return []
        runs = []
        for fname in sorted(os.listdir(self.runs_root)):
            if not fname.endswith(".json"):
                continue
            try:
                with open(os.path.join(self.runs_root, fname), "r", encoding="utf-8") as f:
                    runs.append(PipelineRun.model_validate(json.load(f)))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable run record %s: %s", fname, e)
        return runs
