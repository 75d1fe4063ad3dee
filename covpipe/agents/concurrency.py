"""
Concurrency Controller
======================
Single-flight runs per group (workflow identity + ref).

Epoch model:
    Every acquire() for a group increments that group's epoch and hands the
    new run a RunToken carrying it. A run is current only while its epoch is
    the group's latest. The orchestrator checks the token before every
    effectful step and before packaging, so a superseded run stops even if
    its task is between awaits when it is cancelled.

Cancellation:
    The previous in-flight task of the group is cancelled when a newer run
    binds its task. Superseded runs are cancelled, never queued.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from covpipe.core.errors import RunCancelled

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunToken:
    group: str
    epoch: int
    controller: "ConcurrencyController"

    def is_current(self) -> bool:
        return self.controller.current_epoch(self.group) == self.epoch

    def ensure_current(self, step: str = "") -> None:
        """Raise RunCancelled if a newer run owns the group."""
        if not self.is_current():
            raise RunCancelled(
                f"Superseded in group {self.group} (epoch {self.epoch} < "
                f"{self.controller.current_epoch(self.group)})",
                step=step,
            )


class ConcurrencyController:

    def __init__(self) -> None:
        self._epochs: Dict[str, int] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def current_epoch(self, group: str) -> int:
        return self._epochs.get(group, 0)

    def acquire(self, group: str) -> RunToken:
        """Start a new epoch for ``group``; older tokens stop being current."""
        epoch = self._epochs.get(group, 0) + 1
        self._epochs[group] = epoch
        logger.info("Group %s now at epoch %d", group, epoch)
        return RunToken(group=group, epoch=epoch, controller=self)

    def bind(self, token: RunToken, task: asyncio.Task) -> None:
        """Register ``task`` as the group's in-flight run, cancelling the previous one."""
        previous = self.in_flight(token.group)
        if previous is not None:
            logger.warning("Cancelling in-flight run in group %s", token.group)
            previous.cancel()
        self._tasks[token.group] = task

    def in_flight(self, group: str) -> Optional[asyncio.Task]:
        task = self._tasks.get(group)
        if task is None or task.done():
            return None
        return task

    def release(self, token: RunToken) -> None:
        """Forget the group's task if it still belongs to ``token``."""
        if token.is_current():
            self._tasks.pop(token.group, None)
