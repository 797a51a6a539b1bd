"""
Concurrency Gate - One update or rollback at a time

The gate is advisory and process local. Runs abandoned by a crashed or
restarted process are reconciled by StaleRunSweeper, which works on the
operation log rather than on the gate itself.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import structlog

from pars.services.operation_log import OperationLogRepository

logger = structlog.get_logger(__name__)

ORPHANED_MESSAGE = "Interrupted: the ops daemon restarted while the run was in progress"


class ConcurrencyGate:
    """Non-blocking single-flight lock"""

    def __init__(self):
        self._mutex = threading.Lock()
        self._held = False

    def try_acquire(self) -> bool:
        """Take the gate; False immediately when it is already held"""
        with self._mutex:
            if self._held:
                return False
            self._held = True
            return True

    def release(self) -> None:
        with self._mutex:
            self._held = False

    @property
    def locked(self) -> bool:
        return self._held


class StaleRunSweeper:
    """
    Fails IN_PROGRESS runs that have outlived the staleness threshold

    live_runs reports the log ids of runs executing in this process, one entry
    per run (None while its row is not yet written). Those rows are never
    swept, and the gate is only released when no run is live.
    """

    def __init__(
        self,
        log_repository: OperationLogRepository,
        gate: ConcurrencyGate,
        stale_after_minutes: int = 10,
        live_runs: Optional[Callable[[], List[Optional[str]]]] = None,
    ):
        self.log_repository = log_repository
        self.gate = gate
        self.stale_after_minutes = stale_after_minutes
        self.live_runs = live_runs or list

    @property
    def timeout_message(self) -> str:
        return (
            f"Timed out: the run took longer than {self.stale_after_minutes} minutes "
            "and was marked as failed automatically"
        )

    async def check_and_clean_stale_locks(self) -> int:
        """
        Mark stale IN_PROGRESS rows FAILED and clear the gate if any were found

        Returns:
            Number of rows swept
        """
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self.stale_after_minutes)
        return await self._sweep(cutoff, self.timeout_message, now)

    async def fail_orphaned_runs(self) -> int:
        """Fail every IN_PROGRESS row not owned by this process, whatever its age"""
        now = datetime.now(timezone.utc)
        return await self._sweep(now, ORPHANED_MESSAGE, now)

    async def _sweep(self, cutoff: datetime, error: str, now: datetime) -> int:
        live = self.live_runs()
        swept = await self.log_repository.fail_stale(
            cutoff,
            error,
            completed_at=now,
            exclude_ids=[log_id for log_id in live if log_id],
        )
        if swept:
            logger.warning("stale_runs_swept", count=swept, cutoff=cutoff.isoformat(), live_runs=len(live))
            if not live:
                self.gate.release()
        return swept
