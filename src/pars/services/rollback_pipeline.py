"""
Rollback Pipeline - Return the deployment to a recorded snapshot
"""
import os
from typing import Any, Dict, List, Tuple

import structlog

from pars.models import Backup
from pars.services.concurrency_gate import ConcurrencyGate
from pars.services.operation_log import OperationLogRepository
from pars.services.pipeline import PipelineRun, StepOutcome, StepRunner
from pars.services.progress import ProgressChannel
from pars.services.release_steps import ReleaseSteps
from pars.services.version_inspector import VersionInspector

logger = structlog.get_logger(__name__)

ROLLBACK_STEPS = (
    "Verify",
    "Restore files",
    "Restore database",
    "Dependencies",
    "Schema sync",
    "Build",
    "Restart",
    "Completed",
)


class RollbackPipeline(PipelineRun):
    """
    Restore a backup's files and database, then rebuild and restart

    The log row records the backup's version and commit as its target, and
    its error column names the backup the run started from.
    """

    step_names = ROLLBACK_STEPS
    completed_message = "Rollback completed successfully"

    def __init__(
        self,
        log_repository: OperationLogRepository,
        gate: ConcurrencyGate,
        channel: ProgressChannel,
        inspector: VersionInspector,
        release_steps: ReleaseSteps,
        backup: Backup,
        triggered_by: str,
        allow_missing_dump: bool = False,
    ):
        super().__init__(log_repository, gate, channel, triggered_by)
        self.inspector = inspector
        self.release_steps = release_steps
        self.backup = backup
        self.allow_missing_dump = allow_missing_dump
        self.restore_db = True

    @property
    def provenance(self) -> str:
        return f"Rollback from {self.backup.id}"

    async def create_log(self, steps: List[Dict[str, Any]]) -> str:
        current = await self.inspector.get_current_version()
        log = await self.log_repository.create(
            version=self.backup.version,
            commit_hash=self.backup.commit_hash,
            prev_hash=current.commit_hash,
            branch=current.branch,
            triggered_by=self.triggered_by,
            steps=steps,
            error=self.provenance,
        )
        return log.id

    async def run_steps(self, runner: StepRunner) -> None:
        await runner.require(0, self._verify, "Backup verification failed")
        await runner.require(1, self._restore_files, "File restore failed")
        await runner.require(2, self._restore_database, "Database restore failed")
        await runner.require(3, self.release_steps.install_dependencies, "Dependency installation failed")
        await runner.require(4, self.release_steps.generate_and_migrate, "Schema sync failed")
        await runner.require(5, self.release_steps.build, "Build failed")
        await runner.run_step(6, self.release_steps.restart_processes)

    async def success_fields(self) -> Tuple[Dict[str, Any], str]:
        return {}, self.backup.version

    def failure_fields(self, message: str) -> Dict[str, Any]:
        return {"error": f"{self.provenance}: {message}"}

    async def _verify(self) -> StepOutcome:
        if not os.path.exists(self.backup.path):
            raise FileNotFoundError(f"Backup archive not found: {self.backup.path}")

        summary = f"{self.backup.version} - {self.backup.commit_hash[:8]}"
        if not self.backup.db_path or not os.path.exists(self.backup.db_path):
            if not self.allow_missing_dump:
                raise FileNotFoundError(f"Database dump not found: {self.backup.db_path}")
            self.restore_db = False
            logger.warning("rollback_without_dump", backup_id=self.backup.id, db_path=self.backup.db_path)
            return StepOutcome.warning(
                f"Backup files verified ({summary}); database dump not found: {self.backup.db_path}"
            )

        return StepOutcome.ok(f"Backup files verified ({summary})")

    async def _restore_files(self) -> StepOutcome:
        return await self.release_steps.restore_files(self.backup.path)

    async def _restore_database(self) -> StepOutcome:
        if not self.restore_db:
            return StepOutcome.warning("Database restore skipped: the backup has no dump")
        return await self.release_steps.restore_database(self.backup.db_path)
