"""
Update Pipeline - Snapshot, pull, reinstall, migrate, rebuild, restart
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pars.services.backup_manager import BackupManager
from pars.services.concurrency_gate import ConcurrencyGate
from pars.services.operation_log import BackupRepository, OperationLogRepository
from pars.services.pipeline import PipelineRun, StepOutcome, StepRunner
from pars.services.progress import ProgressChannel
from pars.services.release_steps import ReleaseSteps
from pars.services.version_inspector import VersionInfo, VersionInspector

UPDATE_STEPS = (
    "Backup",
    "Code update",
    "Dependencies",
    "Database",
    "Build",
    "Restart",
    "Completed",
)


class UpdatePipeline(PipelineRun):
    """
    Update the managed deployment to the tip of a remote branch

    Steps 1 to 5 are required. Restart is best effort because the new code
    and schema are already in place by the time it runs.
    """

    step_names = UPDATE_STEPS
    completed_message = "Update completed successfully"

    def __init__(
        self,
        log_repository: OperationLogRepository,
        backup_repository: BackupRepository,
        gate: ConcurrencyGate,
        channel: ProgressChannel,
        inspector: VersionInspector,
        backup_manager: BackupManager,
        release_steps: ReleaseSteps,
        repo_url: str,
        branch: str,
        triggered_by: str,
    ):
        super().__init__(log_repository, gate, channel, triggered_by)
        self.backup_repository = backup_repository
        self.inspector = inspector
        self.backup_manager = backup_manager
        self.release_steps = release_steps
        self.repo_url = repo_url
        self.branch = branch

        self.current: Optional[VersionInfo] = None
        self.new_commit_hash = ""

    async def create_log(self, steps: List[Dict[str, Any]]) -> str:
        self.current = await self.inspector.get_current_version()
        log = await self.log_repository.create(
            version=self.current.version,
            commit_hash=self.current.commit_hash,
            prev_hash=self.current.commit_hash,
            branch=self.branch,
            triggered_by=self.triggered_by,
            steps=steps,
        )
        return log.id

    async def run_steps(self, runner: StepRunner) -> None:
        await runner.require(0, self._backup, "Backup failed")
        await runner.require(1, self._code_update, "Code update failed")
        await runner.require(2, self.release_steps.install_dependencies, "Dependency installation failed")
        await runner.require(3, self.release_steps.generate_and_migrate, "Database update failed")
        await runner.require(4, self.release_steps.build, "Build failed")
        await runner.run_step(5, self.release_steps.restart_processes)

    async def success_fields(self) -> Tuple[Dict[str, Any], str]:
        deployed = await self.inspector.get_current_version()
        fields = {
            "commit_hash": self.new_commit_hash or deployed.commit_hash,
            "version": deployed.version,
        }
        return fields, deployed.version

    async def _backup(self) -> StepOutcome:
        result = await self.backup_manager.create_backup(self.current.version, self.current.commit_hash)
        today = datetime.now(timezone.utc).date().isoformat()
        await self.backup_repository.create(
            path=result.file_path,
            db_path=result.db_path,
            version=self.current.version,
            commit_hash=self.current.commit_hash,
            size_bytes=result.size_bytes,
            note=f"Automatic backup before update ({today})",
        )

        message = f"Backup created ({result.size_mb:.2f} MB)"
        if result.warning:
            return StepOutcome.warning(f"{message}, {result.warning}")
        return StepOutcome.ok(message)

    async def _code_update(self) -> StepOutcome:
        self.new_commit_hash = await self.release_steps.git_fetch_and_reset(self.repo_url, self.branch)
        return StepOutcome.ok(f"Code updated: {self.new_commit_hash[:8]}")
