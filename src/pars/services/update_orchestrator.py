"""
Update Orchestrator - Entry point for update and rollback runs

One instance lives for the lifetime of the daemon and owns the concurrency
gate, so every request sees the same lock. Runs are started as background
tasks that keep going if the client that started them disconnects.
"""
import asyncio
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from pars.config import Settings
from pars.models import Backup, UpdateLog
from pars.services.backup_manager import BackupManager, backup_files_status
from pars.services.command_runner import CommandRunner
from pars.services.concurrency_gate import ConcurrencyGate, StaleRunSweeper
from pars.services.operation_log import AdminUserRepository, BackupRepository, OperationLogRepository
from pars.services.pipeline import PipelineRun, UpdateError
from pars.services.progress import ProgressChannel
from pars.services.release_steps import ReleaseSteps
from pars.services.remote_comparator import RemoteComparator, RemoteCompareResult
from pars.services.rollback_pipeline import RollbackPipeline
from pars.services.update_pipeline import UpdatePipeline
from pars.services.version_inspector import VersionInspector

logger = structlog.get_logger(__name__)


class LockHeldError(UpdateError):
    """Another update or rollback is already running"""

    pass


class BackupNotFoundError(UpdateError):
    """The requested backup row does not exist"""

    pass


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_log(log: UpdateLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "version": log.version,
        "commitHash": log.commit_hash,
        "prevHash": log.prev_hash,
        "branch": log.branch,
        "status": log.status,
        "startedAt": _iso(log.started_at),
        "completedAt": _iso(log.completed_at),
        "duration": log.duration,
        "steps": log.steps,
        "error": log.error,
        "triggeredBy": log.triggered_by,
    }


def serialize_backup(backup: Backup) -> Dict[str, Any]:
    files_exist, db_file_exists = backup_files_status(backup.path, backup.db_path)
    return {
        "id": backup.id,
        "path": backup.path,
        "dbPath": backup.db_path,
        "version": backup.version,
        "commitHash": backup.commit_hash,
        "sizeBytes": backup.size_bytes,
        "note": backup.note,
        "createdAt": _iso(backup.created_at),
        "filesExist": files_exist,
        "dbFileExists": db_file_exists,
    }


class UpdateOrchestrator:
    """Starts runs under the concurrency gate and answers status queries"""

    def __init__(
        self,
        settings: Settings,
        session_maker: async_sessionmaker,
        runner: Optional[CommandRunner] = None,
        gate: Optional[ConcurrencyGate] = None,
    ):
        self.settings = settings
        self.runner = runner or CommandRunner(
            settings.project_root,
            timeout_seconds=settings.command_timeout_seconds,
            max_output_bytes=settings.command_max_output_bytes,
        )
        self.gate = gate or ConcurrencyGate()

        self.logs = OperationLogRepository(session_maker)
        self.backups = BackupRepository(session_maker)
        self.admin_users = AdminUserRepository(session_maker)
        self._runs: Dict[asyncio.Task, PipelineRun] = {}
        self.sweeper = StaleRunSweeper(
            self.logs, self.gate, settings.stale_lock_minutes, live_runs=self._live_log_ids
        )

        self.inspector = VersionInspector(self.runner, settings.project_root, settings.version_manifest)
        self.comparator = RemoteComparator(self.runner)
        self.backup_manager = BackupManager(
            self.runner,
            settings.project_root,
            settings.resolved_backups_dir,
            database_url=settings.database_url,
            excludes=(settings.dependency_dir, settings.build_dir),
        )
        self.release_steps = ReleaseSteps(self.runner, settings)


    async def start_update(self, repo_url: str, branch: str, triggered_by: str) -> ProgressChannel:
        """
        Start an update run in the background

        Raises:
            LockHeldError: If another run holds the gate
        """
        await self._acquire("Another update operation is already in progress")

        channel = ProgressChannel()
        try:
            pipeline = UpdatePipeline(
                log_repository=self.logs,
                backup_repository=self.backups,
                gate=self.gate,
                channel=channel,
                inspector=self.inspector,
                backup_manager=self.backup_manager,
                release_steps=self.release_steps,
                repo_url=repo_url,
                branch=branch,
                triggered_by=triggered_by,
            )
            self._spawn(pipeline)
        except BaseException:
            self.gate.release()
            raise

        logger.info("update_started", repo_url=repo_url, branch=branch, triggered_by=triggered_by)
        return channel

    async def start_rollback(self, backup_id: str, triggered_by: str) -> ProgressChannel:
        """
        Start a rollback to a recorded backup in the background

        Raises:
            BackupNotFoundError: If no backup row has this id
            LockHeldError: If another run holds the gate
        """
        backup = await self.backups.get(backup_id)
        if backup is None:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")

        await self._acquire("Another update or rollback operation is already in progress")

        channel = ProgressChannel()
        try:
            pipeline = RollbackPipeline(
                log_repository=self.logs,
                gate=self.gate,
                channel=channel,
                inspector=self.inspector,
                release_steps=self.release_steps,
                backup=backup,
                triggered_by=triggered_by,
                allow_missing_dump=self.settings.rollback_allow_missing_dump,
            )
            self._spawn(pipeline)
        except BaseException:
            self.gate.release()
            raise

        logger.info("rollback_started", backup_id=backup_id, triggered_by=triggered_by)
        return channel

    async def _acquire(self, message: str) -> None:
        await self.sweeper.check_and_clean_stale_locks()
        if not self.gate.try_acquire():
            logger.warning("run_rejected_lock_held")
            raise LockHeldError(message)

    def _spawn(self, pipeline: PipelineRun) -> None:
        task = asyncio.create_task(pipeline.execute())
        self._runs[task] = pipeline
        task.add_done_callback(lambda done: self._runs.pop(done, None))

    def _live_log_ids(self) -> List[Optional[str]]:
        """Log ids of runs still executing here (None until the row exists)"""
        return [pipeline.log_id for pipeline in self._runs.values()]

    async def wait_for_runs(self) -> None:
        """Wait until every run started by this orchestrator has finished"""
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    async def get_status(self) -> Dict[str, Any]:
        await self.sweeper.check_and_clean_stale_locks()

        version = await self.inspector.get_current_version()
        has_git = await self.runner.is_available("git")
        has_pm2 = await self.runner.is_available(self.settings.process_manager)
        has_pg_dump = await self.runner.is_available("pg_dump")
        last = await self.logs.latest()

        return {
            **version.to_dict(),
            "uptime": self.inspector.uptime_seconds(),
            "isGitRepo": self.inspector.is_git_repo(),
            "hasGit": has_git,
            "hasPm2": has_pm2,
            "hasPgDump": has_pg_dump,
            "isUpdateInProgress": self.gate.locked,
            "lastUpdate": serialize_log(last) if last else None,
            "repoUrl": self.settings.github_repo_url,
        }

    async def check_for_updates(self, repo_url: str, branch: str) -> RemoteCompareResult:
        return await self.comparator.fetch_remote_commits(repo_url, branch)

    async def list_logs(self, page: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        rows, total = await self.logs.list_page(page, limit)
        return [serialize_log(row) for row in rows], total

    async def list_backups(self, page: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        rows, total = await self.backups.list_page(page, limit)
        return [serialize_backup(row) for row in rows], total
