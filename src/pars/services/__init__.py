"""
Pars Ops - Service Layer

Update / rollback orchestration for the managed storefront deployment.
"""

from pars.services.backup_manager import BackupError, BackupManager, BackupResult
from pars.services.command_runner import CommandResult, CommandRunner, ExecutionError
from pars.services.concurrency_gate import ConcurrencyGate, StaleRunSweeper
from pars.services.pipeline import StepFailedError, StepInfo, StepOutcome, StepStatus, UpdateError
from pars.services.progress import ProgressChannel, ProgressEvent, format_sse
from pars.services.remote_comparator import RemoteCommit, RemoteCompareResult
from pars.services.update_orchestrator import BackupNotFoundError, LockHeldError, UpdateOrchestrator
from pars.services.version_inspector import VersionInfo, VersionInspector

__all__ = [
    "BackupError",
    "BackupManager",
    "BackupResult",
    "CommandResult",
    "CommandRunner",
    "ExecutionError",
    "ConcurrencyGate",
    "StaleRunSweeper",
    "StepFailedError",
    "StepInfo",
    "StepOutcome",
    "StepStatus",
    "UpdateError",
    "ProgressChannel",
    "ProgressEvent",
    "format_sse",
    "RemoteCommit",
    "RemoteCompareResult",
    "BackupNotFoundError",
    "LockHeldError",
    "UpdateOrchestrator",
    "VersionInfo",
    "VersionInspector",
]
