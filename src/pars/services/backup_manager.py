"""
Backup Manager - Point-in-time snapshots taken before an update

A snapshot is a directory under the backups location holding:
- files.tar.gz: the working tree without dependency, build and backup dirs
- db.sql: a plain-text pg_dump of the database, when one could be taken

The archive is mandatory; the dump is best effort.
"""
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import structlog

from pars.services.command_runner import CommandRunner, ExecutionError

logger = structlog.get_logger(__name__)

ARCHIVE_NAME = "files.tar.gz"
DUMP_NAME = "db.sql"

_POSTGRES_SCHEMES = ("postgres://", "postgresql://")


@dataclass
class BackupResult:
    """Files produced by one snapshot"""

    file_path: str
    db_path: str
    size_bytes: int
    db_dumped: bool
    warning: Optional[str] = None

    @property
    def size_mb(self) -> float:
        return self.size_bytes / 1024 / 1024


class BackupError(Exception):
    """Raised when the files archive cannot be created"""

    pass


class BackupManager:
    """
    Creates snapshots of the managed deployment

    Retention is not handled here; snapshots accumulate until removed by hand.
    """

    def __init__(
        self,
        runner: CommandRunner,
        project_root: Path,
        backups_dir: Path,
        database_url: str = "",
        excludes: Tuple[str, ...] = ("node_modules", ".next"),
    ):
        """
        Initialize BackupManager

        Args:
            runner: Command runner used for tar and pg_dump
            project_root: Working tree to archive
            backups_dir: Directory snapshots are written to
            database_url: libpq connection string handed to pg_dump
            excludes: Directory names left out of the archive
        """
        self.runner = runner
        self.project_root = Path(project_root)
        self.backups_dir = Path(backups_dir)
        self.database_url = database_url
        self.excludes = tuple(excludes)

    def _get_backup_dir(self, version: str, commit_hash: str) -> Path:
        """Snapshot directory: <timestamp>_v<version>_<short hash>"""
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        timestamp = timestamp.replace("+00:00", "Z").replace(":", "-").replace(".", "-")
        safe_version = version.replace("/", "_").replace("\\", "_")
        return self.backups_dir / f"{timestamp}_v{safe_version}_{commit_hash[:8]}"

    def _archive_excludes(self):
        names = list(self.excludes)
        # Keep snapshots out of snapshots when they live inside the tree
        try:
            names.append(str(self.backups_dir.resolve().relative_to(self.project_root.resolve())))
        except ValueError:
            pass
        return [f"--exclude={name}" for name in names]

    def _can_dump(self) -> bool:
        return self.database_url.startswith(_POSTGRES_SCHEMES)

    async def create_backup(self, version: str, commit_hash: str) -> BackupResult:
        """
        Snapshot the working tree and database

        Args:
            version: Manifest version being backed up
            commit_hash: HEAD commit being backed up

        Returns:
            BackupResult with archive/dump paths and combined size

        Raises:
            BackupError: If the directory or archive cannot be created
        """
        backup_dir = self._get_backup_dir(version, commit_hash)
        file_path = backup_dir / ARCHIVE_NAME
        db_path = backup_dir / DUMP_NAME

        logger.info("creating_backup", version=version, commit_hash=commit_hash, path=str(backup_dir))

        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("failed_to_create_backup_directory", backup_dir=str(backup_dir), error=str(e))
            raise BackupError(f"Failed to create backup directory {backup_dir}: {e}") from e

        try:
            await self.runner.run(
                "tar", ["czf", str(file_path), *self._archive_excludes(), "."], cwd=self.project_root
            )
        except ExecutionError as e:
            logger.error("backup_archive_failed", path=str(file_path), error=str(e))
            raise BackupError(f"Failed to archive files: {e}") from e

        warning = await self._dump_database(db_path)

        size_bytes = file_path.stat().st_size if file_path.exists() else 0
        db_dumped = db_path.exists()
        if db_dumped:
            size_bytes += db_path.stat().st_size

        logger.info(
            "backup_created",
            path=str(backup_dir),
            size_bytes=size_bytes,
            db_dumped=db_dumped,
        )
        return BackupResult(
            file_path=str(file_path),
            db_path=str(db_path),
            size_bytes=size_bytes,
            db_dumped=db_dumped,
            warning=warning,
        )

    async def _dump_database(self, db_path: Path) -> Optional[str]:
        """Write pg_dump output to db_path; returns a warning instead of raising"""
        if not self._can_dump():
            logger.warning("database_dump_skipped", reason="no postgres database url")
            return "database dump skipped: no PostgreSQL database configured"

        if not await self.runner.is_available("pg_dump"):
            logger.warning("database_dump_skipped", reason="pg_dump not installed")
            return "database dump skipped: pg_dump not installed"

        try:
            result = await self.runner.run("pg_dump", [self.database_url])
            db_path.write_text(result.stdout, encoding="utf-8")
        except (ExecutionError, OSError) as e:
            logger.warning("database_dump_failed", error=str(e))
            if db_path.exists():
                db_path.unlink()
            return f"database dump failed: {e}"

        return None


def backup_files_status(path: str, db_path: Optional[str]) -> Tuple[bool, bool]:
    """Whether a snapshot's archive and dump are still on disk"""
    files_exist = bool(path) and os.path.exists(path)
    db_file_exists = bool(db_path) and os.path.exists(db_path)
    return files_exist, db_file_exists
