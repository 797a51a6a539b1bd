"""
Operation Log - Persistence for run records, backup rows and admin identities

Each repository call opens its own short-lived session from the injected
factory, so a run's progress writes do not depend on the HTTP request that
started it.
"""
from datetime import datetime
from typing import Any, Collection, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update as sql_update
from sqlalchemy.ext.asyncio import async_sessionmaker

from pars.models import AdminUser, Backup, UpdateLog, UpdateLogStatus

logger = structlog.get_logger(__name__)


class OperationLogRepository:
    """update_log rows, one per update or rollback run"""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def create(
        self,
        version: str,
        commit_hash: str,
        prev_hash: Optional[str],
        branch: str,
        triggered_by: str,
        steps: List[Dict[str, Any]],
        error: Optional[str] = None,
    ) -> UpdateLog:
        async with self.session_maker() as session:
            log = UpdateLog(
                version=version,
                commit_hash=commit_hash,
                prev_hash=prev_hash,
                branch=branch,
                status=UpdateLogStatus.IN_PROGRESS.value,
                triggered_by=triggered_by,
                steps=steps,
                error=error,
            )
            session.add(log)
            await session.commit()
            await session.refresh(log)
            return log

    async def _update_in_progress(self, log_id: str, values: Dict[str, Any]) -> bool:
        # Terminal rows are never rewritten
        async with self.session_maker() as session:
            result = await session.execute(
                sql_update(UpdateLog)
                .where(
                    UpdateLog.id == log_id,
                    UpdateLog.status == UpdateLogStatus.IN_PROGRESS.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return bool(result.rowcount)

    async def update_steps(self, log_id: str, steps: List[Dict[str, Any]]) -> bool:
        updated = await self._update_in_progress(log_id, {"steps": steps})
        if not updated:
            logger.warning("step_snapshot_ignored_for_finished_run", log_id=log_id)
        return updated

    async def finalize(
        self,
        log_id: str,
        status: UpdateLogStatus,
        completed_at: datetime,
        duration: int,
        steps: List[Dict[str, Any]],
        **fields: Any,
    ) -> bool:
        """
        Write the terminal status; extra fields (error, commit_hash, version) are applied as given

        Returns:
            False when the row was no longer IN_PROGRESS and was left untouched
        """
        values = {
            "status": status.value,
            "completed_at": completed_at,
            "duration": duration,
            "steps": steps,
            **fields,
        }
        finalized = await self._update_in_progress(log_id, values)
        if not finalized:
            logger.warning("finalize_ignored_for_finished_run", log_id=log_id, status=status.value)
        return finalized

    async def get(self, log_id: str) -> Optional[UpdateLog]:
        async with self.session_maker() as session:
            result = await session.execute(select(UpdateLog).where(UpdateLog.id == log_id))
            return result.scalar_one_or_none()

    async def latest(self) -> Optional[UpdateLog]:
        async with self.session_maker() as session:
            result = await session.execute(select(UpdateLog).order_by(UpdateLog.started_at.desc()).limit(1))
            return result.scalar_one_or_none()

    async def list_page(self, page: int, limit: int) -> Tuple[List[UpdateLog], int]:
        async with self.session_maker() as session:
            total = await session.scalar(select(func.count()).select_from(UpdateLog))
            result = await session.execute(
                select(UpdateLog)
                .order_by(UpdateLog.started_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all()), int(total or 0)

    async def fail_stale(
        self,
        cutoff: datetime,
        error: str,
        completed_at: datetime,
        exclude_ids: Collection[str] = (),
    ) -> int:
        """Bulk-fail IN_PROGRESS rows started before cutoff, except exclude_ids; returns the row count"""
        conditions = [
            UpdateLog.status == UpdateLogStatus.IN_PROGRESS.value,
            UpdateLog.started_at < cutoff,
        ]
        if exclude_ids:
            conditions.append(UpdateLog.id.notin_(list(exclude_ids)))

        async with self.session_maker() as session:
            result = await session.execute(
                sql_update(UpdateLog)
                .where(*conditions)
                .values(
                    status=UpdateLogStatus.FAILED.value,
                    completed_at=completed_at,
                    error=error,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount or 0


class BackupRepository:
    """backups rows; immutable once written"""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def create(
        self,
        path: str,
        db_path: str,
        version: str,
        commit_hash: str,
        size_bytes: int,
        note: Optional[str] = None,
    ) -> Backup:
        async with self.session_maker() as session:
            backup = Backup(
                path=path,
                db_path=db_path,
                version=version,
                commit_hash=commit_hash,
                size_bytes=size_bytes,
                note=note,
            )
            session.add(backup)
            await session.commit()
            await session.refresh(backup)
            logger.info("backup_recorded", backup_id=backup.id, path=path)
            return backup

    async def get(self, backup_id: str) -> Optional[Backup]:
        async with self.session_maker() as session:
            result = await session.execute(select(Backup).where(Backup.id == backup_id))
            return result.scalar_one_or_none()

    async def list_page(self, page: int, limit: int) -> Tuple[List[Backup], int]:
        async with self.session_maker() as session:
            total = await session.scalar(select(func.count()).select_from(Backup))
            result = await session.execute(
                select(Backup).order_by(Backup.created_at.desc()).offset((page - 1) * limit).limit(limit)
            )
            return list(result.scalars().all()), int(total or 0)


class AdminUserRepository:
    """Read-only access to storefront admin accounts"""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def get(self, user_id: str) -> Optional[AdminUser]:
        async with self.session_maker() as session:
            result = await session.execute(select(AdminUser).where(AdminUser.id == user_id))
            return result.scalar_one_or_none()
