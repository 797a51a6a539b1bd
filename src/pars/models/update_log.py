"""
Update Tracking Models - Update / rollback run history and backup snapshots
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from pars.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UpdateLogStatus(str, enum.Enum):
    """Lifecycle of a single update or rollback run"""

    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class UpdateLog(Base):
    """
    Update Log - One row per update or rollback run

    Rollback runs are distinguished by an error text that starts with
    "Rollback from <backup id>".
    """

    __tablename__ = "update_log"

    # Primary Key
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    # Version Information
    version: Mapped[str] = mapped_column(String(100), nullable=False)
    commit_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    branch: Mapped[str] = mapped_column(String(100), nullable=False, default="main")

    # Run Status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UpdateLogStatus.IN_PROGRESS.value
    )

    # Timestamps
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Step snapshot and outcome
    steps: Mapped[Optional[List[Any]]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('IN_PROGRESS', 'SUCCESS', 'FAILED')",
            name="update_log_status_check",
        ),
    )

    def __repr__(self) -> str:
        return f"<UpdateLog(id={self.id}, status={self.status}, commit_hash={self.commit_hash})>"


class Backup(Base):
    """
    Backup - A snapshot of the working tree and, when available, the database

    path points at the files archive. db_path is where the dump was written
    and may not exist on disk when the dump was skipped or failed.
    """

    __tablename__ = "backups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    # Snapshot location
    path: Mapped[str] = mapped_column(Text, nullable=False)
    db_path: Mapped[str] = mapped_column(Text, nullable=False)

    # Version the snapshot was taken from
    version: Mapped[str] = mapped_column(String(100), nullable=False)
    commit_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<Backup(id={self.id}, version={self.version}, path={self.path})>"
