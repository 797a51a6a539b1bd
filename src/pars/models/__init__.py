"""
Pars Ops - SQLAlchemy ORM Models

This package contains the tables the ops daemon reads and writes.
"""

from pars.database import Base

# Import all models to ensure they're registered with Base.metadata
from pars.models.update_log import Backup, UpdateLog, UpdateLogStatus
from pars.models.user import AdminUser

__all__ = [
    "Base",
    "AdminUser",
    "Backup",
    "UpdateLog",
    "UpdateLogStatus",
]
