"""
Version Inspector - What is currently deployed

Reads the manifest version and the git HEAD of the managed working tree.
Every lookup degrades to a default instead of failing, so the status screen
keeps working on half-broken deployments.
"""
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

import structlog

from pars.services.command_runner import CommandRunner, ExecutionError

logger = structlog.get_logger(__name__)

DEFAULT_VERSION = "0.0.0"
UNKNOWN_COMMIT = "unknown"
DEFAULT_BRANCH = "main"

_PROCESS_STARTED = time.monotonic()


@dataclass
class VersionInfo:
    version: str
    commit_hash: str
    commit_date: str
    branch: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "commitHash": self.commit_hash,
            "commitDate": self.commit_date,
            "branch": self.branch,
        }


class VersionInspector:
    """Reports the version, HEAD commit and branch of the managed deployment"""

    def __init__(self, runner: CommandRunner, project_root: Path, manifest_name: str = "package.json"):
        self.runner = runner
        self.project_root = Path(project_root)
        self.manifest_path = self.project_root / manifest_name

    def read_manifest_version(self) -> str:
        """Version field of the manifest, "0.0.0" when missing or unreadable"""
        try:
            with open(self.manifest_path, encoding="utf-8") as f:
                manifest = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("manifest_read_failed", path=str(self.manifest_path), error=str(e))
            return DEFAULT_VERSION

        version = manifest.get("version") if isinstance(manifest, dict) else None
        return str(version) if version else DEFAULT_VERSION

    async def get_current_version(self) -> VersionInfo:
        info = VersionInfo(
            version=self.read_manifest_version(),
            commit_hash=UNKNOWN_COMMIT,
            commit_date=datetime.now(timezone.utc).isoformat(),
            branch=DEFAULT_BRANCH,
        )

        try:
            result = await self.runner.run("git", ["log", "-1", "--format=%H|%aI"])
            commit_hash, _, commit_date = result.stdout.strip().partition("|")
            if commit_hash:
                info.commit_hash = commit_hash
            if commit_date:
                info.commit_date = commit_date
        except ExecutionError as e:
            logger.warning("git_head_lookup_failed", error=str(e))

        try:
            result = await self.runner.run("git", ["branch", "--show-current"])
            branch = result.stdout.strip()
            if branch:
                info.branch = branch
        except ExecutionError as e:
            logger.warning("git_branch_lookup_failed", error=str(e))

        return info

    def is_git_repo(self) -> bool:
        return (self.project_root / ".git").exists()

    @staticmethod
    def uptime_seconds() -> float:
        """Seconds since the daemon process imported this module"""
        return round(time.monotonic() - _PROCESS_STARTED, 3)
