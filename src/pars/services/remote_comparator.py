"""
Remote Comparator - How far behind the remote branch the deployment is

Only the fetch state (FETCH_HEAD) is touched; the working tree and the current
branch pointer are left alone, so this is safe to poll.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

import structlog

from pars.services.command_runner import CommandRunner, ExecutionError

logger = structlog.get_logger(__name__)

_LOG_FORMAT = "--format=%H|%s|%aI|%an"


@dataclass
class RemoteCommit:
    hash: str
    message: str
    date: str
    author: str


@dataclass
class RemoteCompareResult:
    ahead: int
    commits: List[RemoteCommit] = field(default_factory=list)
    latest_remote_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ahead": self.ahead,
            "commits": [asdict(c) for c in self.commits],
            "latestRemoteHash": self.latest_remote_hash,
        }


def parse_commit_line(line: str) -> RemoteCommit:
    """
    Parse one `%H|%s|%aI|%an` line

    The subject may itself contain "|", so hash is split from the left and
    date/author from the right.
    """
    commit_hash, _, rest = line.partition("|")
    parts = rest.rsplit("|", 2)
    while len(parts) < 3:
        parts.append("")
    message, date, author = parts
    return RemoteCommit(hash=commit_hash, message=message, date=date, author=author)


class RemoteComparator:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    async def fetch_remote_commits(self, repo_url: str, branch: str) -> RemoteCompareResult:
        """
        Fetch the remote branch and list commits not yet in HEAD, newest first

        Raises:
            ExecutionError: If the fetch or the log listing fails
        """
        logger.info("fetching_remote", repo_url=repo_url, branch=branch)
        await self.runner.run("git", ["fetch", repo_url, branch])

        result = await self.runner.run("git", ["log", "HEAD..FETCH_HEAD", _LOG_FORMAT])
        commits = [parse_commit_line(line) for line in result.stdout.splitlines() if line.strip()]

        if commits:
            latest = commits[0].hash
        else:
            try:
                latest = (await self.runner.run("git", ["rev-parse", "FETCH_HEAD"])).stdout.strip()
            except ExecutionError as e:
                logger.warning("fetch_head_lookup_failed", error=str(e))
                latest = ""

        logger.info("remote_compared", ahead=len(commits), latest_remote_hash=latest)
        return RemoteCompareResult(ahead=len(commits), commits=commits, latest_remote_hash=latest)
