"""
Command Runner - Bounded execution of external programs

Every git / tar / npm / pm2 / pg_dump invocation made by the daemon goes
through CommandRunner so that timeouts, output limits and error reporting are
handled in one place.
"""
import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0
DEFAULT_MAX_OUTPUT_BYTES = 50 * 1024 * 1024
_READ_CHUNK = 64 * 1024


class ExecutionError(Exception):
    """Raised when a command cannot be started, exits non-zero or times out"""

    def __init__(
        self,
        message: str,
        command: Sequence[str] = (),
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out


class _OutputLimitExceeded(Exception):
    pass


@dataclass
class CommandResult:
    """Captured output of a successful command"""

    stdout: str
    stderr: str


class CommandRunner:
    """
    Runs external programs with a fixed timeout and output ceiling

    Commands run in the project root unless told otherwise and inherit the
    daemon's environment; a per-call env replaces it entirely.
    """

    def __init__(
        self,
        project_root: Path,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        base_env: Optional[Dict[str, str]] = None,
    ):
        self.project_root = Path(project_root)
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes
        self.base_env = base_env

    async def run(
        self,
        program: str,
        args: Sequence[str] = (),
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        """
        Run a program to completion

        Args:
            program: Executable name or path
            args: Argument list (no shell interpretation)
            cwd: Working directory (default: project root)
            env: Full environment for this call (default: daemon environment)

        Returns:
            CommandResult with decoded stdout and stderr

        Raises:
            ExecutionError: On spawn failure, non-zero exit, timeout or output overflow
        """
        command = [program, *args]
        workdir = Path(cwd) if cwd is not None else self.project_root
        environment = env if env is not None else (self.base_env or dict(os.environ))

        logger.debug("command_started", command=" ".join(command), cwd=str(workdir))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workdir),
                env=environment,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("command_spawn_failed", command=program, error=str(e))
            raise ExecutionError(f"Cannot run {program}: {e}", command=command) from e

        budget = [self.max_output_bytes]

        try:
            stdout_bytes, stderr_bytes, returncode = await asyncio.wait_for(
                asyncio.gather(
                    self._read_capped(process.stdout, budget),
                    self._read_capped(process.stderr, budget),
                    process.wait(),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            logger.warning("command_timed_out", command=" ".join(command), timeout=self.timeout_seconds)
            raise ExecutionError(
                f"{program} timed out after {self.timeout_seconds:g}s",
                command=command,
                timed_out=True,
            )
        except _OutputLimitExceeded:
            await self._kill(process)
            logger.warning("command_output_limit_exceeded", command=" ".join(command))
            raise ExecutionError(
                f"{program} exceeded the output limit of {self.max_output_bytes} bytes",
                command=command,
            )

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")

        if returncode != 0:
            detail = stderr.strip() or stdout.strip() or "no output"
            raise ExecutionError(
                f"{program} exited with code {returncode}: {detail}",
                command=command,
                returncode=returncode,
                stdout=stdout,
                stderr=stderr,
            )

        return CommandResult(stdout=stdout, stderr=stderr)

    async def is_available(self, program: str) -> bool:
        """Check whether `<program> --version` runs successfully"""
        try:
            await self.run(program, ["--version"])
            return True
        except ExecutionError:
            return False

    @staticmethod
    async def _read_capped(stream: Optional[asyncio.StreamReader], budget: List[int]) -> bytes:
        # budget is shared between stdout and stderr
        if stream is None:
            return b""
        chunks = []
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            budget[0] -= len(chunk)
            if budget[0] < 0:
                raise _OutputLimitExceeded()
            chunks.append(chunk)
        return b"".join(chunks)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
