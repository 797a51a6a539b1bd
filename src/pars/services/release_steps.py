"""
Release Steps - The storefront toolchain operations both pipelines share

Each operation either returns a StepOutcome or raises; only the process
manager restart turns its own failure into a warning.
"""
import os
from pathlib import Path

import structlog

from pars.config import Settings
from pars.services.command_runner import CommandRunner, ExecutionError
from pars.services.pipeline import StepOutcome

logger = structlog.get_logger(__name__)


def _tail(output: str, limit: int = 2000) -> str:
    output = output.strip()
    return output if len(output) <= limit else "..." + output[-limit:]


class ReleaseSteps:
    """git, npm, prisma, build and process manager commands for the managed deployment"""

    def __init__(self, runner: CommandRunner, settings: Settings):
        self.runner = runner
        self.settings = settings
        self.project_root = Path(settings.project_root)

    def _install_env(self):
        return {**os.environ, **self.settings.install_env_overrides}

    async def git_fetch_and_reset(self, repo_url: str, branch: str) -> str:
        """Hard-reset the working tree to the fetched remote tip; returns the new HEAD"""
        await self.runner.run("git", ["fetch", repo_url, branch])
        await self.runner.run("git", ["reset", "--hard", "FETCH_HEAD"])
        result = await self.runner.run("git", ["rev-parse", "HEAD"])
        new_hash = result.stdout.strip()
        logger.info("working_tree_reset", repo_url=repo_url, branch=branch, commit_hash=new_hash)
        return new_hash

    async def install_dependencies(self) -> StepOutcome:
        """Clean install; uses the lockfile for a reproducible install when present"""
        await self.runner.run("rm", ["-rf", self.settings.dependency_dir])

        has_lockfile = (self.project_root / self.settings.lockfile).exists()
        command = "ci" if has_lockfile else "install"

        logger.info("installing_dependencies", command=f"npm {command}")
        result = await self.runner.run("npm", [command], env=self._install_env())
        return StepOutcome.ok(_tail(result.stdout or result.stderr) or f"npm {command} completed")

    async def generate_and_migrate(self) -> StepOutcome:
        """Regenerate the ORM client, then migrate or fall back to a schema push"""
        generated = await self.runner.run("npx", ["prisma", "generate"])

        try:
            migrated = await self.runner.run("npx", ["prisma", "migrate", "deploy"])
            schema_result = f"Migrate deploy: {_tail(migrated.stdout)}"
        except ExecutionError as e:
            logger.warning("migrate_deploy_failed_falling_back_to_db_push", error=str(e))
            pushed = await self.runner.run("npx", ["prisma", "db", "push", "--accept-data-loss"])
            schema_result = f"DB push: {_tail(pushed.stdout)}"

        return StepOutcome.ok(f"Prisma generate: {_tail(generated.stdout)}\n{schema_result}")

    async def build(self) -> StepOutcome:
        """Production build from an empty build cache"""
        await self.runner.run("rm", ["-rf", self.settings.build_dir])
        result = await self.runner.run("npm", ["run", "build"])
        return StepOutcome.ok(_tail(result.stdout or result.stderr) or "Build completed")

    async def restart_processes(self) -> StepOutcome:
        """Restart every managed process; failure is a warning, not an error"""
        manager = self.settings.process_manager
        try:
            result = await self.runner.run(manager, ["restart", "all"])
        except ExecutionError as e:
            logger.warning("process_restart_failed", process_manager=manager, error=str(e))
            return StepOutcome.warning(
                f"{manager} restart failed: {e}. You may need to restart the application manually."
            )
        return StepOutcome.ok(_tail(result.stdout) or f"{manager} restarted")

    async def restore_files(self, archive_path: str) -> StepOutcome:
        """Extract a snapshot archive over the working tree"""
        if self.settings.rollback_clean_worktree:
            excludes = []
            for name in (self.settings.dependency_dir, self.settings.build_dir, self._backups_dir_name()):
                excludes += ["-e", name]
            await self.runner.run("git", ["clean", "-fdx", *excludes])
            logger.info("working_tree_cleaned")

        await self.runner.run("tar", ["xzf", archive_path, "-C", str(self.project_root)])
        logger.info("files_restored", archive=archive_path)
        return StepOutcome.ok("Files restored from backup")

    async def restore_database(self, dump_path: str) -> StepOutcome:
        database_url = self.settings.database_url
        if not database_url:
            raise ExecutionError("DATABASE_URL is not configured")

        await self.runner.run("psql", [database_url, "-f", dump_path])
        logger.info("database_restored", dump=dump_path)
        return StepOutcome.ok("Database restored from backup")

    def _backups_dir_name(self) -> str:
        backups_dir = Path(self.settings.resolved_backups_dir)
        try:
            return str(backups_dir.resolve().relative_to(self.project_root.resolve()))
        except ValueError:
            return backups_dir.name
