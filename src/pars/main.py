"""
Pars Ops Daemon - Main Entry Point
"""
import asyncio
import sys
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI

from pars.api import create_app
from pars.config import get_settings
from pars.database import close_database, get_session_maker, init_database
from pars.logging_config import setup_logging
from pars.services.update_orchestrator import UpdateOrchestrator

logger = structlog.get_logger(__name__)


class OpsDaemon:
    """Owns the database, the orchestrator and the HTTP app"""

    def __init__(self):
        self.settings = get_settings()
        self.app: Optional[FastAPI] = None
        self.orchestrator: Optional[UpdateOrchestrator] = None

    async def startup(self):
        """Initialize all daemon components"""
        logger.info(
            "pars_ops_starting",
            version=self.settings.api_version,
            project_root=str(self.settings.project_root),
        )

        logger.info("initializing_database")
        await init_database(self.settings.database_url)

        self.orchestrator = UpdateOrchestrator(self.settings, get_session_maker())

        # No run can be live in a fresh process, so every IN_PROGRESS row is an orphan
        # (e.g. the previous daemon was killed by its own restart step)
        swept = await self.orchestrator.sweeper.fail_orphaned_runs()
        if swept:
            logger.warning("orphaned_runs_failed_on_startup", count=swept)

        self.app = create_app(self.settings, self.orchestrator)

        logger.info("pars_ops_ready", host=self.settings.daemon_host, port=self.settings.daemon_port)

    async def shutdown(self):
        """Gracefully shutdown all components"""
        logger.info("pars_ops_shutting_down")

        if self.orchestrator is not None and self.orchestrator.gate.locked:
            logger.warning("shutdown_during_run", note="the run will be marked failed by the next startup")

        await close_database()

        logger.info("pars_ops_stopped")


async def main_async():
    """Async main function"""
    daemon = OpsDaemon()

    try:
        await daemon.startup()

        config = uvicorn.Config(
            daemon.app,
            host=daemon.settings.daemon_host,
            port=daemon.settings.daemon_port,
            log_level=daemon.settings.log_level.lower(),
            access_log=True,
        )
        server = uvicorn.Server(config)
        await server.serve()

    except Exception as e:
        logger.error("daemon_error", error=str(e), exc_info=True)
        sys.exit(1)
    finally:
        await daemon.shutdown()


def main():
    """Entry point for the daemon"""
    settings = get_settings()
    setup_logging(
        log_level=settings.log_level,
        json_logs=(settings.log_level != "DEBUG"),  # Use JSON in production
        log_file=settings.log_file,
    )

    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("interrupted_by_user")
        sys.exit(0)


if __name__ == "__main__":
    main()
