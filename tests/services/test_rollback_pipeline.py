"""
Tests for the rollback run.
"""
import pytest

from pars.models import UpdateLogStatus
from pars.services.pipeline import WARNING_PREFIX
from pars.services.progress import EVENT_COMPLETE, EVENT_INIT, EVENT_STEP
from pars.services.rollback_pipeline import ROLLBACK_STEPS
from pars.services.update_orchestrator import BackupNotFoundError, LockHeldError, UpdateOrchestrator

from conftest import OLD_HEAD

BACKUP_HEAD = "0a1b2c3d4e5f60718293a4b5c6d7e8f9a0b1c2d3"


async def _record_backup(orchestrator, archive, dump):
    return await orchestrator.backups.create(
        path=str(archive),
        db_path=str(dump),
        version="0.9.0",
        commit_hash=BACKUP_HEAD,
        size_bytes=2048,
        note="Automatic backup before update (2026-10-01)",
    )


async def _run_rollback(orchestrator, backup_id):
    channel = await orchestrator.start_rollback(backup_id, triggered_by="admin@pars.test")
    events = [event async for event in channel]
    await orchestrator.wait_for_runs()
    return events


class TestSuccessfulRollback:

    @pytest.mark.asyncio
    async def test_restores_files_then_database(self, orchestrator, fake_runner, backup_files, test_settings):
        archive, dump = backup_files
        backup = await _record_backup(orchestrator, archive, dump)

        events = await _run_rollback(orchestrator, backup.id)

        assert events[0].kind == EVENT_INIT
        assert [s["name"] for s in events[0].data["steps"]] == list(ROLLBACK_STEPS)

        complete = events[-1]
        assert complete.kind == EVENT_COMPLETE
        assert complete.data["status"] == "SUCCESS"
        assert complete.data["version"] == "0.9.0"

        tar_at = fake_runner.index_of("tar", "xzf", str(archive))
        psql_at = fake_runner.index_of("psql", test_settings.database_url, "-f", str(dump))
        build_at = fake_runner.index_of("npm", "run", "build")
        assert tar_at < psql_at < build_at
        assert fake_runner.calls[tar_at][-2:] == ("-C", str(test_settings.project_root))
        assert not fake_runner.called("git", "clean")
        assert not fake_runner.called("git", "fetch")

        log = await orchestrator.logs.get(events[0].data["logId"])
        assert log.status == UpdateLogStatus.SUCCESS.value
        assert log.version == "0.9.0"
        assert log.commit_hash == BACKUP_HEAD
        assert log.prev_hash == OLD_HEAD
        assert log.error == f"Rollback from {backup.id}"
        assert [s["status"] for s in log.steps] == ["success"] * len(ROLLBACK_STEPS)

    @pytest.mark.asyncio
    async def test_clean_worktree_runs_git_clean_first(self, test_settings, session_maker, fake_runner, backup_files):
        settings = test_settings.model_copy(update={"rollback_clean_worktree": True})
        orchestrator = UpdateOrchestrator(settings, session_maker, runner=fake_runner)
        archive, dump = backup_files
        backup = await _record_backup(orchestrator, archive, dump)

        events = await _run_rollback(orchestrator, backup.id)

        assert events[-1].data["status"] == "SUCCESS"
        clean_at = fake_runner.index_of("git", "clean", "-fdx")
        assert clean_at < fake_runner.index_of("tar", "xzf")
        clean = fake_runner.calls[clean_at]
        for kept in ("node_modules", ".next", ".backups"):
            assert kept in clean


class TestMissingFiles:

    @pytest.mark.asyncio
    async def test_missing_dump_fails_verification(self, orchestrator, fake_runner, backup_files):
        archive, dump = backup_files
        dump.unlink()
        backup = await _record_backup(orchestrator, archive, dump)

        events = await _run_rollback(orchestrator, backup.id)

        complete = events[-1]
        assert complete.data["status"] == "FAILED"
        assert complete.data["error"] == "Backup verification failed"

        verify = next(
            e.data["step"] for e in events
            if e.kind == EVENT_STEP and e.data["index"] == 0 and e.data["step"]["status"] == "failed"
        )
        assert str(dump) in verify["message"]

        assert not fake_runner.called("tar", "xzf")
        assert not fake_runner.called("psql")

        log = await orchestrator.logs.get(events[0].data["logId"])
        assert log.status == UpdateLogStatus.FAILED.value
        assert log.error == f"Rollback from {backup.id}: Backup verification failed"
        assert [s["status"] for s in log.steps] == ["failed"] + ["skipped"] * (len(ROLLBACK_STEPS) - 1)
        assert orchestrator.gate.locked is False

    @pytest.mark.asyncio
    async def test_missing_archive_fails_verification(self, orchestrator, fake_runner, backup_files):
        archive, dump = backup_files
        archive.unlink()
        backup = await _record_backup(orchestrator, archive, dump)

        events = await _run_rollback(orchestrator, backup.id)

        assert events[-1].data["status"] == "FAILED"
        log = await orchestrator.logs.get(events[0].data["logId"])
        assert "Backup archive not found" in log.steps[0]["message"]
        assert not fake_runner.called("tar")

    @pytest.mark.asyncio
    async def test_allow_missing_dump_restores_files_only(self, test_settings, session_maker, fake_runner, backup_files):
        settings = test_settings.model_copy(update={"rollback_allow_missing_dump": True})
        orchestrator = UpdateOrchestrator(settings, session_maker, runner=fake_runner)
        archive, dump = backup_files
        dump.unlink()
        backup = await _record_backup(orchestrator, archive, dump)

        events = await _run_rollback(orchestrator, backup.id)

        assert events[-1].data["status"] == "SUCCESS"
        assert fake_runner.called("tar", "xzf")
        assert not fake_runner.called("psql")

        log = await orchestrator.logs.get(events[0].data["logId"])
        assert log.steps[0]["message"].startswith(WARNING_PREFIX)
        assert log.steps[2]["status"] == "success"
        assert log.steps[2]["message"].startswith(WARNING_PREFIX)


class TestFailedRestore:

    @pytest.mark.asyncio
    async def test_database_restore_failure_is_fatal(self, orchestrator, fake_runner, backup_files):
        archive, dump = backup_files
        backup = await _record_backup(orchestrator, archive, dump)
        fake_runner.on("psql", error="psql: error: connection to server failed")

        events = await _run_rollback(orchestrator, backup.id)

        assert events[-1].data["error"] == "Database restore failed"
        log = await orchestrator.logs.get(events[0].data["logId"])
        assert log.error == f"Rollback from {backup.id}: Database restore failed"
        assert not fake_runner.called("npm")

    @pytest.mark.asyncio
    async def test_schema_sync_failure_message(self, orchestrator, fake_runner, backup_files):
        archive, dump = backup_files
        backup = await _record_backup(orchestrator, archive, dump)
        fake_runner.on("npx", "prisma", "generate", error="prisma generate failed")

        events = await _run_rollback(orchestrator, backup.id)

        assert events[-1].data["error"] == "Schema sync failed"


class TestRollbackAdmission:

    @pytest.mark.asyncio
    async def test_unknown_backup(self, orchestrator):
        with pytest.raises(BackupNotFoundError, match="Backup not found"):
            await orchestrator.start_rollback("6f1c0d52-7a0e-4c1e-9d4f-1d1b5d0c9e11", triggered_by="admin@pars.test")

        assert orchestrator.gate.locked is False

    @pytest.mark.asyncio
    async def test_unknown_backup_reported_before_lock(self, orchestrator):
        orchestrator.gate.try_acquire()

        with pytest.raises(BackupNotFoundError):
            await orchestrator.start_rollback("6f1c0d52-7a0e-4c1e-9d4f-1d1b5d0c9e11", triggered_by="admin@pars.test")

    @pytest.mark.asyncio
    async def test_lock_held(self, orchestrator, backup_files):
        archive, dump = backup_files
        backup = await _record_backup(orchestrator, archive, dump)
        orchestrator.gate.try_acquire()

        with pytest.raises(LockHeldError):
            await orchestrator.start_rollback(backup.id, triggered_by="admin@pars.test")
