"""
Tests for VersionInspector.
"""
import json

import pytest

from pars.services.version_inspector import (
    DEFAULT_BRANCH,
    DEFAULT_VERSION,
    UNKNOWN_COMMIT,
    VersionInspector,
)

from conftest import OLD_HEAD


class TestManifestVersion:

    def test_reads_version_field(self, fake_runner, project_root):
        inspector = VersionInspector(fake_runner, project_root)

        assert inspector.read_manifest_version() == "1.0.0"

    def test_missing_manifest_defaults(self, fake_runner, tmp_path):
        inspector = VersionInspector(fake_runner, tmp_path)

        assert inspector.read_manifest_version() == DEFAULT_VERSION

    def test_unparseable_manifest_defaults(self, fake_runner, project_root):
        (project_root / "package.json").write_text("{ not json")
        inspector = VersionInspector(fake_runner, project_root)

        assert inspector.read_manifest_version() == DEFAULT_VERSION

    def test_manifest_without_version_defaults(self, fake_runner, project_root):
        (project_root / "package.json").write_text(json.dumps({"name": "pars-tabela"}))
        inspector = VersionInspector(fake_runner, project_root)

        assert inspector.read_manifest_version() == DEFAULT_VERSION


class TestCurrentVersion:

    @pytest.mark.asyncio
    async def test_reads_head_and_branch(self, fake_runner, project_root):
        inspector = VersionInspector(fake_runner, project_root)

        info = await inspector.get_current_version()

        assert info.version == "1.0.0"
        assert info.commit_hash == OLD_HEAD
        assert info.commit_date == "2026-10-01T12:00:00+00:00"
        assert info.branch == "main"
        assert info.to_dict() == {
            "version": "1.0.0",
            "commitHash": OLD_HEAD,
            "commitDate": "2026-10-01T12:00:00+00:00",
            "branch": "main",
        }

    @pytest.mark.asyncio
    async def test_git_failures_degrade_to_defaults(self, fake_runner, project_root):
        fake_runner.on("git", error="fatal: not a git repository")
        inspector = VersionInspector(fake_runner, project_root)

        info = await inspector.get_current_version()

        assert info.version == "1.0.0"
        assert info.commit_hash == UNKNOWN_COMMIT
        assert info.branch == DEFAULT_BRANCH
        assert info.commit_date

    @pytest.mark.asyncio
    async def test_detached_head_keeps_default_branch(self, fake_runner, project_root):
        fake_runner.on("git", "branch", "--show-current", stdout="\n")
        inspector = VersionInspector(fake_runner, project_root)

        info = await inspector.get_current_version()

        assert info.branch == DEFAULT_BRANCH


class TestEnvironment:

    def test_is_git_repo(self, fake_runner, project_root):
        inspector = VersionInspector(fake_runner, project_root)
        assert inspector.is_git_repo() is False

        (project_root / ".git").mkdir()
        assert inspector.is_git_repo() is True

    def test_uptime_is_non_negative(self):
        assert VersionInspector.uptime_seconds() >= 0
