"""
Shared test fixtures for Pars ops daemon tests.

Provides fixtures for:
- Settings pointing at a throwaway storefront checkout
- Database engine and session factory (SQLite, one file per test)
- A scripted command runner standing in for git / npm / tar / pm2
- Orchestrator, admin users and an authenticated API client
"""
import inspect
import json
import sys
import uuid
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Ensure src/ is on sys.path for direct pytest runs
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from pars.api import create_app
from pars.api.auth import pwd_context
from pars.config import Settings, get_settings
from pars.database import Base, create_engine_for_url
from pars.models import AdminUser
from pars.services.command_runner import CommandResult, ExecutionError
from pars.services.update_orchestrator import UpdateOrchestrator


OLD_HEAD = "3f9c2a1b7d4e5f60718293a4b5c6d7e8f9a0b1c2"
NEW_HEAD = "9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a291807"
ADMIN_PASSWORD = "correct horse battery staple"
TEST_SECRET = "test-secret-key"

_ADMIN_PASSWORD_HASH = pwd_context.hash(ADMIN_PASSWORD)


# ============================================================================
# Command Runner Fake
# ============================================================================

class FakeCommandRunner:
    """
    Scripted stand-in for CommandRunner.

    Rules are matched by command prefix, most recently added first. A rule
    either returns stdout, raises ExecutionError, or calls a handler that may
    return stdout (and may be async).
    """

    def __init__(self, project_root: Path):
        self.project_root = Path(project_root)
        self.calls: List[Tuple[str, ...]] = []
        self.envs: List[Optional[Dict[str, str]]] = []
        self.available = {"git", "npm", "npx", "pm2", "tar"}
        self._rules: List[Tuple[Tuple[str, ...], str, Optional[str], Optional[Callable]]] = []

    def on(self, *prefix: str, stdout: str = "", error: Optional[str] = None, handler: Optional[Callable] = None):
        self._rules.insert(0, (prefix, stdout, error, handler))

    async def run(self, program: str, args: Sequence[str] = (), cwd=None, env=None) -> CommandResult:
        command = (program, *args)
        self.calls.append(command)
        self.envs.append(env)

        for prefix, stdout, error, handler in self._rules:
            if command[: len(prefix)] != prefix:
                continue
            if handler is not None:
                result = handler(command)
                if inspect.isawaitable(result):
                    result = await result
                stdout = result or stdout
            if error is not None:
                raise ExecutionError(error, command=command, returncode=1, stderr=error)
            return CommandResult(stdout=stdout, stderr="")

        return CommandResult(stdout="", stderr="")

    async def is_available(self, program: str) -> bool:
        return program in self.available

    def called(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == prefix for call in self.calls)

    def index_of(self, *prefix: str) -> int:
        for i, call in enumerate(self.calls):
            if call[: len(prefix)] == prefix:
                return i
        raise AssertionError(f"{' '.join(prefix)} was never run")


def _write_archive(command: Tuple[str, ...]) -> None:
    # tar czf <path> ...
    Path(command[2]).write_bytes(b"\x1f\x8b fake archive")


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def project_root(tmp_path) -> Path:
    """A storefront checkout with a manifest and a lockfile."""
    root = tmp_path / "site"
    root.mkdir()
    (root / "package.json").write_text(json.dumps({"name": "pars-tabela", "version": "1.0.0"}))
    (root / "package-lock.json").write_text("{}")
    return root


@pytest.fixture
def test_settings(tmp_path, project_root) -> Settings:
    """Settings for an isolated daemon instance."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ops.db'}",
        project_root=project_root,
        github_repo_url="https://github.com/pars/tabela.git",
        secret_key=TEST_SECRET,
        stale_lock_minutes=10,
        log_level="DEBUG",
    )


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(test_settings):
    """Create the schema in a per-test SQLite file."""
    engine = create_engine_for_url(test_settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine) -> async_sessionmaker:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


# ============================================================================
# Service Fixtures
# ============================================================================

@pytest.fixture
def fake_runner(project_root) -> FakeCommandRunner:
    """Runner answering the commands a healthy deployment would."""
    runner = FakeCommandRunner(project_root)
    runner.on("git", "log", "-1", stdout=f"{OLD_HEAD}|2026-10-01T12:00:00+00:00\n")
    runner.on("git", "branch", "--show-current", stdout="main\n")
    runner.on("git", "rev-parse", "HEAD", stdout=f"{NEW_HEAD}\n")
    runner.on("tar", "czf", handler=_write_archive)
    runner.on("npm", "ci", stdout="added 812 packages in 14s\n")
    runner.on("npm", "run", "build", stdout="Compiled successfully\n")
    runner.on("pm2", "restart", "all", stdout="[PM2] Applying action restartProcessId on app [all]\n")
    return runner


@pytest_asyncio.fixture
async def orchestrator(test_settings, session_maker, fake_runner) -> AsyncGenerator[UpdateOrchestrator, None]:
    orchestrator = UpdateOrchestrator(test_settings, session_maker, runner=fake_runner)

    yield orchestrator

    await orchestrator.wait_for_runs()


# ============================================================================
# Admin Fixtures
# ============================================================================

async def _add_user(session_maker, **fields) -> AdminUser:
    async with session_maker() as session:
        user = AdminUser(id=str(uuid.uuid4()), **fields)
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


def make_token(user_id: str, secret: str = TEST_SECRET) -> str:
    return jwt.encode({"sub": user_id}, secret, algorithm="HS256")


@pytest_asyncio.fixture
async def admin_user(session_maker) -> AdminUser:
    return await _add_user(
        session_maker,
        email="admin@pars.test",
        name="Admin",
        password_hash=_ADMIN_PASSWORD_HASH,
        is_admin=True,
    )


@pytest_asyncio.fixture
async def staff_user(session_maker) -> AdminUser:
    return await _add_user(
        session_maker,
        email="staff@pars.test",
        name="Staff",
        password_hash=_ADMIN_PASSWORD_HASH,
        is_admin=False,
    )


@pytest_asyncio.fixture
async def passwordless_admin(session_maker) -> AdminUser:
    return await _add_user(session_maker, email="sso@pars.test", name="SSO Admin", is_admin=True)


@pytest.fixture
def auth_headers(admin_user) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(admin_user.id)}"}


@pytest.fixture
def token_for():
    """Build bearer headers for any user."""

    def _headers(user: AdminUser) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user.id)}"}

    return _headers


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def test_app(test_settings, orchestrator):
    """Create FastAPI app wired to the test orchestrator and settings."""
    app = create_app(test_settings, orchestrator)
    app.dependency_overrides[get_settings] = lambda: test_settings
    return app


@pytest_asyncio.fixture
async def async_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for the API."""
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        yield client


# ============================================================================
# Sample Data
# ============================================================================

@pytest.fixture
def backup_files(tmp_path):
    """An archive and a dump on disk, as a finished backup would leave them."""
    backup_dir = tmp_path / "snapshots" / "2026-10-01T12-00-00-000Z_v1.0.0_3f9c2a1b"
    backup_dir.mkdir(parents=True)
    archive = backup_dir / "files.tar.gz"
    dump = backup_dir / "db.sql"
    archive.write_bytes(b"\x1f\x8b fake archive")
    dump.write_text("-- PostgreSQL database dump\n")
    return archive, dump
