"""Shared pytest fixtures for tbd tests."""

from __future__ import annotations

import random
import shutil
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from dotenv import load_dotenv

from tbd.issues.ids import InternalIdGenerator
from tbd.issues.models import Issue
from tbd.issues.service import IssueService
from tbd.issues.storage import IssueStore

load_dotenv()

ISSUE_ID = "is-01hx5zzkbkactav9wevgemmvrz"
OTHER_ID = "is-01hx5zzkbkactav9wevgemmvs0"
BASE_TIME = "2025-01-07T10:30:00.000Z"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "git: mark test as requiring the git binary"
    )


def pytest_collection_modifyitems(config, items):
    """Skip git tests when git is not installed."""
    if shutil.which("git") is not None:
        return
    skip_git = pytest.mark.skip(reason="git executable not found")
    for item in items:
        if "git" in item.keywords:
            item.add_marker(skip_git)


class FakeClock:
    """Deterministic UTC clock advancing one second per reading."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(
            2025, 1, 7, 10, 30, tzinfo=timezone.utc
        )

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


class CountingMillis:
    """Millisecond clock for ``InternalIdGenerator`` that always advances."""

    def __init__(self, start: int = 1_736_245_800_000) -> None:
        self.value = start

    def __call__(self) -> int:
        self.value += 1
        return self.value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_clock():
    """Factory for extra clocks, e.g. one per simulated machine."""
    return FakeClock


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def id_generator():
    return InternalIdGenerator(
        clock=CountingMillis(), random_bytes=lambda n: bytes(range(n))
    )


@pytest.fixture
def make_issue():
    """Factory fixture building a validated Issue with sane defaults."""

    def _make(**overrides) -> Issue:
        data = {
            "id": ISSUE_ID,
            "version": 1,
            "created_at": BASE_TIME,
            "updated_at": BASE_TIME,
            "title": "Fix the login page",
        }
        data.update(overrides)
        return Issue.from_data(data)

    return _make


@pytest.fixture
def store(tmp_path):
    return IssueStore(tmp_path)


@pytest.fixture
def service(store, id_generator, clock, rng):
    return IssueService(
        store, id_generator=id_generator, clock=clock, rng=rng
    )


# ---------------------------------------------------------------------------
# Real git repositories
# ---------------------------------------------------------------------------


def run_git(cwd: Path, *args: str) -> str:
    """Run git in *cwd* and return stripped stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git_env(tmp_path, monkeypatch):
    """Isolate git from the user's configuration and identity."""
    home = tmp_path / "home"
    home.mkdir()
    gitconfig = home / ".gitconfig"
    gitconfig.write_text(
        "[init]\n\tdefaultBranch = main\n"
        "[user]\n\tname = Test User\n\temail = test@example.com\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(gitconfig))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for name in ("AUTHOR", "COMMITTER"):
        monkeypatch.setenv(f"GIT_{name}_NAME", "Test User")
        monkeypatch.setenv(f"GIT_{name}_EMAIL", "test@example.com")
    for key in (
        "TBD_CONFIG",
        "TBD_SYNC_BRANCH",
        "TBD_SYNC_REMOTE",
        "TBD_ID_PREFIX",
        "TBD_MAX_PUSH_RETRIES",
        "TBD_TEXT_MERGE",
    ):
        monkeypatch.delenv(key, raising=False)
    return home


@pytest.fixture
def make_repo(tmp_path, git_env):
    """Factory fixture creating a git repository with one commit."""

    def _make(name: str, remote: Path | None = None) -> Path:
        repo = tmp_path / name
        repo.mkdir()
        run_git(repo, "init", "-q")
        run_git(repo, "commit", "-q", "--allow-empty", "-m", "initial")
        if remote is not None:
            run_git(repo, "remote", "add", "origin", str(remote))
        return repo

    return _make


@pytest.fixture
def bare_remote(tmp_path, git_env):
    remote = tmp_path / "remote.git"
    run_git(tmp_path, "init", "-q", "--bare", str(remote))
    return remote


@pytest.fixture
def git_cmd():
    """The ``run_git`` helper, for tests that inspect repositories."""
    return run_git
