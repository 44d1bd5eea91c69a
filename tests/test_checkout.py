"""Tests for SourceCheckout against a local git repository."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from gantry.errors import ExecutionError, StageValidationError
from gantry.git.checkout import SourceCheckout

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(*args: str, cwd: Path) -> str:
    return subprocess.run(
        ["git", "-c", "user.name=ci", "-c", "user.email=ci@example.com", *args],
        cwd=cwd, check=True, capture_output=True, text=True,
    ).stdout.strip()


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    repo = tmp_path / "network"
    (repo / "envs" / "staging").mkdir(parents=True)
    (repo / "envs" / "staging" / "main.tf").write_text('resource "null_resource" "a" {}\n')
    (repo / "README.md").write_text("network\n")
    _git("init", "-q", "-b", "main", cwd=repo)
    _git("add", ".", cwd=repo)
    _git("commit", "-q", "-m", "initial", cwd=repo)
    return repo


@pytest.fixture
def checkout(tmp_path: Path) -> SourceCheckout:
    return SourceCheckout(tmp_path / "workspace")


class TestPrepare:
    @pytest.mark.asyncio
    async def test_checks_out_working_dir(self, checkout: SourceCheckout, origin: Path) -> None:
        workdir = await checkout.prepare(f"file://{origin}", "RUN-1", "main", "envs/staging")
        assert (workdir / "main.tf").exists()
        assert workdir == (checkout.runs_dir / "RUN-1" / "network" / "envs" / "staging").resolve()

    @pytest.mark.asyncio
    async def test_idempotent_on_resume(self, checkout: SourceCheckout, origin: Path) -> None:
        first = await checkout.prepare(f"file://{origin}", "RUN-1", "main")
        second = await checkout.prepare(f"file://{origin}", "RUN-1", "main")
        assert first == second

    @pytest.mark.asyncio
    async def test_checks_out_commit_sha(self, checkout: SourceCheckout, origin: Path) -> None:
        sha = _git("rev-parse", "HEAD", cwd=origin)
        (origin / "README.md").write_text("moved on\n")
        _git("commit", "-q", "-am", "second", cwd=origin)

        workdir = await checkout.prepare(f"file://{origin}", "RUN-2", sha)
        assert (workdir / "README.md").read_text() == "network\n"

    @pytest.mark.asyncio
    async def test_missing_working_dir(self, checkout: SourceCheckout, origin: Path) -> None:
        with pytest.raises(StageValidationError):
            await checkout.prepare(f"file://{origin}", "RUN-3", "main", "envs/production")

    @pytest.mark.asyncio
    async def test_unknown_ref(self, checkout: SourceCheckout, origin: Path) -> None:
        with pytest.raises(ExecutionError):
            await checkout.prepare(f"file://{origin}", "RUN-4", "no-such-branch")


class TestRemove:
    @pytest.mark.asyncio
    async def test_removes_worktree(self, checkout: SourceCheckout, origin: Path) -> None:
        await checkout.prepare(f"file://{origin}", "RUN-1", "main")
        await checkout.remove("RUN-1", f"file://{origin}")
        assert not (checkout.runs_dir / "RUN-1" / "network").exists()

    @pytest.mark.asyncio
    async def test_remove_unknown_run_is_noop(self, checkout: SourceCheckout) -> None:
        await checkout.remove("RUN-never", "file:///srv/repos/network")
