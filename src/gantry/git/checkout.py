"""SourceCheckout — bare clones plus one detached worktree per run."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from gantry.errors import ExecutionError, StageValidationError
from gantry.executor.tool import is_transient
from gantry.models.trigger import repo_name_from_url

logger = logging.getLogger(__name__)


async def _run_git(
    *args: str,
    cwd: str | Path | None = None,
    check: bool = True,
) -> str:
    """Run a git command and return stdout."""
    cmd = ["git"] + list(args)
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
    )
    stdout, stderr = await proc.communicate()
    if check and proc.returncode != 0:
        err = stderr.decode(errors="replace")
        raise ExecutionError(cmd, proc.returncode or -1, err, transient=is_transient(err))
    return stdout.decode().strip()


class SourceCheckout:
    """Materialises the source of a change for the provisioning tool.

    Directory layout:
        {workspace}/repos/{repo_name}/          ← bare clone
        {workspace}/runs/{run_id}/{repo_name}/  ← detached worktree at the change ref
    """

    def __init__(self, workspace: str | Path) -> None:
        self.workspace = Path(workspace)
        self.repos_dir = self.workspace / "repos"
        self.runs_dir = self.workspace / "runs"

    def _bare_path(self, repo_name: str) -> Path:
        return self.repos_dir / repo_name

    def _worktree_path(self, run_id: str, repo_name: str) -> Path:
        return self.runs_dir / run_id / repo_name

    async def clone_bare(self, repo_url: str, repo_name: str) -> Path:
        """Clone a repository as a bare clone, or refresh branches if it exists."""
        bare_path = self._bare_path(repo_name)
        if bare_path.exists():
            await _run_git(
                "fetch", "origin", "+refs/heads/*:refs/heads/*", "--prune", cwd=bare_path
            )
            return bare_path
        bare_path.parent.mkdir(parents=True, exist_ok=True)
        await _run_git("clone", "--bare", repo_url, str(bare_path))
        return bare_path

    async def prepare(
        self, repo_url: str, run_id: str, change_ref: str, working_dir: str = "."
    ) -> Path:
        """Check out change_ref for a run and return the tool working directory.

        Idempotent: a worker resuming the run after approval reuses the worktree.
        """
        repo_name = repo_name_from_url(repo_url)
        worktree_path = self._worktree_path(run_id, repo_name)

        if not worktree_path.exists():
            bare_path = await self.clone_bare(repo_url, repo_name)
            target = change_ref
            try:
                await _run_git("rev-parse", "--verify", f"{change_ref}^{{commit}}", cwd=bare_path)
            except ExecutionError:
                # Pull-request refs and unadvertised commits need an explicit fetch.
                await _run_git("fetch", "origin", change_ref, cwd=bare_path)
                target = "FETCH_HEAD"

            worktree_path.parent.mkdir(parents=True, exist_ok=True)
            await _run_git(
                "worktree", "add", "--detach", str(worktree_path), target, cwd=bare_path
            )
            logger.info("Checked out %s@%s for run %s", repo_name, change_ref, run_id)

        tool_dir = (worktree_path / working_dir).resolve()
        if not tool_dir.is_dir() or not tool_dir.is_relative_to(worktree_path.resolve()):
            raise StageValidationError(
                f"Working directory '{working_dir}' does not exist in {repo_name}@{change_ref}"
            )
        return tool_dir

    async def remove(self, run_id: str, repo_url: str) -> None:
        """Drop a run's worktree once the run is terminal."""
        repo_name = repo_name_from_url(repo_url)
        worktree_path = self._worktree_path(run_id, repo_name)
        if not worktree_path.exists():
            return
        await _run_git(
            "worktree", "remove", "--force", str(worktree_path),
            cwd=self._bare_path(repo_name), check=False,
        )
