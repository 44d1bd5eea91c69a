"""PlanExecutor — drives the provisioning tool through init / validate / plan / apply.

Command contract (Terraform-compatible):
    init -input=false [-backend=false]
    fmt -check -recursive
    validate
    plan -input=false -lock=false -out=<file> [-refresh=false]
    show -json <file>
    apply -input=false <file>

Exit code 0 is success; anything else raises ExecutionError carrying stderr.
"""

from __future__ import annotations

import asyncio
import datetime
import hashlib
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Callable

from gantry.clock import Clock, utc_now
from gantry.config.defaults import PIPELINE_DEFAULTS
from gantry.errors import (
    CredentialResolutionError,
    ExecutionError,
    StageValidationError,
    StaleLockError,
    StalePlanError,
)
from gantry.executor.tool import ToolRunner, is_transient, run_tool
from gantry.executor.versions import read_version_set
from gantry.locks.manager import StateLockManager
from gantry.models.credentials import ScopedCredential
from gantry.models.plan import ApplyResult, ChangeAction, PlanArtifact, ResourceChange
from gantry.models.stages import Environment

logger = logging.getLogger(__name__)

OnRetry = Callable[[], None]

_ACTIONS: dict[tuple[str, ...], ChangeAction] = {
    ("create",): ChangeAction.CREATE,
    ("update",): ChangeAction.UPDATE,
    ("delete",): ChangeAction.DELETE,
    ("delete", "create"): ChangeAction.REPLACE,
    ("create", "delete"): ChangeAction.REPLACE,
}

# Plan files live beside the configuration they were computed from.
_PLAN_DIR = ".gantry"


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def parse_resource_changes(show_json: str) -> list[ResourceChange]:
    """Extract create/update/delete/replace actions from ``show -json`` output.

    No-op and read actions are dropped.
    """
    data = json.loads(show_json)
    changes = []
    for rc in data.get("resource_changes", []):
        actions = tuple(rc.get("change", {}).get("actions", []))
        action = _ACTIONS.get(actions)
        if action is not None:
            changes.append(ResourceChange(address=rc.get("address", ""), action=action))
    return changes


class PlanExecutor:
    def __init__(
        self,
        lock_manager: StateLockManager,
        *,
        binary: str = "terraform",
        runner: ToolRunner = run_tool,
        clock: Clock = utc_now,
    ) -> None:
        self._locks = lock_manager
        self._binary = binary
        self._runner = runner
        self._clock = clock

    # ------------------------------------------------------------------
    # Stage operations
    # ------------------------------------------------------------------

    async def validate(
        self,
        workdir: Path,
        *,
        use_backend: bool,
        credential: ScopedCredential | None = None,
        settings: dict[str, Any] | None = None,
        on_retry: OnRetry | None = None,
    ) -> str:
        """Run init, the format check and validate. Returns validate's output."""
        cfg = self._cfg(settings)
        env = self._env(credential)
        await self._init(workdir, use_backend, env, cfg, on_retry)

        fmt = await self._runner(
            [self._binary, "fmt", "-check", "-recursive", "-no-color"],
            workdir, env, cfg["tool_timeouts"].get("fmt", 60),
        )
        if not fmt.ok:
            unformatted = ", ".join(fmt.stdout.split()) or "unknown files"
            raise StageValidationError(
                f"Formatting check failed: {unformatted}", output=fmt.stdout + fmt.stderr
            )

        result = await self._runner(
            [self._binary, "validate", "-no-color"],
            workdir, env, cfg["tool_timeouts"].get("validate", 120),
        )
        if not result.ok:
            raise StageValidationError(
                "Configuration is invalid", output=result.stdout + result.stderr
            )
        return result.stdout

    async def plan(
        self,
        change_ref: str,
        environment: Environment,
        use_backend: bool,
        *,
        workdir: Path,
        credential: ScopedCredential | None = None,
        settings: dict[str, Any] | None = None,
        on_retry: OnRetry | None = None,
    ) -> PlanArtifact:
        """Compute a plan. Never touches the lock manager.

        Without a backend (PR validation) any number of plans may run
        concurrently against the same state. With a backend, the source commit
        and provider/module versions are recorded for apply-time matching.
        """
        cfg = self._cfg(settings)
        env = self._env(credential)
        await self._init(workdir, use_backend, env, cfg, on_retry)

        plan_dir = workdir / _PLAN_DIR
        plan_dir.mkdir(parents=True, exist_ok=True)
        plan_file = plan_dir / f"{uuid.uuid4().hex[:12]}.tfplan"

        args = ["-input=false", "-no-color", "-lock=false", f"-out={plan_file}"]
        if not use_backend:
            args.append("-refresh=false")
        await self._run("plan", args, workdir, env, cfg, on_retry)

        shown = await self._run("show", ["-json", "-no-color", str(plan_file)], workdir, env, cfg, on_retry)
        try:
            changes = parse_resource_changes(shown.stdout)
        except json.JSONDecodeError as e:
            raise ExecutionError(
                [self._binary, "show"], 0, f"unparseable plan JSON: {e}", stdout=shown.stdout[-2000:]
            ) from e

        now = self._clock()
        artifact = PlanArtifact(
            content_hash=_hash_file(plan_file),
            plan_file=str(plan_file),
            change_ref=change_ref,
            environment=environment,
            use_backend=use_backend,
            changes=changes,
            source_commit=await self._source_commit(workdir) if use_backend else None,
            versions=read_version_set(workdir) if use_backend else {},
            created_at=now,
            valid_until=now + datetime.timedelta(seconds=cfg["plan_max_age_seconds"]),
        )
        logger.info(
            "Plan for %s (%s, backend=%s): %s hash=%s",
            change_ref, environment.value, use_backend, artifact.summary(), artifact.content_hash[:12],
        )
        return artifact

    async def apply(
        self,
        plan_artifact: PlanArtifact,
        holder_id: str,
        *,
        resource_key: str,
        workdir: Path,
        credential: ScopedCredential | None = None,
        settings: dict[str, Any] | None = None,
    ) -> ApplyResult:
        """Apply a saved plan. Requires a live lock on resource_key held by holder_id."""
        cfg = self._cfg(settings)
        lock = await self._locks.get(resource_key)
        if lock is None or lock.holder_id != holder_id:
            raise StaleLockError(
                f"Apply requires a live lock on '{resource_key}' held by {holder_id}; "
                f"current holder: {lock.holder_id if lock else 'none'}. Re-plan required."
            )

        await self.verify_artifact(plan_artifact, workdir)

        started = self._clock()
        # Never retried: a half-applied saved plan cannot be re-applied.
        result = await self._run(
            "apply", ["-input=false", "-no-color", plan_artifact.plan_file],
            workdir, self._env(credential), cfg, None, max_attempts=1,
        )
        logger.info("Applied plan %s on %s", plan_artifact.content_hash[:12], resource_key)
        return ApplyResult(
            plan_hash=plan_artifact.content_hash,
            exit_code=result.returncode,
            output=result.stdout,
            started_at=started,
            finished_at=self._clock(),
        )

    async def verify_artifact(self, artifact: PlanArtifact, workdir: Path) -> None:
        """Raise StalePlanError unless the artifact still describes what apply would do."""
        plan_file = Path(artifact.plan_file)
        if not plan_file.exists():
            raise StalePlanError(f"Plan file {plan_file.name} is missing")
        if _hash_file(plan_file) != artifact.content_hash:
            raise StalePlanError("Plan file hash does not match the approved artifact")
        if not artifact.is_valid(self._clock()):
            raise StalePlanError(
                f"Plan expired at {artifact.valid_until.isoformat()}"
            )
        if artifact.use_backend:
            commit = await self._source_commit(workdir)
            if commit != artifact.source_commit:
                raise StalePlanError(
                    f"Source moved from {artifact.source_commit} to {commit} since plan"
                )
            if read_version_set(workdir) != artifact.versions:
                raise StalePlanError("Provider/module versions changed since plan")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _cfg(self, settings: dict[str, Any] | None) -> dict[str, Any]:
        return {**PIPELINE_DEFAULTS, **(settings or {})}

    def _env(self, credential: ScopedCredential | None) -> dict[str, str]:
        # Gantry's own settings and credential pool never reach the tool.
        env = {k: v for k, v in os.environ.items() if not k.startswith("GANTRY_")}
        env["TF_IN_AUTOMATION"] = "1"
        env["TF_INPUT"] = "0"
        if credential is not None:
            if credential.expired(self._clock()):
                raise CredentialResolutionError(
                    f"Credential {credential.credential_id} expired at {credential.expires_at.isoformat()}"
                )
            env.update(credential.as_env())
        return env

    async def _init(
        self,
        workdir: Path,
        use_backend: bool,
        env: dict[str, str],
        cfg: dict[str, Any],
        on_retry: OnRetry | None,
    ) -> None:
        args = ["-input=false", "-no-color"]
        if not use_backend:
            args.append("-backend=false")
        await self._run("init", args, workdir, env, cfg, on_retry)

    async def _source_commit(self, workdir: Path) -> str | None:
        result = await self._runner(["git", "rev-parse", "HEAD"], workdir, None, 30)
        return result.stdout.strip() if result.ok else None

    async def _run(
        self,
        subcommand: str,
        args: list[str],
        workdir: Path,
        env: dict[str, str],
        cfg: dict[str, Any],
        on_retry: OnRetry | None,
        *,
        max_attempts: int | None = None,
    ):
        attempts = max_attempts or cfg["tool_max_attempts"]
        timeout = cfg["tool_timeouts"].get(subcommand, 600)
        argv = [self._binary, subcommand, *args]
        attempt = 1
        while True:
            result = await self._runner(argv, workdir, env, timeout)
            if result.ok:
                return result
            error = ExecutionError(
                argv, result.returncode, result.stderr,
                stdout=result.stdout, transient=is_transient(result.stderr),
            )
            if not error.retryable or attempt >= attempts:
                raise error
            delay = cfg["tool_retry_backoff_seconds"] * attempt
            logger.warning(
                "Transient %s failure (attempt %d/%d), retrying in %.1fs: %s",
                subcommand, attempt, attempts, delay, result.stderr.strip()[-200:],
            )
            if on_retry:
                on_retry()
            await asyncio.sleep(delay)
            attempt += 1
