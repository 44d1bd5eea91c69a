"""Shared test fixtures and fakes (no Redis, Postgres, git or provisioning tool required)."""

from __future__ import annotations

import asyncio
import datetime
import json
from pathlib import Path
from typing import Any, Mapping, Sequence

import pytest
from redis.exceptions import WatchError

from gantry.approval.gate import ApprovalGate
from gantry.auth.roles import RoleDirectory
from gantry.config.defaults import PIPELINE_DEFAULTS
from gantry.credentials.broker import CredentialBroker, EnvironmentCredentialIssuer
from gantry.executor.plan import PlanExecutor
from gantry.executor.tool import ToolResult
from gantry.locks.manager import StateLockManager
from gantry.models.events import PipelineEvent
from gantry.pipeline.orchestrator import Orchestrator
from gantry.pipeline.services import StageServices
from gantry.storage.memory import InMemoryAuditSink, InMemoryRunStore

START = datetime.datetime(2026, 3, 2, 9, 0, tzinfo=datetime.timezone.utc)


class FakeClock:
    """Injected clock; tests move time explicitly."""

    def __init__(self, start: datetime.datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += datetime.timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fake Redis: strings with WATCH/MULTI/EXEC optimistic transactions
# ---------------------------------------------------------------------------


class _FakePipeline:
    """Mimics redis-py's async pipeline.

    After ``watch()`` commands run immediately (and must be awaited); after
    ``multi()``, or on a non-transactional pipeline, they are buffered until
    ``execute()``.
    """

    def __init__(self, redis: FakeRedis, transaction: bool) -> None:
        self._redis = redis
        self._transaction = transaction
        self._watched: dict[str, int] = {}
        self._immediate = False
        self._buffer: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> _FakePipeline:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.reset()

    def reset(self) -> None:
        self._watched = {}
        self._immediate = False
        self._buffer = []

    async def watch(self, *keys: str) -> None:
        self._immediate = True
        for key in keys:
            self._watched[key] = self._redis.version(key)

    def multi(self) -> None:
        self._immediate = False

    def _command(self, name: str, *args: Any, **kwargs: Any) -> Any:
        if self._immediate:
            return self._run_now(name, *args, **kwargs)
        self._buffer.append((name, args, kwargs))
        return self

    async def _run_now(self, name: str, *args: Any, **kwargs: Any) -> Any:
        result = await getattr(self._redis, name)(*args, **kwargs)
        # Yield so concurrent transactions interleave between read and write.
        await asyncio.sleep(0)
        return result

    def get(self, key: str) -> Any:
        return self._command("get", key)

    def set(self, key: str, value: str, px: int | None = None) -> Any:
        return self._command("set", key, value, px=px)

    def delete(self, key: str) -> Any:
        return self._command("delete", key)

    async def execute(self) -> list[Any]:
        try:
            for key, version in self._watched.items():
                if self._redis.version(key) != version:
                    raise WatchError(f"Watched variable {key} changed")
            results = []
            for name, args, kwargs in self._buffer:
                results.append(await getattr(self._redis, name)(*args, **kwargs))
            return results
        finally:
            self.reset()


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self._versions: dict[str, int] = {}

    def version(self, key: str) -> int:
        return self._versions.get(key, 0)

    def _touch(self, key: str) -> None:
        self._versions[key] = self.version(key) + 1

    async def get(self, key: str) -> bytes | None:
        value = self.data.get(key)
        return value.encode() if value is not None else None

    async def set(self, key: str, value: str, px: int | None = None) -> bool:
        self.data[key] = value
        self.ttls[key] = px
        self._touch(key)
        return True

    async def delete(self, key: str) -> int:
        if key not in self.data:
            return 0
        del self.data[key]
        self.ttls.pop(key, None)
        self._touch(key)
        return 1

    def pipeline(self, transaction: bool = True) -> _FakePipeline:
        return _FakePipeline(self, transaction)


class RecordingEventBus:
    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    async def emit(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def types(self, run_id: str | None = None) -> list[str]:
        return [e.event_type.value for e in self.events if run_id is None or e.run_id == run_id]


# ---------------------------------------------------------------------------
# Fake provisioning tool and checkout
# ---------------------------------------------------------------------------

SHOW_JSON = json.dumps({
    "format_version": "1.2",
    "resource_changes": [
        {"address": "aws_s3_bucket.logs", "change": {"actions": ["create"]}},
        {"address": "aws_iam_role.ci", "change": {"actions": ["update"]}},
        {"address": "aws_instance.bastion", "change": {"actions": ["delete", "create"]}},
        {"address": "data.aws_caller_identity.me", "change": {"actions": ["read"]}},
        {"address": "aws_vpc.main", "change": {"actions": ["no-op"]}},
    ],
})


class FakeToolRunner:
    """Stands in for ``run_tool``: records argv and scripts per-subcommand failures."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.envs: list[Mapping[str, str] | None] = []
        self.commit = "9f2c1e7"
        self.plan_content = b"saved-plan-v1"
        self.show_json = SHOW_JSON
        self._failures: dict[str, list[tuple[int, str, str]]] = {}

    def fail(
        self, subcommand: str, *, returncode: int = 1, stderr: str = "Error", stdout: str = "", times: int = 1
    ) -> None:
        self._failures.setdefault(subcommand, []).extend([(returncode, stdout, stderr)] * times)

    def subcommands(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] != "git"]

    def argv(self, subcommand: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] != "git" and c[1] == subcommand]

    async def __call__(
        self,
        args: Sequence[str],
        cwd: Path,
        env: Mapping[str, str] | None = None,
        timeout: float = 600,
    ) -> ToolResult:
        argv = list(args)
        self.calls.append(argv)
        self.envs.append(env)

        if argv[0] == "git":
            return ToolResult(argv, 0, self.commit + "\n", "")

        subcommand = argv[1]
        scripted = self._failures.get(subcommand)
        if scripted:
            returncode, stdout, stderr = scripted.pop(0)
            return ToolResult(argv, returncode, stdout, stderr)

        if subcommand == "plan":
            out = next(a for a in argv if a.startswith("-out="))[len("-out="):]
            Path(out).write_bytes(self.plan_content)
        elif subcommand == "show":
            return ToolResult(argv, 0, self.show_json, "")
        elif subcommand == "apply":
            return ToolResult(argv, 0, "Apply complete! Resources: 1 added, 1 changed, 1 destroyed.", "")
        return ToolResult(argv, 0, "", "")


class FakeCheckout:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.prepared: list[str] = []
        self.removed: list[str] = []

    async def prepare(
        self, repo_url: str, run_id: str, change_ref: str, working_dir: str = "."
    ) -> Path:
        path = self.root / run_id / working_dir
        path.mkdir(parents=True, exist_ok=True)
        self.prepared.append(run_id)
        return path

    async def remove(self, run_id: str, repo_url: str) -> None:
        self.removed.append(run_id)


ROLE_ASSIGNMENTS = {
    "dana": ["deployer"],
    "priya": ["deployer", "release-manager"],
    "oscar": ["lock-admin"],
    "mallory": [],
}

CREDENTIAL_ENV = {
    f"GANTRY_CREDENTIAL_{env}_{perm}_TOKEN": f"{env.lower()}-{perm.lower()}-secret"
    for env in ("FEATURE", "STAGING", "PRODUCTION")
    for perm in ("READ", "WRITE")
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    """Retries and lock backoff happen without real sleeps."""
    monkeypatch.setitem(PIPELINE_DEFAULTS, "lock_backoff_seconds", 0.0)
    monkeypatch.setitem(PIPELINE_DEFAULTS, "lock_backoff_max_seconds", 0.0)
    monkeypatch.setitem(PIPELINE_DEFAULTS, "tool_retry_backoff_seconds", 0.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def roles() -> RoleDirectory:
    return RoleDirectory(ROLE_ASSIGNMENTS)


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def lock_manager(
    fake_redis: FakeRedis,
    clock: FakeClock,
    roles: RoleDirectory,
    audit_sink: InMemoryAuditSink,
    event_bus: RecordingEventBus,
) -> StateLockManager:
    return StateLockManager(
        fake_redis,  # type: ignore[arg-type]
        clock=clock,
        roles=roles,
        admin_role="lock-admin",
        audit_sink=audit_sink,
        event_bus=event_bus,
    )


@pytest.fixture
def tool_runner() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture
def executor(lock_manager: StateLockManager, tool_runner: FakeToolRunner, clock: FakeClock) -> PlanExecutor:
    return PlanExecutor(lock_manager, runner=tool_runner, clock=clock)


@pytest.fixture
def broker(clock: FakeClock) -> CredentialBroker:
    return CredentialBroker(EnvironmentCredentialIssuer(environ=CREDENTIAL_ENV), clock=clock)


@pytest.fixture
def checkout(tmp_path: Path) -> FakeCheckout:
    return FakeCheckout(tmp_path / "runs")


@pytest.fixture
def services(
    lock_manager: StateLockManager,
    executor: PlanExecutor,
    roles: RoleDirectory,
    broker: CredentialBroker,
    checkout: FakeCheckout,
    clock: FakeClock,
    audit_sink: InMemoryAuditSink,
    event_bus: RecordingEventBus,
) -> StageServices:
    return StageServices(
        runs=InMemoryRunStore(),
        locks=lock_manager,
        executor=executor,
        gate=ApprovalGate(roles, clock=clock),
        credentials=broker,
        checkout=checkout,
        clock=clock,
        audit_sink=audit_sink,
        event_bus=event_bus,
    )


@pytest.fixture
def orchestrator(services: StageServices) -> Orchestrator:
    return Orchestrator(services)
