"""Tests for the controller HTTP routes, wired to an in-memory orchestrator."""

from __future__ import annotations

import datetime
from typing import AsyncIterator

import httpx
import pytest
import pytest_asyncio

from gantry.controller.app import create_app
from gantry.models.stages import RunStatus
from gantry.pipeline.orchestrator import Orchestrator
from gantry.pipeline.services import StageServices

TRIGGER = {
    "kind": "merge",
    "action": "merged",
    "change_ref": "main",
    "repo_url": "https://git.example.com/infra/network.git",
    "environment": "staging",
    "actor": "ci-bot",
}


class _RecordingSpawner:
    def __init__(self) -> None:
        self.spawned: list[str] = []

    async def spawn(self, run_id: str) -> None:
        self.spawned.append(run_id)


@pytest.fixture
def spawner() -> _RecordingSpawner:
    return _RecordingSpawner()


@pytest_asyncio.fixture
async def client(
    orchestrator: Orchestrator, spawner: _RecordingSpawner
) -> AsyncIterator[httpx.AsyncClient]:
    # ASGITransport does not run the lifespan, so no Postgres or Redis is needed.
    app = create_app()
    app.state.orchestrator = orchestrator
    app.state.job_spawner = spawner
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


async def _parked_run(client: httpx.AsyncClient, orchestrator: Orchestrator) -> str:
    resp = await client.post("/api/pipeline/trigger", json=TRIGGER)
    run_id = resp.json()["run_id"]
    assert await orchestrator.advance_by_id(run_id) is RunStatus.AWAITING_APPROVAL
    return run_id


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthz(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestIntake:
    @pytest.mark.asyncio
    async def test_trigger_creates_run_and_spawns_worker(
        self, client: httpx.AsyncClient, spawner: _RecordingSpawner
    ) -> None:
        resp = await client.post("/api/pipeline/trigger", json=TRIGGER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "pending"
        assert body["state_key"] == "network/root/staging"
        assert spawner.spawned == [body["run_id"]]

    @pytest.mark.asyncio
    async def test_duplicate_external_id_conflicts(
        self, client: httpx.AsyncClient, spawner: _RecordingSpawner
    ) -> None:
        payload = {**TRIGGER, "external_id": "gh-77"}
        assert (await client.post("/api/pipeline/trigger", json=payload)).status_code == 200
        resp = await client.post("/api/pipeline/trigger", json=payload)
        assert resp.status_code == 409
        assert len(spawner.spawned) == 1

    @pytest.mark.asyncio
    async def test_invalid_event_rejected(self, client: httpx.AsyncClient) -> None:
        resp = await client.post(
            "/api/pipeline/trigger", json={**TRIGGER, "change_ref": "--upload-pack=x"}
        )
        assert resp.status_code == 422


class TestPipelineRoutes:
    @pytest.mark.asyncio
    async def test_unknown_run_404(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/pipeline/RUN-nope")).status_code == 404

    @pytest.mark.asyncio
    async def test_detail_and_list(self, client: httpx.AsyncClient, orchestrator: Orchestrator) -> None:
        run_id = await _parked_run(client, orchestrator)

        detail = (await client.get(f"/api/pipeline/{run_id}")).json()
        assert detail["status"] == "awaiting_approval"
        assert [s["kind"] for s in detail["stages"]] == ["validate", "plan", "approval"]
        assert detail["approvals"][0]["decision"] == "pending"
        assert detail["plans"][0]["changes"]

        listed = (await client.get("/api/pipeline/list", params={"status": "awaiting_approval"})).json()
        assert [r["run_id"] for r in listed] == [run_id]
        assert (await client.get("/api/pipeline/list", params={"status": "failed"})).json() == []

    @pytest.mark.asyncio
    async def test_approval_flow(
        self,
        client: httpx.AsyncClient,
        orchestrator: Orchestrator,
        spawner: _RecordingSpawner,
    ) -> None:
        run_id = await _parked_run(client, orchestrator)

        resp = await client.post(
            f"/api/pipeline/{run_id}/approval",
            json={"approver": "mallory", "decision": "approved"},
        )
        assert resp.status_code == 403

        resp = await client.post(
            f"/api/pipeline/{run_id}/approval",
            json={"approver": "dana", "decision": "approved", "comment": "ok"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "running"
        assert spawner.spawned == [run_id, run_id]

        resp = await client.post(
            f"/api/pipeline/{run_id}/approval",
            json={"approver": "priya", "decision": "rejected"},
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_approval_requires_final_decision(
        self, client: httpx.AsyncClient, orchestrator: Orchestrator
    ) -> None:
        run_id = await _parked_run(client, orchestrator)
        resp = await client.post(
            f"/api/pipeline/{run_id}/approval",
            json={"approver": "dana", "decision": "pending"},
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_expired_approval_410(
        self, client: httpx.AsyncClient, orchestrator: Orchestrator, clock
    ) -> None:
        run_id = await _parked_run(client, orchestrator)
        clock.advance(hours=1)
        resp = await client.post(
            f"/api/pipeline/{run_id}/approval",
            json={"approver": "dana", "decision": "approved"},
        )
        assert resp.status_code == 410
        assert (await orchestrator.get(run_id)).status is RunStatus.ABORTED

    @pytest.mark.asyncio
    async def test_abort(self, client: httpx.AsyncClient, orchestrator: Orchestrator) -> None:
        run_id = await _parked_run(client, orchestrator)

        resp = await client.post(f"/api/pipeline/{run_id}/abort", json={"actor": "oscar"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "aborted"

        resp = await client.post(f"/api/pipeline/{run_id}/abort", json={"actor": "oscar"})
        assert resp.status_code == 409


class TestLockRoutes:
    @pytest.mark.asyncio
    async def test_inspect_and_force_unlock(
        self, client: httpx.AsyncClient, services: StageServices
    ) -> None:
        key = "network/root/staging"
        await services.locks.acquire(key, "RUN-crashed:apply", datetime.timedelta(minutes=10))

        body = (await client.get(f"/api/locks/{key}")).json()
        assert body["locked"] is True
        assert body["lock"]["holder_id"] == "RUN-crashed:apply"

        resp = await client.post(f"/api/locks/{key}/force-unlock", json={"operator": "mallory"})
        assert resp.status_code == 403

        resp = await client.post(f"/api/locks/{key}/force-unlock", json={"operator": "oscar"})
        assert resp.status_code == 200
        assert resp.json()["cleared"] is True
        assert resp.json()["previous_holder"] == "RUN-crashed:apply"
        assert "warning" in resp.json()

        body = (await client.get(f"/api/locks/{key}")).json()
        assert body == {"resource_key": key, "locked": False, "stale": False, "lock": None}

    @pytest.mark.asyncio
    async def test_force_unlock_free_resource(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/api/locks/dns/root/production/force-unlock", json={"operator": "oscar"})
        assert resp.status_code == 200
        assert resp.json()["cleared"] is False
