# tests/test_image_updates.py — Digest polling, stale-row cleanup and live reconciliation
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from image_updates import ImageUpdateService, live_digests, parse_disabled_registries
from models import ContainerImageUpdate
from tests.conftest import get_auth_headers


def test_live_digests():
    body = {"stacks": [{"name": "svc", "services": [
        {"containers": [
            {"name": "svc-1", "repo_digests": ["img@sha256:bbb"]},
            {"name": "svc-2", "repo_digests": []},
        ]},
    ]}]}
    assert live_digests(body) == {("svc", "svc-1"): "sha256:bbb"}
    assert live_digests([]) == {}


def test_disabled_registries_normalized():
    assert parse_disabled_registries(["https://GHCR.io/", "ghcr.io", "docker.io"]) == ["ghcr.io", "docker.io"]


async def _stored(session_factory, server_id):
    async with session_factory() as session:
        rows = (await session.execute(
            select(ContainerImageUpdate).where(ContainerImageUpdate.server_id == server_id)
            .order_by(ContainerImageUpdate.container_name)
        )).scalars().all()
        return list(rows)


@pytest.mark.asyncio
class TestImageCheck:
    async def test_upsert_skip_and_cleanup(self, db_session, session_factory, container, agent, test_server):
        db_session.add(ContainerImageUpdate(
            server_id=test_server.id, stack_name="old", container_name="old-1",
            current_repo_digest="sha256:000", latest_repo_digest="sha256:111", update_available=True,
        ))
        await db_session.commit()
        agent.route("POST", "/images/check-updates", {"results": [
            {"stack_name": "svc", "container_name": "svc-1", "image_name": "img:1",
             "current_repo_digest": "sha256:aaa", "latest_repo_digest": "sha256:bbb"},
            {"stack_name": "svc", "container_name": "svc-2", "image_name": "img:1",
             "current_repo_digest": "sha256:bbb", "latest_repo_digest": "sha256:bbb"},
            {"stack_name": "svc", "container_name": "svc-3", "image_name": "private/img",
             "error": "unauthorized"},
            {"stack_name": "svc", "container_name": "svc-4", "image_name": "img:1",
             "current_repo_digest": "sha256:aaa"},
        ]})

        service = ImageUpdateService(db_session, container.agents, container.crypto, ["quay.io"])
        outcome = await service.check_server(test_server)
        assert outcome == {"processed": 3, "skipped": 1, "removed": 1}

        _, path, payload = agent.calls[-1]
        assert path == "/images/check-updates"
        assert payload == {"registry_credentials": [], "disabled_registries": ["quay.io"]}

        rows = {r.container_name: r for r in await _stored(session_factory, test_server.id)}
        assert set(rows) == {"svc-1", "svc-2", "svc-3"}
        assert rows["svc-1"].update_available is True
        assert rows["svc-2"].update_available is False
        assert rows["svc-3"].update_available is False
        assert rows["svc-3"].check_error == "unauthorized"

        # a second pass updates in place
        agent.route("POST", "/images/check-updates", {"results": [
            {"stack_name": "svc", "container_name": "svc-1", "image_name": "img:1",
             "current_repo_digest": "sha256:bbb", "latest_repo_digest": "sha256:bbb"},
        ]})
        outcome = await service.check_server(test_server)
        assert outcome == {"processed": 1, "skipped": 0, "removed": 2}
        rows = await _stored(session_factory, test_server.id)
        assert [(r.container_name, r.update_available) for r in rows] == [("svc-1", False)]

    async def test_poller_survives_agent_failure(self, container, agent, test_server):
        agent.route("POST", "/images/check-updates", {"error": "boom"}, status=500)
        outcome = await container.image_poller.run_once()
        assert outcome == {test_server.id: None}
        assert container.image_poller.last_run_at is not None

    async def test_admin_trigger(self, client: AsyncClient, agent, admin_user, test_user, test_server):
        agent.route("POST", "/images/check-updates", {"results": []})
        res = await client.post("/api/v1/admin/image-updates/check", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["data"]["servers"][str(test_server.id)] == {"processed": 0, "skipped": 0, "removed": 0}

        res = await client.post("/api/v1/admin/image-updates/check", headers=get_auth_headers(test_user))
        assert res.status_code == 403


@pytest.mark.asyncio
class TestLiveReconciliation:
    async def test_live_digest_overrides_stored_row(
        self, client: AsyncClient, db_session, session_factory, agent, admin_user, test_server
    ):
        db_session.add(ContainerImageUpdate(
            server_id=test_server.id, stack_name="svc", container_name="svc-1",
            current_image_name="img:1", current_repo_digest="sha256:aaa",
            latest_repo_digest="sha256:bbb", update_available=True,
        ))
        await db_session.commit()
        agent.route("GET", "/stacks", {"stacks": [{"name": "svc", "services": [
            {"containers": [{"name": "svc-1", "repo_digests": ["img@sha256:bbb"]}]},
        ]}]})

        res = await client.get(
            f"/api/v1/servers/{test_server.id}/image-updates", headers=get_auth_headers(admin_user)
        )
        assert res.status_code == 200
        row = res.json()["data"][0]
        assert row["current_repo_digest"] == "sha256:bbb"
        assert row["update_available"] is False

        stored = await _stored(session_factory, test_server.id)
        assert stored[0].current_repo_digest == "sha256:aaa"
        assert stored[0].update_available is True

    async def test_stored_rows_returned_when_agent_down(
        self, client: AsyncClient, db_session, agent, admin_user, test_server
    ):
        db_session.add(ContainerImageUpdate(
            server_id=test_server.id, stack_name="svc", container_name="svc-1",
            current_repo_digest="sha256:aaa", latest_repo_digest="sha256:bbb", update_available=True,
        ))
        await db_session.commit()
        agent.route("GET", "/stacks", {"error": "down"}, status=503)

        res = await client.get(
            f"/api/v1/servers/{test_server.id}/image-updates", headers=get_auth_headers(admin_user)
        )
        assert res.json()["data"][0]["update_available"] is True

    async def test_cross_server_list(self, client: AsyncClient, db_session, admin_user, test_user, test_server):
        db_session.add(ContainerImageUpdate(
            server_id=test_server.id, stack_name="svc", container_name="svc-1",
            current_repo_digest="sha256:aaa", latest_repo_digest="sha256:bbb", update_available=True,
        ))
        await db_session.commit()

        res = await client.get("/api/v1/image-updates", headers=get_auth_headers(admin_user))
        data = res.json()["data"]
        assert len(data) == 1
        assert data[0]["server_name"] == "alpha"

        res = await client.get("/api/v1/image-updates", headers=get_auth_headers(test_user))
        assert res.json()["data"] == []
