# tests/test_webhooks.py — Webhook management, secret handling and CI triggers
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import OperationLog, SecurityAuditLog, Webhook
from tests.conftest import get_auth_headers, grant, make_user, _role
from webhooks import KEY_PREFIX, generate_secret, verify_secret

WEB_YAML = 'services:\n  web:\n    image: nginx:1.25\n'
COMPLETE = {"type": "complete", "success": True, "exitCode": 0}


async def _create(client: AsyncClient, owner, **fields) -> dict:
    body = {"name": "deploy"}
    body.update(fields)
    res = await client.post("/api/v1/webhooks", json=body, headers=get_auth_headers(owner))
    assert res.status_code == 200, res.text
    return res.json()["data"]


async def _trigger(client: AsyncClient, hook: dict, server_id: int, stack: str, command: str = "up", **extra):
    params = {"wait": "true"} if extra.pop("wait", False) else {}
    body = {"api_key": hook["api_key"], "server_id": server_id, "stack_name": stack, "command": command}
    body.update(extra)
    return await client.post(f"/api/v1/webhooks/{hook['id']}/trigger", json=body, params=params)


async def _events(db_session, event_type: str):
    stmt = select(SecurityAuditLog).where(SecurityAuditLog.event_type == event_type)
    return (await db_session.execute(stmt)).scalars().all()


class TestSecret:
    def test_generate_secret(self):
        raw, digest, display = generate_secret()
        assert raw.startswith(KEY_PREFIX)
        assert digest != raw
        assert verify_secret(raw, digest)
        assert not verify_secret(raw + "x", digest)
        assert display == raw[:11]


@pytest.mark.asyncio
class TestManagement:
    async def test_create_shows_key_once(self, client: AsyncClient, db_session, admin_user, test_server):
        hook = await _create(client, admin_user, stack_pattern="web-*", server_ids=[test_server.id])
        assert hook["api_key"].startswith(KEY_PREFIX)
        assert hook["server_ids"] == [test_server.id]
        assert hook["stack_pattern"] == "web-*"

        row = await db_session.get(Webhook, hook["id"])
        assert row.key_hash != hook["api_key"]

        res = await client.get(f"/api/v1/webhooks/{hook['id']}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert "api_key" not in res.json()["data"]
        assert len(await _events(db_session, "webhook.created")) == 1

    async def test_owner_only(self, client: AsyncClient, admin_user, test_user):
        hook = await _create(client, admin_user)
        res = await client.get(f"/api/v1/webhooks/{hook['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 404
        res = await client.get("/api/v1/webhooks", headers=get_auth_headers(test_user))
        assert res.json()["data"] == []

    async def test_update_and_regenerate(self, client: AsyncClient, admin_user, test_server):
        headers = get_auth_headers(admin_user)
        hook = await _create(client, admin_user)
        res = await client.patch(
            f"/api/v1/webhooks/{hook['id']}",
            json={"stack_pattern": "api-*", "server_ids": [test_server.id]},
            headers=headers,
        )
        assert res.status_code == 200
        assert res.json()["data"]["stack_pattern"] == "api-*"
        assert res.json()["data"]["server_ids"] == [test_server.id]

        res = await client.post(f"/api/v1/webhooks/{hook['id']}/regenerate-key", headers=headers)
        assert res.status_code == 200
        fresh = res.json()["data"]["api_key"]
        assert fresh != hook["api_key"]

        res = await _trigger(client, hook, test_server.id, "api-1")
        assert res.status_code == 401

    async def test_unknown_server_rejected(self, client: AsyncClient, admin_user):
        res = await client.post(
            "/api/v1/webhooks", json={"name": "x", "server_ids": [999]}, headers=get_auth_headers(admin_user)
        )
        assert res.status_code == 400

    async def test_past_expiry_rejected(self, client: AsyncClient, admin_user):
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        res = await client.post(
            "/api/v1/webhooks", json={"name": "x", "expires_at": past}, headers=get_auth_headers(admin_user)
        )
        assert res.status_code == 400

    async def test_delete(self, client: AsyncClient, db_session, admin_user):
        hook = await _create(client, admin_user)
        res = await client.delete(f"/api/v1/webhooks/{hook['id']}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        db_session.expire_all()
        assert await db_session.get(Webhook, hook["id"]) is None


@pytest.mark.asyncio
class TestTrigger:
    async def test_trigger_runs_as_owner(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        agent.operation("web", "agent-wh-1", [{"type": "stdout", "data": "Started"}, COMPLETE])
        hook = await _create(client, admin_user)

        res = await _trigger(client, hook, test_server.id, "web")
        assert res.status_code == 200, res.text
        data = res.json()["data"]
        await container.operations.wait(data["operation_id"], timeout=5)

        row = (await db_session.execute(
            select(OperationLog).where(OperationLog.operation_id == data["operation_id"])
        )).scalar_one()
        assert row.user_id == admin_user.id
        assert row.webhook_id == hook["id"]

        db_session.expire_all()
        stored = await db_session.get(Webhook, hook["id"])
        assert stored.trigger_count == 1
        assert stored.last_triggered_at is not None
        assert len(await _events(db_session, "webhook.triggered")) == 1

    async def test_wait_reports_outcome(self, client: AsyncClient, agent, admin_user, test_server):
        agent.operation("web", "agent-wh-2", [{"type": "complete", "success": False, "exitCode": 3}])
        hook = await _create(client, admin_user)

        res = await _trigger(client, hook, test_server.id, "web", wait=True)
        assert res.status_code == 200, res.text
        data = res.json()["data"]
        assert data["status"] == "failed"
        assert data["success"] is False
        assert data["exit_code"] == 3

    async def test_image_changes_applied_before_running(
        self, client: AsyncClient, agent, container, admin_user, test_server
    ):
        agent.compose["web"] = WEB_YAML
        agent.operation("web", "agent-wh-3", [COMPLETE])
        hook = await _create(client, admin_user)

        res = await _trigger(
            client, hook, test_server.id, "web",
            compose_changes={"service_image_updates": [{"service_name": "web", "new_tag": "1.27"}]},
        )
        assert res.status_code == 200, res.text
        assert "nginx:1.27" in agent.compose["web"]
        await container.operations.wait(res.json()["data"]["operation_id"], timeout=5)

    async def test_bad_key_is_401_and_audited(self, client: AsyncClient, db_session, agent, admin_user, test_server):
        hook = await _create(client, admin_user)
        hook["api_key"] = KEY_PREFIX + "0" * 64

        res = await _trigger(client, hook, test_server.id, "web")
        assert res.status_code == 401
        assert "/stacks/web/operations" not in agent.paths("POST")
        events = await _events(db_session, "webhook.authorization_failed")
        assert len(events) == 1
        assert events[0].success is False

    async def test_disabled_webhook_is_401(self, client: AsyncClient, admin_user, test_server):
        hook = await _create(client, admin_user)
        await client.patch(
            f"/api/v1/webhooks/{hook['id']}", json={"is_active": False}, headers=get_auth_headers(admin_user)
        )
        res = await _trigger(client, hook, test_server.id, "web")
        assert res.status_code == 401

    async def test_stack_outside_pattern_is_403(
        self, client: AsyncClient, db_session, agent, admin_user, test_server
    ):
        hook = await _create(client, admin_user, stack_pattern="web-*")
        res = await _trigger(client, hook, test_server.id, "db-main")
        assert res.status_code == 403
        assert "/stacks/db-main/operations" not in agent.paths("POST")
        assert len(await _events(db_session, "webhook.trigger_failed")) == 1

    async def test_owner_permissions_apply(self, client: AsyncClient, db_session, agent, test_server):
        owner = await make_user(db_session, "ci-owner", roles=["user"])
        await grant(db_session, await _role(db_session, "user"), test_server, "stacks.read", "web")
        hook = await _create(client, owner)

        res = await _trigger(client, hook, test_server.id, "web")
        assert res.status_code == 403
        assert "/stacks/web/operations" not in agent.paths("POST")


@pytest.mark.asyncio
class TestAdmin:
    async def test_admin_lists_and_deletes_every_webhook(
        self, client: AsyncClient, db_session, admin_user, test_user, test_server
    ):
        await grant(db_session, await _role(db_session, "user"), test_server, "stacks.read")
        hook = await _create(client, test_user)

        res = await client.get("/api/v1/admin/webhooks", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert [h["id"] for h in res.json()["data"]] == [hook["id"]]

        res = await client.get("/api/v1/admin/webhooks", headers=get_auth_headers(test_user))
        assert res.status_code == 403

        res = await client.delete(f"/api/v1/admin/webhooks/{hook['id']}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        res = await client.get("/api/v1/webhooks", headers=get_auth_headers(test_user))
        assert res.json()["data"] == []
