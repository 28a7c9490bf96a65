# tests/test_operations.py — Compose operations: dispatch, streaming, persistence and summaries
import asyncio
import dataclasses
import json
from datetime import datetime, timezone

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import OperationLog, OperationLogMessage, OperationStatus, SecurityAuditLog, as_utc
from operations import (
    FollowerDropped, OperationAuditService, SummaryParser, format_service_list, normalize_frame,
    parse_stream_line, required_permission,
)
from rbac import RBACService
from tests.conftest import get_auth_headers, grant, make_user, sse

UP_FRAMES = [
    {"type": "progress", "data": "Network web-api_default Creating"},
    {"type": "stdout", "data": "Network web-api_default Created"},
    {"type": "stdout", "data": "Container web-api-app-1 Started"},
    {"type": "complete", "success": True, "exitCode": 0},
]


async def _start(client: AsyncClient, headers: dict, server_id: int, stack: str, command: str = "up"):
    return await client.post(
        f"/api/v1/servers/{server_id}/stacks/{stack}/operations",
        json={"command": command},
        headers=headers,
    )


class TestSummaries:
    def test_format_service_list(self):
        assert format_service_list([]) == ""
        assert format_service_list(["a"]) == "a"
        assert format_service_list(["a", "b"]) == "a and b"
        assert format_service_list(["a", "b", "c", "d"]) == "a, b, c and d"
        assert format_service_list(["a", "b", "c", "d", "e", "f"]) == "a, b, c and 3 others"

    def test_failure_summary(self):
        summary = SummaryParser().generate("up", False, 17, ["anything"])
        assert summary == "Operation 'up' failed with exit code 17"

    def test_up_summary(self):
        lines = [
            "Network shop_default Created",
            "Volume shop_data Created",
            "Container shop-db-1 Started",
            "Container shop-web-1 Started",
        ]
        summary = SummaryParser().generate("up", True, 0, lines)
        assert summary == (
            "Started shop-db-1 and shop-web-1; created 1 network (shop_default); created 1 volume (shop_data)"
        )

    def test_down_summary(self):
        lines = ["Container a Stopped", "Container a Removed", "Network n Removed"]
        assert SummaryParser().generate("down", True, 0, lines) == "Stopped a; removed a; removed 1 network (n)"

    def test_pull_summary_distinguishes_up_to_date(self):
        lines = [
            "web Pulling",
            "db Pulling",
            "a1b2 Pulling fs layer",
            "a1b2 Download complete",
            "web Pulled",
            "db Pulled",
        ]
        assert SummaryParser().generate("pull", True, 0, lines) == (
            "Pulled new images for web; db already up to date"
        )

    def test_unknown_command_summary(self):
        assert SummaryParser().generate("create-archive", True, 0, []) == (
            "Operation 'create-archive' completed successfully"
        )


class TestFrames:
    def test_complete_frame_normalized(self):
        frame = normalize_frame({"type": "complete", "success": True, "exitCode": 0})
        assert frame["success"] is True
        assert frame["exit_code"] == 0
        assert frame["data"] == ""

    def test_error_frame_is_unsuccessful(self):
        frame = normalize_frame({"type": "error", "data": "boom"})
        assert frame["success"] is False

    def test_unknown_type_dropped(self):
        assert normalize_frame({"type": "heartbeat"}) is None

    def test_stream_lines(self):
        assert parse_stream_line(": keepalive") is None
        assert parse_stream_line("data: not-json") is None
        frame = parse_stream_line("data: " + json.dumps({"type": "stdout", "data": {"k": 1}}))
        assert frame["type"] == "stdout"
        assert json.loads(frame["data"]) == {"k": 1}

    def test_bare_json_lines(self):
        frame = parse_stream_line(json.dumps({"type": "stdout", "data": "hello"}))
        assert frame["type"] == "stdout"
        assert frame["data"] == "hello"
        assert parse_stream_line("  " + json.dumps({"type": "complete", "success": True}) + "\r")["exit_code"] == 0
        assert parse_stream_line("{broken") is None
        assert parse_stream_line("event: message") is None

    def test_missing_timestamp_left_for_the_runner(self):
        assert normalize_frame({"type": "stdout", "data": "x"})["timestamp"] is None
        assert normalize_frame({"type": "stdout", "timestamp": "yesterday"})["timestamp"] is None
        frame = normalize_frame({"type": "stdout", "timestamp": "2026-01-01T00:00:05.123456789Z"})
        assert frame["timestamp"] == "2026-01-01T00:00:05.123456+00:00"

    def test_required_permission(self):
        assert required_permission("up") == "stacks.manage"
        assert required_permission("create-archive") == "files.write"


@pytest.mark.asyncio
class TestPatternScopedOperations:
    async def test_role_pattern_allows_matching_stack_only(
        self, client: AsyncClient, db_session, agent, container, test_server
    ):
        rbac = RBACService(db_session)
        deployer = await rbac.create_role("deployer")
        await db_session.commit()
        await grant(db_session, deployer, test_server, "stacks.manage", "web-*")
        u1 = await make_user(db_session, "u1")
        await rbac.assign_role(u1, deployer.id)
        await db_session.commit()
        agent.operation("web-api", "agent-op-1", UP_FRAMES)

        res = await _start(client, get_auth_headers(u1), test_server.id, "web-api")
        assert res.status_code == 200, res.text
        data = res.json()["data"]
        assert data["operationId"]
        assert data["status"] == "running"
        await container.operations.wait(data["operationId"], timeout=5)

        res = await _start(client, get_auth_headers(u1), test_server.id, "db-main")
        assert res.status_code == 403
        assert "/stacks/db-main/operations" not in agent.paths("POST")

    async def test_invalid_command_rejected(self, client: AsyncClient, admin_user, test_server):
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web", "rm -rf")
        assert res.status_code == 400

    async def test_hidden_server_reads_as_missing(self, client: AsyncClient, test_user, test_server):
        res = await _start(client, get_auth_headers(test_user), test_server.id, "web")
        assert res.status_code == 404


@pytest.mark.asyncio
class TestOperationLifecycle:
    async def test_completed_operation_is_persisted(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        agent.operation("web-api", "agent-op-1", UP_FRAMES)
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web-api")
        op_id = res.json()["data"]["operationId"]
        await container.operations.wait(op_id, timeout=5)

        sent = [payload for m, p, payload in agent.calls if p == "/stacks/web-api/operations"]
        assert sent == [{"command": "up", "options": [], "services": []}]

        row = (await db_session.execute(
            select(OperationLog).where(OperationLog.operation_id == op_id)
        )).scalar_one()
        assert row.status == OperationStatus.COMPLETED
        assert row.success is True
        assert row.exit_code == 0
        assert row.agent_operation_id == "agent-op-1"
        assert row.summary == "Started web-api-app-1; created 1 network (web-api_default)"
        messages = await OperationAuditService(db_session).messages(row.id)
        assert [m.sequence_number for m in messages] == [1, 2, 3, 4]
        assert messages[-1].message_type == "complete"

        res = await client.get(f"/api/v1/operation-logs/{row.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert len(res.json()["data"]["messages"]) == 4

        events = (await db_session.execute(
            select(SecurityAuditLog.event_type).order_by(SecurityAuditLog.id)
        )).scalars().all()
        assert "operation.started" in events and "operation.completed" in events

    async def test_stream_without_completion_fails(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        agent.operation("web", "agent-op-2", [{"type": "stdout", "data": "half way"}])
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web", "restart")
        op_id = res.json()["data"]["operationId"]
        await container.operations.wait(op_id, timeout=5)

        row = (await db_session.execute(
            select(OperationLog).where(OperationLog.operation_id == op_id)
        )).scalar_one()
        assert row.status == OperationStatus.FAILED
        assert row.failure_reason == "stream ended without a completion frame"
        frames = [f async for f in container.operations.follow(op_id)]
        assert frames[-1]["type"] == "error"

    async def test_agent_rejection_closes_log(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        agent.route("POST", "/stacks/web/operations", {"error": "stack is locked"}, status=409)
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web", "down")
        assert res.status_code == 502
        row = (await db_session.execute(select(OperationLog))).scalar_one()
        assert row.status == OperationStatus.FAILED
        assert row.failure_reason == "stack is locked"
        assert container.operations.active_count == 0

    async def test_registry_credentials_attached_to_pull(
        self, client: AsyncClient, agent, container, admin_user, test_server
    ):
        headers = get_auth_headers(admin_user)
        res = await client.post(
            f"/api/v1/servers/{test_server.id}/registries",
            json={"registry_url": "https://ghcr.io", "username": "bot", "password": "s3cret"},
            headers=headers,
        )
        assert res.status_code == 200, res.text
        agent.compose["shop"] = "services:\n  web:\n    image: ghcr.io/acme/web:1.0\n  cache:\n    image: redis:7\n"
        agent.operation("shop", "agent-op-3", [{"type": "complete", "success": True, "exitCode": 0}])

        res = await _start(client, headers, test_server.id, "shop", "pull")
        await container.operations.wait(res.json()["data"]["operationId"], timeout=5)

        sent = [payload for m, p, payload in agent.calls if p == "/stacks/shop/operations"][0]
        creds = sent["registry_credentials"]
        assert len(creds) == 1
        assert creds[0]["registry"] == "ghcr.io"
        assert creds[0]["password"] == "s3cret"


@pytest.mark.asyncio
class TestOperationReplay:
    async def test_follower_disconnect_then_replay(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        release = asyncio.Event()

        async def frames():
            yield sse({"type": "progress", "data": "Container web-app-1 Starting"}).encode()
            await release.wait()
            yield sse({"type": "stdout", "data": "Container web-app-1 Started"}).encode()
            yield sse({"type": "complete", "success": True, "exitCode": 0}).encode()

        agent.operation("web", "agent-op-4", frames)
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web")
        op_id = res.json()["data"]["operationId"]

        # client A sees the first frame, then goes away
        follower = container.operations.follow(op_id)
        first = await asyncio.wait_for(follower.__anext__(), timeout=5)
        assert first["type"] == "progress"
        await follower.aclose()

        release.set()
        await container.operations.wait(op_id, timeout=5)
        assert not container.operations.is_active(op_id)

        count = (await db_session.execute(select(OperationLogMessage))).scalars().all()
        assert len(count) == 3

        # client B reconnects after completion and gets the whole sequence from the database
        replay = [f async for f in container.operations.follow(op_id)]
        assert [f["type"] for f in replay] == ["progress", "stdout", "complete"]
        assert [f["sequence_number"] for f in replay] == [1, 2, 3]
        assert replay[-1]["success"] is True
        assert replay[-1]["exit_code"] == 0

    async def test_live_follower_sees_everything(
        self, client: AsyncClient, agent, container, admin_user, test_server
    ):
        agent.operation("web", "agent-op-5", UP_FRAMES)
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web")
        op_id = res.json()["data"]["operationId"]
        frames = await asyncio.wait_for(
            _collect(container.operations.follow(op_id)), timeout=5
        )
        assert frames[-1]["type"] == "complete"
        assert len(frames) == len(UP_FRAMES)


async def _collect(stream):
    return [frame async for frame in stream]


def _log_row(db_session, op_id):
    return db_session.execute(select(OperationLog).where(OperationLog.operation_id == op_id))


def _sequential_ids(agent, stack: str, ids):
    remaining = iter(ids)
    agent.route(
        "POST", f"/stacks/{stack}/operations",
        lambda request: httpx.Response(200, json={"operationId": next(remaining)}),
    )


COMPLETE = {"type": "complete", "success": True, "exitCode": 0}


@pytest.mark.asyncio
class TestMessageOrdering:
    async def test_timestamps_never_go_backwards(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        agent.operation("web", "agent-op-6", [
            {"type": "stdout", "data": "a", "timestamp": "2026-01-01T00:00:10Z"},
            {"type": "stdout", "data": "b", "timestamp": "2026-01-01T00:00:05Z"},
            {"type": "stdout", "data": "c"},
            {"type": "complete", "success": True, "exitCode": 0, "timestamp": "2026-01-01T00:00:06Z"},
        ])
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web")
        op_id = res.json()["data"]["operationId"]
        await container.operations.wait(op_id, timeout=5)

        row = (await _log_row(db_session, op_id)).scalar_one()
        messages = await OperationAuditService(db_session).messages(row.id)
        stamps = [as_utc(m.timestamp) for m in messages]
        assert stamps == sorted(stamps)
        assert set(stamps) == {datetime(2026, 1, 1, 0, 0, 10, tzinfo=timezone.utc)}
        assert as_utc(row.end_time) == stamps[-1]

        replay = [f async for f in container.operations.follow(op_id)]
        assert len({f["timestamp"] for f in replay}) == 1

    async def test_synthetic_error_frame_is_not_earlier_than_the_stream(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        agent.operation("web", "agent-op-7", [
            {"type": "stdout", "data": "clock skew", "timestamp": "2099-01-01T00:00:00Z"},
        ])
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web", "restart")
        op_id = res.json()["data"]["operationId"]
        await container.operations.wait(op_id, timeout=5)

        row = (await _log_row(db_session, op_id)).scalar_one()
        messages = await OperationAuditService(db_session).messages(row.id)
        assert [m.message_type for m in messages] == ["stdout", "error"]
        assert as_utc(messages[-1].timestamp) == datetime(2099, 1, 1, tzinfo=timezone.utc)
        assert as_utc(row.end_time) == as_utc(messages[-1].timestamp)

    async def test_operation_registered_before_agent_dispatch(
        self, client: AsyncClient, agent, container, admin_user, test_server
    ):
        seen = []

        def accept(request):
            seen.append(container.operations.active_count)
            return httpx.Response(200, json={"operationId": "agent-op-10"})

        agent.route("POST", "/stacks/web/operations", accept)
        agent.streams["agent-op-10"] = lambda: sse(COMPLETE)
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web", "stop")
        await container.operations.wait(res.json()["data"]["operationId"], timeout=5)
        assert seen == [1]


@pytest.mark.asyncio
class TestSlowFollower:
    async def test_follower_that_falls_behind_is_dropped(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        release = asyncio.Event()

        async def frames():
            yield sse({"type": "progress", "data": "starting"}).encode()
            await release.wait()
            for i in range(5):
                yield sse({"type": "stdout", "data": f"line {i}"}).encode()
            yield sse(COMPLETE).encode()

        agent.operation("web", "agent-op-8", frames)
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web")
        op_id = res.json()["data"]["operationId"]

        follower = container.operations.follow(op_id, limit=2)
        first = await asyncio.wait_for(follower.__anext__(), timeout=5)
        assert first["type"] == "progress"

        release.set()
        await container.operations.wait(op_id, timeout=5)
        with pytest.raises(FollowerDropped):
            await asyncio.wait_for(follower.__anext__(), timeout=5)

        row = (await _log_row(db_session, op_id)).scalar_one()
        assert row.status == OperationStatus.COMPLETED
        replay = [f async for f in container.operations.follow(op_id)]
        assert len(replay) == 7


@pytest.mark.asyncio
class TestTimeout:
    async def test_hung_stream_is_closed_as_timeout(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        container.operations.settings = dataclasses.replace(container.settings, operation_timeout_seconds=1)
        hang = asyncio.Event()

        async def frames():
            yield sse({"type": "stdout", "data": "pulling"}).encode()
            await hang.wait()

        agent.operation("web", "agent-op-9", frames)
        res = await _start(client, get_auth_headers(admin_user), test_server.id, "web")
        op_id = res.json()["data"]["operationId"]
        try:
            await container.operations.wait(op_id, timeout=5)
        finally:
            hang.set()

        row = (await _log_row(db_session, op_id)).scalar_one()
        assert row.status == OperationStatus.TIMEOUT
        assert row.success is False
        assert row.failure_reason == "timeout"
        messages = await OperationAuditService(db_session).messages(row.id)
        assert [m.sequence_number for m in messages] == [1, 2]
        assert messages[-1].message_type == "error"
        assert messages[-1].message_data == "Operation timed out after 1 seconds"
        assert not container.operations.is_active(op_id)


@pytest.mark.asyncio
class TestStackQueue:
    async def test_second_operation_waits_for_the_first(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        release = asyncio.Event()

        async def slow():
            yield sse({"type": "stdout", "data": "working"}).encode()
            await release.wait()
            yield sse(COMPLETE).encode()

        _sequential_ids(agent, "web", ["agent-q-1", "agent-q-2"])
        agent.streams["agent-q-1"] = slow
        agent.streams["agent-q-2"] = lambda: sse(COMPLETE)
        headers = get_auth_headers(admin_user)

        first = (await _start(client, headers, test_server.id, "web", "stop")).json()["data"]
        second = (await _start(client, headers, test_server.id, "web", "start")).json()["data"]
        assert first["status"] == "running"
        assert second["status"] == "queued"
        assert second["position_in_queue"] == 1
        assert agent.paths("POST").count("/stacks/web/operations") == 1
        row = (await _log_row(db_session, second["operationId"])).scalar_one()
        assert row.status == OperationStatus.QUEUED
        assert row.queued_at is not None

        # other stacks are not held up
        agent.operation("db", "agent-q-3", [COMPLETE])
        other = (await _start(client, headers, test_server.id, "db", "stop")).json()["data"]
        assert other["status"] == "running"

        release.set()
        await container.operations.wait(first["operationId"], timeout=5)
        await container.operations.wait(second["operationId"], timeout=5)
        await container.operations.wait(other["operationId"], timeout=5)

        assert agent.paths("POST").count("/stacks/web/operations") == 2
        rows = (await db_session.execute(
            select(OperationLog).where(OperationLog.stack_name == "web").order_by(OperationLog.id)
        )).scalars().all()
        await db_session.refresh(rows[1])
        assert [r.command for r in rows] == ["stop", "start"]
        assert [r.status for r in rows] == [OperationStatus.COMPLETED, OperationStatus.COMPLETED]
        assert rows[1].agent_operation_id == "agent-q-2"
        assert as_utc(rows[1].start_time) >= as_utc(rows[0].end_time)

    async def test_failed_batch_step_cancels_the_rest(
        self, client: AsyncClient, db_session, agent, container, admin_user, test_server
    ):
        release = asyncio.Event()

        async def failing():
            yield sse({"type": "stderr", "data": "no such service"}).encode()
            await release.wait()
            yield sse({"type": "complete", "success": False, "exitCode": 1}).encode()

        _sequential_ids(agent, "web", ["agent-b-1", "agent-b-2"])
        agent.streams["agent-b-1"] = failing
        res = await client.post(
            f"/api/v1/servers/{test_server.id}/stacks/web/operations/batch",
            json={"operations": [{"command": "stop"}, {"command": "start"}]},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200, res.text
        data = res.json()["data"]
        first, second = data["operations"]
        assert first["batch_id"] == second["batch_id"] == data["batch_id"]
        assert [first["status"], second["status"]] == ["running", "queued"]

        release.set()
        await container.operations.wait(first["operationId"], timeout=5)
        await container.operations.wait(second["operationId"], timeout=5)

        row = (await _log_row(db_session, second["operationId"])).scalar_one()
        await db_session.refresh(row)
        assert row.status == OperationStatus.FAILED
        assert row.failure_reason == "previous batch operation failed"
        assert agent.paths("POST").count("/stacks/web/operations") == 1

    async def test_batch_needs_every_permission(
        self, client: AsyncClient, db_session, agent, test_server
    ):
        rbac = RBACService(db_session)
        deployer = await rbac.create_role("deployer")
        await db_session.commit()
        await grant(db_session, deployer, test_server, "stacks.manage", "*")
        u1 = await make_user(db_session, "u1")
        await rbac.assign_role(u1, deployer.id)
        await db_session.commit()

        res = await client.post(
            f"/api/v1/servers/{test_server.id}/stacks/web/operations/batch",
            json={"operations": [{"command": "up"}, {"command": "create-archive"}]},
            headers=get_auth_headers(u1),
        )
        assert res.status_code == 403
        assert agent.paths("POST") == []

    async def test_waiting_operations_resume_after_restart(
        self, db_session, agent, container, admin_user, test_server
    ):
        audit = OperationAuditService(db_session)
        row = await audit.start(admin_user.id, test_server.id, "web", "restart", status=OperationStatus.QUEUED)
        agent.operation("web", "agent-op-11", [COMPLETE])

        await container.operations.recover()
        await container.operations.wait(row.operation_id, timeout=5)

        await db_session.refresh(row)
        assert row.status == OperationStatus.COMPLETED
        assert row.agent_operation_id == "agent-op-11"
