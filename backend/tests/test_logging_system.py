# tests/test_logging_system.py — Request context and the in-memory event buffer
import pytest
from httpx import AsyncClient

from logging_system import (
    LogCategory,
    LogLevel,
    RequestContext,
    StructuredLogger,
    bind_user,
    reset_current_context,
    set_current_context,
)
from tests.conftest import get_auth_headers


class TestStructuredLogger:
    def test_entries_carry_request_context(self):
        log = StructuredLogger(service_name="test")
        token = set_current_context(RequestContext.create(request_id="req-1", correlation_id="corr-1"))
        try:
            bind_user(7, "jwt")
            entry = log.security_event("auth.login.failure", "high", False)
        finally:
            reset_current_context(token)
        assert entry.correlation_id == "corr-1"
        assert entry.request_id == "req-1"
        assert entry.user_id == 7
        assert entry.level == LogLevel.WARNING
        assert entry.metadata["event_type"] == "auth.login.failure"

    def test_below_min_level_dropped(self):
        log = StructuredLogger(min_level=LogLevel.WARNING)
        assert log.operation("01J", "completed") is None
        assert log.operation("01J", "failed") is not None
        assert len(log.buffer) == 1

    def test_filter_newest_first(self):
        log = StructuredLogger()
        log.operation("a", "started")
        log.security_event("auth.logout", "low", True)
        log.operation("b", "timeout")

        assert [e.metadata["operation_id"] for e in log.get_logs(category=LogCategory.OPERATION)] == ["b", "a"]
        assert len(log.get_logs(level=LogLevel.WARNING)) == 1
        assert len(log.get_logs(search="LOGOUT")) == 1
        assert len(log.get_logs(limit=2)) == 2

    def test_buffer_is_bounded(self):
        log = StructuredLogger(buffer_size=3)
        for i in range(5):
            log.operation(str(i), "started")
        assert len(log.buffer) == 3
        assert log.get_logs()[-1].metadata["operation_id"] == "2"

    def test_context_defaults(self):
        ctx = RequestContext.create()
        assert ctx.correlation_id == ctx.request_id
        assert ctx.user_id is None


@pytest.mark.asyncio
class TestRecentEventsEndpoint:
    async def test_failed_login_correlated(self, client: AsyncClient, admin_user, test_user):
        await client.post(
            "/api/v1/auth/login",
            json={"username": "testuser", "password": "nope-nope-nope"},
            headers={"X-Correlation-ID": "trace-login-42"},
        )
        res = await client.get(
            "/api/v1/admin/events/recent",
            params={"correlation_id": "trace-login-42", "category": "security"},
            headers=get_auth_headers(admin_user),
        )
        assert res.status_code == 200
        events = res.json()["data"]["events"]
        assert events
        assert events[0]["metadata"]["event_type"] == "auth.login.failure"

    async def test_requires_audit_permission(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/admin/events/recent", headers=get_auth_headers(test_user))
        assert res.status_code == 403
