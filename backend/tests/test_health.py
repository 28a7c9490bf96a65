# tests/test_health.py — Health, root metadata, response headers and first-run setup
import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
class TestHealth:
    async def test_health(self, client: AsyncClient):
        res = await client.get("/health")
        assert res.status_code == 200
        body = res.json()
        assert body["status"] == "healthy"
        assert body["version"] == "1.0.0"
        assert body["database"] == "connected"
        assert body["services"] == {"connected_agents": 0, "hub_clients": 0, "active_operations": 0}

    async def test_root(self, client: AsyncClient):
        res = await client.get("/")
        assert res.json()["name"] == "Berth"

    async def test_security_headers(self, client: AsyncClient):
        res = await client.get("/health")
        assert res.headers["X-Content-Type-Options"] == "nosniff"
        assert res.headers["X-Frame-Options"] == "DENY"
        assert res.headers["X-Request-ID"]
        assert res.headers["X-Response-Time"].endswith("s")

    async def test_request_id_echoed(self, client: AsyncClient):
        res = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"
        assert res.headers["X-Correlation-ID"] == "req-123"

    async def test_error_envelope(self, client: AsyncClient):
        res = await client.get("/api/v1/profile")
        assert res.status_code == 401
        body = res.json()
        assert body["success"] is False
        assert body["error"] == "unauthorized"
        assert body["message"]


@pytest.mark.asyncio
class TestSetup:
    async def test_first_admin(self, client: AsyncClient):
        res = await client.get("/api/v1/setup/status")
        assert res.json()["data"] == {"setup_required": True}

        res = await client.post("/api/v1/setup/admin", json={
            "username": "root", "email": "root@berth.test", "password": "FirstAdmin123!",
        })
        assert res.status_code == 200
        assert res.json()["data"]["is_admin"] is True

        res = await client.get("/api/v1/setup/status")
        assert res.json()["data"] == {"setup_required": False}

        res = await client.post("/api/v1/setup/admin", json={
            "username": "root2", "email": "root2@berth.test", "password": "FirstAdmin123!",
        })
        assert res.status_code == 409
        assert res.json()["error"] == "setup_complete"

        res = await client.post("/api/v1/auth/login", json={"username": "root", "password": "FirstAdmin123!"})
        assert res.status_code == 200
