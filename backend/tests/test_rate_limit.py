# tests/test_rate_limit.py — Client address resolution and login throttling
import pytest
from httpx import AsyncClient
from starlette.requests import Request

from rate_limit import LOGIN_LIMIT, client_key, limiter, resolve_client_ip


def _request(peer: str, forwarded: str = "") -> Request:
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers, "client": (peer, 5000)})


class TestResolveClientIP:
    def test_forwarded_header_ignored_without_trusted_proxies(self):
        first = client_key(_request("203.0.113.9", "10.9.9.1"))
        second = client_key(_request("203.0.113.9", "10.9.9.2"))
        assert first == second == "203.0.113.9"

    def test_untrusted_peer_cannot_spoof(self):
        req = _request("203.0.113.9", "198.51.100.1")
        assert resolve_client_ip(req, trusted=["10.0.0.0/8"]) == "203.0.113.9"

    def test_trusted_proxy_yields_rightmost_untrusted_hop(self):
        req = _request("10.0.0.5", "1.1.1.1, 198.51.100.7, 10.0.0.4")
        assert resolve_client_ip(req, trusted=["10.0.0.0/8"]) == "198.51.100.7"

    def test_all_hops_trusted_falls_back_to_leftmost(self):
        req = _request("10.0.0.5", "10.0.0.3, 10.0.0.4")
        assert resolve_client_ip(req, trusted=["10.0.0.0/8"]) == "10.0.0.3"

    def test_bad_entries_are_skipped(self):
        req = _request("10.0.0.5", "198.51.100.7")
        assert resolve_client_ip(req, trusted=["not-a-network", "10.0.0.5"]) == "198.51.100.7"


@pytest.mark.asyncio
class TestLoginLimit:
    async def test_rotating_forwarded_header_does_not_reset_limit(self, client: AsyncClient, test_user):
        allowed = int(LOGIN_LIMIT.split("/")[0])
        limiter.reset()
        limiter.enabled = True
        try:
            for i in range(allowed):
                res = await client.post(
                    "/api/v1/auth/login",
                    json={"username": "testuser", "password": "WrongPassword!!"},
                    headers={"X-Forwarded-For": f"198.51.100.{i + 1}"},
                )
                assert res.status_code == 401
            res = await client.post(
                "/api/v1/auth/login",
                json={"username": "testuser", "password": "WrongPassword!!"},
                headers={"X-Forwarded-For": "198.51.100.200"},
            )
            assert res.status_code == 429
        finally:
            limiter.enabled = False
            limiter.reset()
