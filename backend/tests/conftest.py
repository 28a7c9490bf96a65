# tests/conftest.py — Shared test fixtures
import os
import re
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_DSN"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENCRYPTION_SECRET"] = "test-encryption-secret-0123456789"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SESSION_SECURE"] = "false"
os.environ["OPERATION_TIMEOUT_SECONDS"] = "5"

from models import Base, User, Role, Permission, Server, ServerRoleStackPermission
from auth import AuthService
from config import get_settings
from container import ServiceContainer
from database import get_db_session, make_session_factory
from revocation import RevocationCache
from seeds import seed_all
from main import app

AGENT_TOKEN = "agent-bearer-token"


class FakeAgent:
    """Stands in for a host agent behind httpx.MockTransport.

    Routes are keyed by (method, path) where path is the agent path without
    the ``/api`` prefix. A route value is either a JSON body or a callable
    taking the request and returning an httpx.Response.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.compose: Dict[str, str] = {}
        self.streams: Dict[str, Callable] = {}
        self.calls: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self.route("GET", "/health", {"status": "ok", "version": "test"})

    def route(self, method: str, path: str, body: Any = None, status: int = 200) -> None:
        if callable(body):
            self.routes[(method, path)] = body
        else:
            self.routes[(method, path)] = lambda request: httpx.Response(status, json=body)

    def operation(self, stack_name: str, agent_op_id: str, frames) -> None:
        """Accept one operation on a stack and stream ``frames`` back.

        ``frames`` is a list of dicts or a zero-argument async generator
        function yielding raw bytes.
        """
        self.route("POST", f"/stacks/{stack_name}/operations", {"operationId": agent_op_id})
        if callable(frames):
            self.streams[agent_op_id] = frames
        else:
            body = "".join(sse(f) for f in frames)
            self.streams[agent_op_id] = lambda: body

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [p for m, p, _ in self.calls if method is None or m == method]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api"):
            path = path[len("/api"):]
        payload = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, payload))

        handler = self.routes.get((request.method, path))
        if handler is not None:
            return handler(request)

        match = re.match(r"^/stacks/([^/]+)/compose$", path)
        if match and match.group(1) in self.compose:
            name = match.group(1)
            if request.method == "GET":
                return httpx.Response(200, json={"content": self.compose[name]})
            if request.method == "PATCH":
                self.compose[name] = payload["content"]
                return httpx.Response(200, json={"success": True})

        match = re.match(r"^/operations/([^/]+)/stream$", path)
        if match and match.group(1) in self.streams:
            body = self.streams[match.group(1)]()
            return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

        return httpx.Response(404, json={"error": f"no route for {request.method} {path}"})


def sse(frame: Dict[str, Any]) -> str:
    return f"data: {json.dumps(frame)}\n\n"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with make_session_factory(engine)() as session:
        await seed_all(session)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def agent():
    return FakeAgent()


@pytest_asyncio.fixture(scope="function")
async def container(session_factory, agent):
    services = ServiceContainer(
        get_settings(), session_factory, agent_transport=httpx.MockTransport(agent)
    )
    yield services
    await services.stop()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, container):
    """HTTP test client with overridden DB dependency and a fake agent fabric"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.state.container = container
    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _role(db_session, name: str) -> Role:
    from sqlalchemy import select
    return (await db_session.execute(select(Role).where(Role.name == name))).scalar_one()


async def make_user(db_session, username: str, password: str = "CorrectHorse123!", roles=()) -> User:
    user = User(
        username=username,
        email=f"{username}@berth.test",
        password_hash=AuthService.hash_password(password),
        is_active=True,
    )
    for name in roles:
        user.roles.append(await _role(db_session, name))
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


async def grant(db_session, role: Role, server: Server, permission: str, pattern: str = "*") -> None:
    from sqlalchemy import select
    perm = (
        await db_session.execute(select(Permission).where(Permission.name == permission))
    ).scalar_one()
    db_session.add(ServerRoleStackPermission(
        server_id=server.id, role_id=role.id, permission_id=perm.id, stack_pattern=pattern,
    ))
    await db_session.commit()


@pytest_asyncio.fixture
async def test_user(db_session):
    """A user holding only the default ``user`` role"""
    return await make_user(db_session, "testuser", "TestPassword123!", roles=["user"])


@pytest_asyncio.fixture
async def admin_user(db_session):
    """A member of the built-in admin role"""
    return await make_user(db_session, "admin", "AdminPassword123!", roles=["admin"])


@pytest_asyncio.fixture
async def test_server(db_session, container):
    server = Server(
        name="alpha",
        description="test host",
        host="agent.test",
        port=8081,
        use_https=False,
        access_token=container.crypto.encrypt(AGENT_TOKEN),
        is_active=True,
    )
    db_session.add(server)
    await db_session.commit()
    await db_session.refresh(server)
    return server


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    auth = AuthService(None, get_settings(), RevocationCache())
    token, _, _ = auth.create_access_token(user.id)
    return {"Authorization": f"Bearer {token}"}
