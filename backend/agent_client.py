# agent_client.py — RPC fabric between the control plane and host agents
# Request side: httpx against https://host:port/api with the server's bearer
#   token, TLS verification per server, bounded timeouts.
# Event side: one supervised aiohttp WebSocket per active server on
#   /ws/agent/status. Inbound events are stamped with server_id and handed
#   to a publish callback (the subscription hub).

import json
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import aiohttp
import httpx

from crypto import Crypto
from errors import APIError, UpstreamError, UpstreamTimeout

logger = logging.getLogger("berth.agent")

DEFAULT_TIMEOUT = 30.0
HEALTH_TIMEOUT = 10.0
IMAGE_CHECK_TIMEOUT = 300.0
TERMINAL_PATH = "/ws/terminal"

EVENT_TYPES = frozenset({"container_status", "stack_status", "operation_progress"})


class AgentError(Exception):
    """Agent unreachable, or it answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AgentTimeout(AgentError):
    pass


def to_api_error(exc: AgentError) -> APIError:
    if isinstance(exc, AgentTimeout):
        return UpstreamTimeout(str(exc), details={"failure_reason": "timeout"})
    if exc.status_code == 404:
        return APIError(str(exc), error="not_found", status_code=404)
    return UpstreamError(str(exc), details={"failure_reason": str(exc)})


async def agent_call(awaitable):
    """Await an agent request, surfacing fabric failures as API errors."""
    try:
        return await awaitable
    except AgentError as e:
        raise to_api_error(e) from e


@dataclass
class AgentTarget:
    """Detached copy of the server columns the fabric needs."""
    server_id: int
    name: str
    host: str
    port: int
    use_https: bool = True
    skip_ssl_verification: bool = False
    access_token: str = ""  # encrypted

    @classmethod
    def from_server(cls, server) -> "AgentTarget":
        return cls(
            server_id=server.id,
            name=server.name,
            host=server.host,
            port=server.port,
            use_https=server.use_https,
            skip_ssl_verification=server.skip_ssl_verification,
            access_token=server.access_token or "",
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return f"agent returned HTTP {response.status_code}"


class AgentClient:
    """httpx client pool keyed by TLS verification mode"""

    def __init__(
        self,
        crypto: Crypto,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.crypto = crypto
        self.timeout = timeout
        self._transport = transport
        self._clients: Dict[bool, httpx.AsyncClient] = {}
        self._ws_session: Optional[aiohttp.ClientSession] = None

    def base_url(self, server) -> str:
        scheme = "https" if server.use_https else "http"
        return f"{scheme}://{server.host}:{server.port}/api"

    def ws_url(self, server, path: str) -> str:
        scheme = "wss" if server.use_https else "ws"
        return f"{scheme}://{server.host}:{server.port}{path}"

    def auth_headers(self, server) -> Dict[str, str]:
        token = self.crypto.decrypt(server.access_token) if server.access_token else ""
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _client(self, server) -> httpx.AsyncClient:
        verify = not server.skip_ssl_verification
        client = self._clients.get(verify)
        if client is None or client.is_closed:
            if not verify:
                logger.warning(f"TLS verification disabled for agent {server.host}:{server.port}")
            client = httpx.AsyncClient(
                verify=verify,
                timeout=self.timeout,
                transport=self._transport,
            )
            self._clients[verify] = client
        return client

    def _build(self, server, method: str, endpoint: str, payload: Any, params: Optional[Dict[str, Any]], timeout: Optional[float]):
        client = self._client(server)
        headers = self.auth_headers(server)
        kwargs: Dict[str, Any] = {"headers": headers, "params": params}
        if payload is not None:
            kwargs["json"] = payload
        kwargs["timeout"] = timeout if timeout is not None else self.timeout
        return client.build_request(method, self.base_url(server) + endpoint, **kwargs)

    async def request(
        self,
        server,
        method: str,
        endpoint: str,
        payload: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        request = self._build(server, method, endpoint, payload, params, timeout)
        try:
            response = await self._client(server).send(request)
        except httpx.TimeoutException as e:
            logger.warning(f"Agent {server.host}:{server.port} timed out on {method} {endpoint}")
            raise AgentTimeout(f"agent timed out: {method} {endpoint}") from e
        except httpx.HTTPError as e:
            logger.error(f"Agent {server.host}:{server.port} unreachable on {method} {endpoint}: {e}")
            raise AgentError(f"agent unreachable: {e}") from e
        logger.debug(f"Agent {method} {endpoint} -> {response.status_code}")
        return response

    async def request_json(
        self,
        server,
        method: str,
        endpoint: str,
        payload: Any = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        response = await self.request(server, method, endpoint, payload, params, timeout)
        if response.status_code >= 400:
            raise AgentError(_error_message(response), status_code=response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise AgentError("agent returned invalid JSON", status_code=response.status_code) from e

    @asynccontextmanager
    async def stream(
        self,
        server,
        method: str,
        endpoint: str,
        payload: Any = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming response; the body is read by the caller."""
        request = self._build(server, method, endpoint, payload, None, None)
        request.headers["Accept"] = "text/event-stream"
        request.headers["Cache-Control"] = "no-cache"
        client = self._client(server)
        # Connect/write bounded, reads unbounded: operations outlive any fixed read timeout
        request.extensions["timeout"] = httpx.Timeout(
            self.timeout if timeout is None else timeout, read=None
        ).as_dict()
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise AgentTimeout(f"agent timed out opening {endpoint}") from e
        except httpx.HTTPError as e:
            raise AgentError(f"agent unreachable: {e}") from e
        try:
            if response.status_code >= 400:
                await response.aread()
                raise AgentError(_error_message(response), status_code=response.status_code)
            yield response
        finally:
            await response.aclose()

    async def health(self, server) -> Dict[str, Any]:
        return await self.request_json(server, "GET", "/health", timeout=HEALTH_TIMEOUT) or {}

    async def check_image_updates(self, server, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.request_json(
            server, "POST", "/images/check-updates", payload=payload, timeout=IMAGE_CHECK_TIMEOUT
        ) or {}

    @asynccontextmanager
    async def terminal(self, server) -> AsyncIterator[aiohttp.ClientWebSocketResponse]:
        """Interactive exec channel to the agent (/ws/terminal)."""
        if self._ws_session is None or self._ws_session.closed:
            self._ws_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=HEALTH_TIMEOUT)
            )
        try:
            async with self._ws_session.ws_connect(
                self.ws_url(server, TERMINAL_PATH),
                headers=self.auth_headers(server),
                heartbeat=AgentSupervisor.HEARTBEAT,
                ssl=False if server.skip_ssl_verification else True,
            ) as ws:
                yield ws
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise AgentError(f"terminal connection failed: {e}") from e

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
        if self._ws_session is not None:
            await self._ws_session.close()
            self._ws_session = None


# ============================================================
# EVENT SUPERVISOR
# ============================================================

@dataclass
class AgentConnectionState:
    server_id: int
    name: str
    connected: bool = False
    last_error: Optional[str] = None
    last_connected_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    connect_attempts: int = 0
    events_received: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "name": self.name,
            "connected": self.connected,
            "last_error": self.last_error,
            "last_connected_at": self.last_connected_at.isoformat() if self.last_connected_at else None,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
            "connect_attempts": self.connect_attempts,
            "events_received": self.events_received,
        }


PublishFn = Callable[[Dict[str, Any]], Awaitable[None]]


class AgentSupervisor:
    """Keeps one status WebSocket open per active agent."""

    STATUS_PATH = "/ws/agent/status"
    HEARTBEAT = 54.0
    READ_TIMEOUT = 60.0
    HANDSHAKE_TIMEOUT = 10.0
    RETRY_DELAY = 5.0
    RECONNECT_DELAY = 1.0

    def __init__(self, client: AgentClient, publish: PublishFn):
        self.client = client
        self.publish = publish
        self._tasks: Dict[int, asyncio.Task] = {}
        self._states: Dict[int, AgentConnectionState] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._stopping = False

    @property
    def connected_count(self) -> int:
        return sum(1 for s in self._states.values() if s.connected)

    def status(self, server_id: int) -> Optional[Dict[str, Any]]:
        state = self._states.get(server_id)
        return state.to_dict() if state else None

    def statuses(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self._states.values()]

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=self.HANDSHAKE_TIMEOUT)
            )
        return self._session

    def watch(self, target: AgentTarget) -> None:
        """Start (or restart) supervision of one server."""
        self._stopping = False
        existing = self._tasks.pop(target.server_id, None)
        if existing is not None:
            existing.cancel()
        self._states[target.server_id] = AgentConnectionState(target.server_id, target.name)
        self._tasks[target.server_id] = asyncio.create_task(
            self._supervise(target), name=f"agent-ws-{target.server_id}"
        )

    async def unwatch(self, server_id: int) -> None:
        task = self._tasks.pop(server_id, None)
        self._states.pop(server_id, None)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop(self) -> None:
        self._stopping = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _supervise(self, target: AgentTarget) -> None:
        state = self._states[target.server_id]
        while not self._stopping:
            state.connect_attempts += 1
            try:
                await self._connect_once(target, state)
                delay = self.RECONNECT_DELAY
            except asyncio.CancelledError:
                state.connected = False
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                state.last_error = str(e) or type(e).__name__
                delay = self.RETRY_DELAY if not state.connected else self.RECONNECT_DELAY
                logger.warning(f"Agent {target.name} status channel error: {state.last_error}")
            if state.connected:
                logger.info(f"Agent {target.name} status channel closed")
            state.connected = False
            await asyncio.sleep(delay)

    async def _connect_once(self, target: AgentTarget, state: AgentConnectionState) -> None:
        url = self.client.ws_url(target, self.STATUS_PATH)
        ssl = False if target.skip_ssl_verification else True
        async with self._get_session().ws_connect(
            url,
            headers=self.client.auth_headers(target),
            heartbeat=self.HEARTBEAT,
            timeout=aiohttp.ClientWSTimeout(ws_receive=self.READ_TIMEOUT, ws_close=self.HANDSHAKE_TIMEOUT),
            ssl=ssl,
        ) as ws:
            state.connected = True
            state.last_error = None
            state.last_connected_at = datetime.now(timezone.utc)
            logger.info(f"Agent {target.name} status channel connected")
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._dispatch(target, state, msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    state.last_error = str(ws.exception() or "websocket error")
                    break

    async def _dispatch(self, target: AgentTarget, state: AgentConnectionState, raw: str) -> None:
        try:
            event = json.loads(raw)
        except ValueError:
            logger.debug(f"Agent {target.name} sent non-JSON frame")
            return
        if not isinstance(event, dict) or event.get("type") not in EVENT_TYPES:
            return
        event["server_id"] = target.server_id
        state.events_received += 1
        state.last_event_at = datetime.now(timezone.utc)
        try:
            await self.publish(event)
        except Exception as e:
            logger.error(f"Failed to publish agent event from {target.name}: {e}", exc_info=True)
