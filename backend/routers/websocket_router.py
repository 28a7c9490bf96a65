# routers/websocket_router.py — Client WebSockets: stack status, operation streams, terminal
import json
import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from agent_client import AgentError
from auth import CurrentUser, resolve_websocket_user
from container import ServiceContainer, get_container
from errors import APIError
from models import Server
from operations import TERMINAL_COMMAND, FollowerDropped, OperationAuditService
from rbac import PERM_STACKS_MANAGE
from subscription_hub import (
    RESOURCE_OPERATIONS,
    RESOURCE_STACK_STATUS,
    SubscriptionDenied,
    SubscriptionHub,
    SubscriptionKey,
    UserConnection,
)

router = APIRouter(prefix="/ws/api", tags=["WebSocket"])
logger = logging.getLogger("berth.ws")

WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011


async def _authenticate(websocket: WebSocket, container: ServiceContainer) -> Optional[CurrentUser]:
    async with container.session_factory() as db:
        try:
            return await resolve_websocket_user(websocket, db, container)
        except APIError as e:
            await websocket.close(code=WS_POLICY_VIOLATION, reason=e.message)
            return None


async def _load_server(websocket: WebSocket, container: ServiceContainer, user: CurrentUser, server_id: int) -> Optional[Server]:
    async with container.session_factory() as db:
        server = await db.get(Server, server_id)
    if server is None or not server.is_active or not await container.permissions.can_access_server(user, server_id):
        await websocket.close(code=WS_POLICY_VIOLATION, reason="Server not found")
        return None
    return server


async def _pump(websocket: WebSocket, hub: SubscriptionHub, conn: UserConnection) -> None:
    """Writer drains the connection queue; reader applies client frames.
    Replies go through the same queue so only the writer touches the socket."""

    async def writer():
        while True:
            event = await conn.next_event()
            if event is None:
                return
            await websocket.send_json(event)

    async def reader():
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                hub.reply(conn, {"type": "error", "error": "invalid JSON"})
                continue
            hub.reply(conn, await hub.handle_client_message(conn, message))

    tasks = [asyncio.create_task(writer()), asyncio.create_task(reader())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(f"WebSocket client {conn.id[:8]} failed: {exc}")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        reason = conn.close_reason or "disconnected"
        hub.unregister(conn, reason=reason)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close(code=WS_POLICY_VIOLATION if reason == "slow_consumer" else 1000)


# ============================================================
# STACK STATUS
# ============================================================

@router.websocket("/stack-status/{server_id}")
async def stack_status_stream(websocket: WebSocket, server_id: int):
    """Container and stack status events for one server, filtered to the caller's stacks."""
    container = get_container(websocket)
    user = await _authenticate(websocket, container)
    if user is None:
        return
    if await _load_server(websocket, container, user, server_id) is None:
        return
    conn = container.hub.register(user)
    try:
        await container.hub.subscribe(conn, RESOURCE_STACK_STATUS, server_id)
    except SubscriptionDenied as e:
        container.hub.unregister(conn, reason="denied")
        await websocket.close(code=WS_POLICY_VIOLATION, reason=str(e))
        return
    await websocket.accept()
    container.hub.reply(conn, {"type": "subscribed", "resource": RESOURCE_STACK_STATUS, "server_id": server_id, "stack_name": None})
    await _pump(websocket, container.hub, conn)


# ============================================================
# OPERATION STREAMS
# ============================================================

@router.websocket("/servers/{server_id}/stacks/{stack_name}/operations")
async def stack_operations_stream(websocket: WebSocket, server_id: int, stack_name: str):
    """Every operation frame for one stack, live only."""
    container = get_container(websocket)
    user = await _authenticate(websocket, container)
    if user is None:
        return
    if await _load_server(websocket, container, user, server_id) is None:
        return
    if not await container.permissions.can_stack(user, server_id, stack_name, PERM_STACKS_MANAGE):
        await websocket.close(code=WS_POLICY_VIOLATION, reason="Insufficient permissions")
        return
    conn = container.hub.register(user)
    container.hub.attach(conn, SubscriptionKey(RESOURCE_OPERATIONS, server_id, stack_name))
    await websocket.accept()
    await _pump(websocket, container.hub, conn)


@router.websocket("/servers/{server_id}/stacks/{stack_name}/operations/{operation_id}")
async def operation_stream(websocket: WebSocket, server_id: int, stack_name: str, operation_id: str):
    """Backlog plus live frames of one operation; finished operations replay and close."""
    container = get_container(websocket)
    user = await _authenticate(websocket, container)
    if user is None:
        return
    async with container.session_factory() as db:
        row = await OperationAuditService(db).find(operation_id)
    if row is None or row.server_id != server_id or row.stack_name != stack_name:
        await websocket.close(code=WS_POLICY_VIOLATION, reason="Operation not found")
        return
    if not await container.permissions.can_stack(user, server_id, stack_name, PERM_STACKS_MANAGE):
        await websocket.close(code=WS_POLICY_VIOLATION, reason="Insufficient permissions")
        return
    await websocket.accept()
    try:
        async for frame in container.operations.follow(operation_id):
            await websocket.send_json(frame)
    except WebSocketDisconnect:
        # the operation keeps running server-side
        return
    except FollowerDropped:
        logger.warning(f"Operation stream {operation_id} closed for user {user.id}: slow consumer")
        await websocket.close(code=WS_POLICY_VIOLATION, reason="slow_consumer")
        return
    await websocket.close(code=1000)


# ============================================================
# TERMINAL
# ============================================================

class TerminalGate:
    """Checks client frames before they reach the agent.

    terminal_start binds the session to a stack and opens its operation log;
    input, resize and close frames are only forwarded once a session exists.
    """

    SESSION_FRAMES = frozenset({"terminal_input", "terminal_resize", "terminal_close"})

    def __init__(self, container: ServiceContainer, user: CurrentUser, server_id: int):
        self.container = container
        self.user = user
        self.server_id = server_id
        self.stack_name: Optional[str] = None
        self.log_id: Optional[int] = None

    async def _allowed(self, stack_name: str) -> bool:
        return await self.container.permissions.can_stack(
            self.user, self.server_id, stack_name, PERM_STACKS_MANAGE
        )

    async def check(self, raw: str) -> Optional[str]:
        """None when the frame may be forwarded, otherwise the error to send back."""
        try:
            message: Dict[str, Any] = json.loads(raw)
        except ValueError:
            return "Invalid message format"
        if not isinstance(message, dict):
            return "Invalid message format"
        kind = message.get("type")

        if kind == "terminal_start":
            stack_name = message.get("stack_name") or ""
            if not stack_name:
                return "stack_name is required for terminal access"
            if not await self._allowed(stack_name):
                return f"Insufficient permissions: stacks.manage required for stack '{stack_name}'"
            self.stack_name = stack_name
            if self.log_id is None:
                await self._open_log(message)
            return None

        if kind in self.SESSION_FRAMES:
            if not self.stack_name:
                return "No active terminal session"
            if not await self._allowed(self.stack_name):
                return f"Insufficient permissions: stacks.manage required for stack '{self.stack_name}'"
            return None

        return "Unknown message type"

    async def _open_log(self, message: Dict[str, Any]) -> None:
        target = message.get("service_name") or ""
        if message.get("container_name"):
            target = f"{target}/{message['container_name']}"
        async with self.container.session_factory() as db:
            row = await OperationAuditService(db, self.container.outbox).start(
                self.user.id, self.server_id, self.stack_name, TERMINAL_COMMAND, options=[target]
            )
        self.log_id = row.id

    async def close(self) -> None:
        if self.log_id is None:
            return
        async with self.container.session_factory() as db:
            await OperationAuditService(db, self.container.outbox).finish(self.log_id, True, 0)


def _error_frame(message: str) -> Dict[str, Any]:
    return {"type": "error", "error": message}


@router.websocket("/servers/{server_id}/terminal")
async def terminal_proxy(websocket: WebSocket, server_id: int):
    container = get_container(websocket)
    user = await _authenticate(websocket, container)
    if user is None:
        return
    server = await _load_server(websocket, container, user, server_id)
    if server is None:
        return

    gate = TerminalGate(container, user, server_id)
    try:
        async with container.agents.terminal(server) as agent_ws:
            await websocket.accept()

            async def client_to_agent():
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        return
                    text = message.get("text")
                    if text is not None:
                        error = await gate.check(text)
                        if error:
                            await websocket.send_json(_error_frame(error))
                            continue
                        await agent_ws.send_str(text)
                    elif message.get("bytes") is not None and gate.stack_name:
                        await agent_ws.send_bytes(message["bytes"])

            async def agent_to_client():
                async for msg in agent_ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await websocket.send_text(msg.data)
                    elif msg.type == aiohttp.WSMsgType.BINARY:
                        await websocket.send_bytes(msg.data)
                    else:
                        return

            tasks = [asyncio.create_task(client_to_agent()), asyncio.create_task(agent_to_client())]
            try:
                await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
    except AgentError as e:
        logger.warning(f"Terminal proxy to {server.name} failed: {e}")
        if websocket.client_state == WebSocketState.CONNECTING:
            await websocket.close(code=WS_INTERNAL_ERROR, reason="Failed to connect to agent terminal")
            return
    finally:
        await gate.close()
    if websocket.client_state == WebSocketState.CONNECTED:
        await websocket.close(code=1000)
