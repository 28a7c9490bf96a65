# subscription_hub.py — Client WebSocket sessions and permission-filtered fan-out
# Clients subscribe to (resource, server_id, stack_name?) keys. Agent events
# are routed by key and every delivery is re-authorized against the event's
# own stack. Each connection has a bounded queue; a full queue drops the
# connection so a slow reader never stalls the producer.

import time
import uuid
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from api_keys import APIKeyService
from rbac import RBACService, PERM_STACKS_READ, PERM_STACKS_MANAGE

logger = logging.getLogger("berth.hub")

QUEUE_SIZE = 256

RESOURCE_STACK_STATUS = "stack_status"
RESOURCE_OPERATIONS = "operations"
RESOURCE_LOGS = "logs"
RESOURCES = frozenset({RESOURCE_STACK_STATUS, RESOURCE_OPERATIONS, RESOURCE_LOGS})

# agent event type -> hub resource
EVENT_RESOURCES = {
    "container_status": RESOURCE_STACK_STATUS,
    "stack_status": RESOURCE_STACK_STATUS,
    "operation_progress": RESOURCE_OPERATIONS,
}

RESOURCE_PERMISSIONS = {
    RESOURCE_STACK_STATUS: PERM_STACKS_READ,
    RESOURCE_LOGS: PERM_STACKS_READ,
    RESOURCE_OPERATIONS: PERM_STACKS_MANAGE,
}


class SubscriptionDenied(Exception):
    pass


@dataclass(frozen=True)
class SubscriptionKey:
    resource: str
    server_id: int
    scope: Optional[str] = None  # stack name, or an operation id for operation streams


# ============================================================
# AUTHORIZATION
# ============================================================

class PermissionChecker:
    """What the hub needs to know about a subscriber."""

    async def can_access_server(self, user, server_id: int) -> bool:
        raise NotImplementedError

    async def can_stack(self, user, server_id: int, stack_name: str, permission: str) -> bool:
        raise NotImplementedError

    async def can_any_stack(self, user, server_id: int, permission: str) -> bool:
        raise NotImplementedError


class DatabasePermissionChecker(PermissionChecker):
    """RBAC (and API-key scope) answers with a short TTL cache."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.ttl = ttl
        self.clock = clock
        self._cache: Dict[Tuple, Tuple[float, bool]] = {}
        self._lock = threading.Lock()

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    async def _cached(self, key: Tuple, compute: Callable[[], Awaitable[bool]]) -> bool:
        now = self.clock()
        with self._lock:
            hit = self._cache.get(key)
        if hit is not None and hit[0] > now:
            return hit[1]
        value = await compute()
        with self._lock:
            self._cache[key] = (now + self.ttl, value)
        return value

    @staticmethod
    def _principal(user) -> Tuple[int, Optional[int]]:
        return user.id, getattr(user, "api_key_id", None)

    async def can_access_server(self, user, server_id: int) -> bool:
        user_id, key_id = self._principal(user)

        async def compute() -> bool:
            async with self.session_factory() as db:
                if not await RBACService(db).can_access_server(user_id, server_id):
                    return False
                if key_id is not None:
                    return await APIKeyService(db).scope_covers_server(key_id, server_id)
                return True

        return await self._cached(("server", user_id, key_id, server_id), compute)

    async def can_stack(self, user, server_id: int, stack_name: str, permission: str) -> bool:
        user_id, key_id = self._principal(user)

        async def compute() -> bool:
            async with self.session_factory() as db:
                if not await RBACService(db).user_has_stack_permission(
                    user_id, server_id, stack_name, permission
                ):
                    return False
                if key_id is not None:
                    return await APIKeyService(db).scope_allows(key_id, permission, server_id, stack_name)
                return True

        return await self._cached(("stack", user_id, key_id, server_id, stack_name, permission), compute)

    async def can_any_stack(self, user, server_id: int, permission: str) -> bool:
        user_id, key_id = self._principal(user)

        async def compute() -> bool:
            async with self.session_factory() as db:
                if not await RBACService(db).user_has_any_stack_permission(user_id, server_id, permission):
                    return False
                if key_id is not None:
                    return bool(await APIKeyService(db).scope_patterns(key_id, permission, server_id))
                return True

        return await self._cached(("any", user_id, key_id, server_id, permission), compute)


# ============================================================
# CONNECTIONS
# ============================================================

class UserConnection:
    def __init__(self, user, queue_size: int = QUEUE_SIZE):
        self.id = uuid.uuid4().hex
        self.user = user
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.subscriptions: Set[SubscriptionKey] = set()
        self.closed = False
        self.close_reason: Optional[str] = None

    def offer(self, event: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def close(self, reason: str = "closed") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        # Make room for the sentinel so a blocked reader wakes up
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self.queue.put_nowait(None)

    async def next_event(self) -> Optional[Dict[str, Any]]:
        """Next queued event, or None once the connection is closed."""
        if self.closed and self.queue.empty():
            return None
        return await self.queue.get()


# ============================================================
# HUB
# ============================================================

def _event_stack(event: Dict[str, Any]) -> Optional[str]:
    name = event.get("stack_name")
    if not name and isinstance(event.get("data"), dict):
        name = event["data"].get("stack_name")
    return name or None


class SubscriptionHub:
    def __init__(self, checker: PermissionChecker, queue_size: int = QUEUE_SIZE):
        self.checker = checker
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._connections: Dict[str, UserConnection] = {}
        # copy-on-publish: values are replaced, never mutated in place
        self._subscribers: Dict[SubscriptionKey, Tuple[UserConnection, ...]] = {}
        self.dropped = 0

    @property
    def client_count(self) -> int:
        return len(self._connections)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "clients": len(self._connections),
                "subscriptions": sum(len(v) for v in self._subscribers.values()),
                "dropped": self.dropped,
            }

    def register(self, user) -> UserConnection:
        conn = UserConnection(user, self.queue_size)
        with self._lock:
            self._connections[conn.id] = conn
        logger.info(f"Hub client {conn.id[:8]} registered for user {user.id}")
        return conn

    def unregister(self, conn: UserConnection, reason: str = "closed") -> None:
        with self._lock:
            self._connections.pop(conn.id, None)
            for key in list(conn.subscriptions):
                self._remove_locked(key, conn)
            conn.subscriptions.clear()
        conn.close(reason)

    def _add_locked(self, key: SubscriptionKey, conn: UserConnection) -> None:
        current = self._subscribers.get(key, ())
        if conn not in current:
            self._subscribers[key] = current + (conn,)
        conn.subscriptions.add(key)

    def _remove_locked(self, key: SubscriptionKey, conn: UserConnection) -> None:
        remaining = tuple(c for c in self._subscribers.get(key, ()) if c is not conn)
        if remaining:
            self._subscribers[key] = remaining
        else:
            self._subscribers.pop(key, None)

    async def subscribe(
        self, conn: UserConnection, resource: str, server_id: Any, stack_name: Optional[str] = None
    ) -> SubscriptionKey:
        if resource not in RESOURCES:
            raise SubscriptionDenied(f"unknown resource '{resource}'")
        try:
            server_id = int(server_id)
        except (TypeError, ValueError):
            raise SubscriptionDenied("server_id is required")
        stack_name = stack_name or None
        user = conn.user

        if not await self.checker.can_access_server(user, server_id):
            raise SubscriptionDenied("access to server denied")
        permission = RESOURCE_PERMISSIONS[resource]
        if resource == RESOURCE_OPERATIONS:
            allowed = await self.checker.can_any_stack(user, server_id, permission)
        elif stack_name:
            allowed = await self.checker.can_stack(user, server_id, stack_name, permission)
        else:
            allowed = await self.checker.can_any_stack(user, server_id, permission)
        if not allowed:
            raise SubscriptionDenied(f"permission '{permission}' required")

        key = SubscriptionKey(resource, server_id, stack_name)
        with self._lock:
            self._add_locked(key, conn)
        logger.debug(f"Hub client {conn.id[:8]} subscribed to {key}")
        return key

    def attach(self, conn: UserConnection, key: SubscriptionKey) -> None:
        """Subscribe without checks; the caller has already authorized."""
        with self._lock:
            self._add_locked(key, conn)

    def unsubscribe(
        self, conn: UserConnection, resource: str, server_id: Any, stack_name: Optional[str] = None
    ) -> bool:
        try:
            key = SubscriptionKey(resource, int(server_id), stack_name or None)
        except (TypeError, ValueError):
            return False
        with self._lock:
            if key not in conn.subscriptions:
                return False
            conn.subscriptions.discard(key)
            self._remove_locked(key, conn)
        return True

    async def handle_client_message(self, conn: UserConnection, message: Any) -> Dict[str, Any]:
        """Apply one client frame; the result is the reply frame."""
        if not isinstance(message, dict):
            return {"type": "error", "error": "invalid message"}
        kind = message.get("type")
        resource = message.get("resource")
        server_id = message.get("server_id")
        stack_name = message.get("stack_name")
        if kind == "subscribe":
            try:
                await self.subscribe(conn, resource, server_id, stack_name)
            except SubscriptionDenied as e:
                return {"type": "error", "error": str(e), "resource": resource, "server_id": server_id}
            return {"type": "subscribed", "resource": resource, "server_id": server_id, "stack_name": stack_name}
        if kind == "unsubscribe":
            self.unsubscribe(conn, resource, server_id, stack_name)
            return {"type": "unsubscribed", "resource": resource, "server_id": server_id, "stack_name": stack_name}
        if kind == "ping":
            return {"type": "pong"}
        return {"type": "error", "error": f"unknown message type '{kind}'"}

    def reply(self, conn: UserConnection, frame: Dict[str, Any]) -> None:
        """Queue a reply to a client frame; a full queue drops the client like any other event."""
        self._deliver(conn, frame)

    def _deliver(self, conn: UserConnection, event: Dict[str, Any]) -> None:
        if conn.offer(event):
            return
        if not conn.closed:
            self.dropped += 1
            logger.warning(f"Hub client {conn.id[:8]} dropped: send queue full")
            self.unregister(conn, reason="slow_consumer")

    async def _fan_out(
        self,
        keys: List[SubscriptionKey],
        event: Dict[str, Any],
        permission: str,
        server_id: int,
        stack_name: Optional[str],
    ) -> int:
        with self._lock:
            targets: List[UserConnection] = []
            for key in keys:
                for conn in self._subscribers.get(key, ()):
                    if conn not in targets:
                        targets.append(conn)
        delivered = 0
        for conn in targets:
            if conn.closed:
                continue
            if stack_name:
                allowed = await self.checker.can_stack(conn.user, server_id, stack_name, permission)
            else:
                allowed = await self.checker.can_any_stack(conn.user, server_id, permission)
            if not allowed:
                continue
            self._deliver(conn, event)
            delivered += 1
        return delivered

    async def publish(self, event: Dict[str, Any]) -> int:
        """Route an agent event; returns how many connections received it."""
        resource = EVENT_RESOURCES.get(event.get("type"))
        server_id = event.get("server_id")
        if resource is None or server_id is None:
            return 0
        stack_name = _event_stack(event)
        keys = [SubscriptionKey(resource, server_id, None)]
        if stack_name:
            keys.append(SubscriptionKey(resource, server_id, stack_name))
        if resource == RESOURCE_STACK_STATUS and stack_name:
            # log tails follow the same stacks
            keys.append(SubscriptionKey(RESOURCE_LOGS, server_id, stack_name))
        return await self._fan_out(keys, event, RESOURCE_PERMISSIONS[resource], server_id, stack_name)

    async def publish_operation(
        self, server_id: int, stack_name: str, operation_id: str, frame: Dict[str, Any]
    ) -> int:
        event = {
            "type": "operation_progress",
            "server_id": server_id,
            "stack_name": stack_name,
            "operation_id": operation_id,
            "data": frame,
        }
        keys = [
            SubscriptionKey(RESOURCE_OPERATIONS, server_id, None),
            SubscriptionKey(RESOURCE_OPERATIONS, server_id, stack_name),
            SubscriptionKey(RESOURCE_OPERATIONS, server_id, operation_id),
        ]
        return await self._fan_out(keys, event, PERM_STACKS_MANAGE, server_id, stack_name)

    async def close_all(self) -> None:
        with self._lock:
            conns = list(self._connections.values())
        for conn in conns:
            self.unregister(conn, reason="shutdown")
        logger.info(f"Hub closed {len(conns)} client connections")
