# tests/test_subscription_hub.py — Subscriptions, permission-filtered routing and slow consumers
from types import SimpleNamespace

import pytest

from rbac import PERM_STACKS_MANAGE, PERM_STACKS_READ
from subscription_hub import (
    DatabasePermissionChecker, PermissionChecker, SubscriptionDenied, SubscriptionHub,
)
from tests.conftest import grant, make_user, _role


class StaticChecker(PermissionChecker):
    """user id -> {server_id: {permission: [stack names, or "*"]}}"""

    def __init__(self, grants):
        self.grants = grants

    def _stacks(self, user, server_id, permission):
        return self.grants.get(user.id, {}).get(server_id, {}).get(permission, [])

    async def can_access_server(self, user, server_id):
        return server_id in self.grants.get(user.id, {})

    async def can_stack(self, user, server_id, stack_name, permission):
        stacks = self._stacks(user, server_id, permission)
        return "*" in stacks or stack_name in stacks

    async def can_any_stack(self, user, server_id, permission):
        return bool(self._stacks(user, server_id, permission))


ALICE = SimpleNamespace(id=1)
BOB = SimpleNamespace(id=2)


def _hub(queue_size=16):
    checker = StaticChecker({
        1: {10: {PERM_STACKS_READ: ["*"], PERM_STACKS_MANAGE: ["*"]}},
        2: {10: {PERM_STACKS_READ: ["web"]}},
    })
    return SubscriptionHub(checker, queue_size=queue_size)


@pytest.mark.asyncio
class TestSubscribe:
    async def test_subscribe_and_deny(self):
        hub = _hub()
        alice, bob = hub.register(ALICE), hub.register(BOB)

        await hub.subscribe(alice, "stack_status", 10)
        await hub.subscribe(bob, "stack_status", "10", "web")
        with pytest.raises(SubscriptionDenied):
            await hub.subscribe(bob, "stack_status", 10, "db")
        with pytest.raises(SubscriptionDenied):
            await hub.subscribe(bob, "operations", 10)
        with pytest.raises(SubscriptionDenied):
            await hub.subscribe(bob, "stack_status", 99)
        with pytest.raises(SubscriptionDenied):
            await hub.subscribe(alice, "metrics", 10)
        assert hub.stats()["subscriptions"] == 2

    async def test_client_messages(self):
        hub = _hub()
        bob = hub.register(BOB)
        assert await hub.handle_client_message(bob, {"type": "ping"}) == {"type": "pong"}
        reply = await hub.handle_client_message(
            bob, {"type": "subscribe", "resource": "logs", "server_id": 10, "stack_name": "web"}
        )
        assert reply["type"] == "subscribed"
        reply = await hub.handle_client_message(
            bob, {"type": "subscribe", "resource": "logs", "server_id": 10, "stack_name": "db"}
        )
        assert reply["type"] == "error"
        reply = await hub.handle_client_message(
            bob, {"type": "unsubscribe", "resource": "logs", "server_id": 10, "stack_name": "web"}
        )
        assert reply["type"] == "unsubscribed"
        assert bob.subscriptions == set()
        assert (await hub.handle_client_message(bob, "hello"))["type"] == "error"
        assert (await hub.handle_client_message(bob, {"type": "dance"}))["type"] == "error"


@pytest.mark.asyncio
class TestPublish:
    async def test_events_filtered_by_stack_permission(self):
        hub = _hub()
        alice, bob = hub.register(ALICE), hub.register(BOB)
        await hub.subscribe(alice, "stack_status", 10)
        await hub.subscribe(bob, "stack_status", 10, "web")

        delivered = await hub.publish({"type": "container_status", "server_id": 10, "stack_name": "db"})
        assert delivered == 1
        delivered = await hub.publish({"type": "stack_status", "server_id": 10, "data": {"stack_name": "web"}})
        assert delivered == 2

        assert (await alice.next_event())["stack_name"] == "db"
        assert (await bob.next_event())["data"]["stack_name"] == "web"
        assert bob.queue.empty()

    async def test_unroutable_events_ignored(self):
        hub = _hub()
        alice = hub.register(ALICE)
        await hub.subscribe(alice, "stack_status", 10)
        assert await hub.publish({"type": "heartbeat", "server_id": 10}) == 0
        assert await hub.publish({"type": "stack_status"}) == 0
        assert await hub.publish({"type": "stack_status", "server_id": 11, "stack_name": "web"}) == 0

    async def test_operation_frames_need_manage(self):
        hub = _hub()
        alice, bob = hub.register(ALICE), hub.register(BOB)
        await hub.subscribe(alice, "operations", 10)
        hub.attach(bob, next(iter(alice.subscriptions)))

        delivered = await hub.publish_operation(10, "web", "op-1", {"type": "stdout", "sequence": 1})
        assert delivered == 1
        event = await alice.next_event()
        assert event["operation_id"] == "op-1"
        assert event["data"]["sequence"] == 1

    async def test_slow_consumer_dropped(self):
        hub = _hub(queue_size=2)
        alice, bob = hub.register(ALICE), hub.register(ALICE)
        await hub.subscribe(alice, "stack_status", 10)
        await hub.subscribe(bob, "stack_status", 10)

        for i in range(2):
            await hub.publish({"type": "stack_status", "server_id": 10, "stack_name": "web", "n": i})
            await bob.next_event()
        await hub.publish({"type": "stack_status", "server_id": 10, "stack_name": "web", "n": 2})

        assert alice.closed
        assert alice.close_reason == "slow_consumer"
        assert await alice.next_event() is None
        assert hub.dropped == 1
        assert hub.client_count == 1
        assert (await bob.next_event())["n"] == 2

    async def test_replies_count_against_the_send_queue(self):
        hub = _hub(queue_size=2)
        alice = hub.register(ALICE)
        for _ in range(2):
            hub.reply(alice, await hub.handle_client_message(alice, {"type": "ping"}))
        assert not alice.closed

        hub.reply(alice, await hub.handle_client_message(alice, {"type": "ping"}))
        assert alice.closed
        assert alice.close_reason == "slow_consumer"
        assert hub.dropped == 1
        assert hub.client_count == 0

    async def test_close_all(self):
        hub = _hub()
        alice = hub.register(ALICE)
        await hub.subscribe(alice, "stack_status", 10)
        await hub.close_all()
        assert alice.close_reason == "shutdown"
        assert hub.stats() == {"clients": 0, "subscriptions": 0, "dropped": 0}


@pytest.mark.asyncio
class TestDatabaseChecker:
    async def test_grants_and_cache(self, db_session, session_factory, test_server):
        now = [0.0]
        checker = DatabasePermissionChecker(session_factory, ttl=30, clock=lambda: now[0])
        user = await make_user(db_session, "viewer1", roles=["viewer"])
        principal = SimpleNamespace(id=user.id, api_key_id=None)

        assert await checker.can_access_server(principal, test_server.id) is False

        await grant(db_session, await _role(db_session, "viewer"), test_server, PERM_STACKS_READ, "web-*")
        # cached answer until the TTL passes
        assert await checker.can_access_server(principal, test_server.id) is False
        now[0] = 31.0
        assert await checker.can_access_server(principal, test_server.id) is True
        assert await checker.can_stack(principal, test_server.id, "web-api", PERM_STACKS_READ) is True
        assert await checker.can_stack(principal, test_server.id, "db", PERM_STACKS_READ) is False

        checker.invalidate()
        assert await checker.can_any_stack(principal, test_server.id, PERM_STACKS_MANAGE) is False
