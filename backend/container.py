# container.py — Composition root
# Every process-wide collaborator (crypto key, revocation cache, audit
# outbox, agent fabric, subscription hub, operation runner, pollers) is
# built here once and handed to consumers. Routers reach it through the
# get_container dependency; nothing else holds global state.

import logging
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.requests import HTTPConnection

from agent_client import AgentClient, AgentSupervisor, AgentTarget
from config import Settings
from crypto import Crypto
from file_logger import AuditOutbox, JSONLFileLogger
from image_updates import ImageUpdatePoller
from models import Server
from operations import OPERATIONS_STREAM, OperationRunner, RetentionTask
from revocation import RevocationCache
from security_audit import SECURITY_STREAM
from subscription_hub import DatabasePermissionChecker, SubscriptionHub

logger = logging.getLogger("berth.container")


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker,
        agent_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.crypto = Crypto(settings.encryption_secret)
        self.revocations = RevocationCache()

        self.outbox = AuditOutbox()
        if settings.operation_log_to_file:
            self.outbox.register(
                JSONLFileLogger(settings.log_dir, OPERATIONS_STREAM, settings.file_log_queue_size)
            )
        if settings.security_audit_log_to_file:
            self.outbox.register(
                JSONLFileLogger(settings.log_dir, SECURITY_STREAM, settings.file_log_queue_size)
            )

        self.agents = AgentClient(self.crypto, transport=agent_transport)
        self.permissions = DatabasePermissionChecker(session_factory)
        self.hub = SubscriptionHub(self.permissions)
        self.supervisor = AgentSupervisor(self.agents, self.hub.publish)
        self.operations = OperationRunner(
            session_factory, self.agents, self.hub, settings, self.outbox, self.crypto
        )
        self.image_poller = ImageUpdatePoller(
            session_factory,
            self.agents,
            self.crypto,
            settings.image_update_check_interval.total_seconds(),
            settings.image_update_check_disabled_registries,
            enabled=settings.image_update_check_enabled,
        )
        self.retention = RetentionTask(session_factory, settings.operation_log_retention_days)
        self.started = False

    async def _active_targets(self) -> List[AgentTarget]:
        async with self.session_factory() as db:
            servers = (
                await db.execute(select(Server).where(Server.is_active.is_(True)))
            ).scalars().all()
            return [AgentTarget.from_server(s) for s in servers]

    async def start(self, supervise_agents: bool = True) -> None:
        self.outbox.start()
        await self.operations.recover()
        if supervise_agents:
            for target in await self._active_targets():
                self.supervisor.watch(target)
        self.image_poller.start()
        self.retention.start()
        self.started = True
        logger.info("Service container started")

    async def stop(self) -> None:
        await self.image_poller.stop()
        await self.retention.stop()
        await self.operations.stop()
        await self.supervisor.stop()
        await self.hub.close_all()
        await self.agents.aclose()
        await self.outbox.stop()
        self.started = False
        logger.info("Service container stopped")

    def server_changed(self, server: Server) -> None:
        """Re-point supervision after a server is created, edited or re-keyed."""
        self.permissions.invalidate()
        if not self.started:
            return
        if server.is_active:
            self.supervisor.watch(AgentTarget.from_server(server))

    async def server_removed(self, server_id: int) -> None:
        self.permissions.invalidate()
        await self.supervisor.unwatch(server_id)

    def health(self) -> Dict[str, Any]:
        return {
            "connected_agents": self.supervisor.connected_count,
            "hub_clients": self.hub.client_count,
            "active_operations": self.operations.active_count,
        }


def get_container(conn: HTTPConnection) -> ServiceContainer:
    return conn.app.state.container
