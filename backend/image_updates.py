# image_updates.py — Image digest polling and live reconciliation
# A single background task asks every active agent to compare running
# image digests with their registries (POST /images/check-updates, 5 min
# deadline), upserts one row per (server, stack, container) and removes
# rows for containers the agent no longer reports.
# Reads overlay each row with the container's live digest from GET /stacks,
# so a finished pull never leaves a stale "update available" behind. The
# overlay is never written back; the next poll does that.

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agent_client import AgentClient, AgentError
from crypto import Crypto, CryptoError
from models import ContainerImageUpdate, Server, utcnow, as_utc
from registry import RegistryService, normalize_registry_url

logger = logging.getLogger("berth.images")


def parse_disabled_registries(values: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for value in values or []:
        normalized = normalize_registry_url(value)
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


def live_digests(stacks_body: Any) -> Dict[Tuple[str, str], str]:
    """(stack, container) -> digest from the agent's stack inventory."""
    digests: Dict[Tuple[str, str], str] = {}
    stacks = stacks_body.get("stacks") if isinstance(stacks_body, dict) else stacks_body
    for stack in stacks or []:
        for service in stack.get("services") or []:
            for container in service.get("containers") or []:
                repo_digests = container.get("repo_digests") or []
                if not repo_digests:
                    continue
                ref = repo_digests[0]
                if "@" in ref:
                    digests[(stack.get("name", ""), container.get("name", ""))] = ref.split("@", 1)[1]
    return digests


def update_to_dict(row: ContainerImageUpdate, server_name: Optional[str] = None) -> Dict[str, Any]:
    body = {
        "id": row.id,
        "server_id": row.server_id,
        "stack_name": row.stack_name,
        "container_name": row.container_name,
        "current_image_name": row.current_image_name,
        "current_repo_digest": row.current_repo_digest,
        "latest_repo_digest": row.latest_repo_digest,
        "update_available": row.update_available,
        "last_checked_at": as_utc(row.last_checked_at).isoformat() if row.last_checked_at else None,
        "check_error": row.check_error,
    }
    if server_name is not None:
        body["server_name"] = server_name
    return body


class ImageUpdateService:
    def __init__(
        self,
        db: AsyncSession,
        agents: AgentClient,
        crypto: Crypto,
        disabled_registries: Optional[List[str]] = None,
    ):
        self.db = db
        self.agents = agents
        self.crypto = crypto
        self.disabled_registries = parse_disabled_registries(disabled_registries or [])

    async def _agent_credentials(self, server_id: int) -> List[Dict[str, str]]:
        registry = RegistryService(self.db, self.crypto)
        creds = []
        for cred in await registry.list_credentials(server_id):
            try:
                creds.append(registry.to_agent_format(cred))
            except CryptoError as e:
                logger.error(f"Could not decrypt registry credential {cred.id}: {e}")
        return creds

    async def check_server(self, server: Server) -> Dict[str, int]:
        payload = {
            "registry_credentials": await self._agent_credentials(server.id),
            "disabled_registries": self.disabled_registries,
        }
        body = await self.agents.check_image_updates(server, payload)
        results = []
        skipped = 0
        for result in body.get("results") or []:
            # the agent could not determine a digest and did not say why
            if not result.get("error") and not result.get("latest_repo_digest"):
                skipped += 1
                continue
            results.append(result)
        await self._upsert(server.id, results)
        removed = await self._cleanup(server.id, results)
        await self.db.commit()
        logger.info(
            f"Image check on {server.name}: {len(results)} result(s), {skipped} skipped, {removed} stale removed"
        )
        return {"processed": len(results), "skipped": skipped, "removed": removed}

    async def _existing(self, server_id: int) -> Dict[Tuple[str, str], ContainerImageUpdate]:
        stmt = select(ContainerImageUpdate).where(ContainerImageUpdate.server_id == server_id)
        rows = (await self.db.execute(stmt)).scalars().all()
        return {(r.stack_name, r.container_name): r for r in rows}

    async def _upsert(self, server_id: int, results: List[Dict[str, Any]]) -> None:
        existing = await self._existing(server_id)
        now = utcnow()
        for result in results:
            error = result.get("error") or ""
            current = result.get("current_repo_digest") or ""
            latest = result.get("latest_repo_digest") or ""
            values = {
                "current_image_name": result.get("image_name") or "",
                "current_repo_digest": current,
                "latest_repo_digest": latest,
                "update_available": bool(not error and current and latest and current != latest),
                "last_checked_at": now,
                "check_error": error,
            }
            key = (result.get("stack_name") or "", result.get("container_name") or "")
            row = existing.get(key)
            if row is None:
                row = ContainerImageUpdate(server_id=server_id, stack_name=key[0], container_name=key[1])
                self.db.add(row)
                existing[key] = row
            for name, value in values.items():
                setattr(row, name, value)
        await self.db.flush()

    async def _cleanup(self, server_id: int, results: List[Dict[str, Any]]) -> int:
        current = {(r.get("stack_name") or "", r.get("container_name") or "") for r in results}
        removed = 0
        for key, row in (await self._existing(server_id)).items():
            if key not in current:
                await self.db.delete(row)
                removed += 1
        await self.db.flush()
        return removed

    async def available_updates(self, server_ids: List[int]) -> List[Tuple[ContainerImageUpdate, str]]:
        if not server_ids:
            return []
        stmt = (
            select(ContainerImageUpdate, Server.name)
            .join(Server, Server.id == ContainerImageUpdate.server_id)
            .where(
                ContainerImageUpdate.update_available.is_(True),
                ContainerImageUpdate.server_id.in_(server_ids),
            )
            .order_by(ContainerImageUpdate.last_checked_at.desc(), ContainerImageUpdate.id)
        )
        return [(row, name) for row, name in (await self.db.execute(stmt)).all()]

    async def server_updates(self, server: Server) -> List[Dict[str, Any]]:
        stmt = (
            select(ContainerImageUpdate)
            .where(ContainerImageUpdate.server_id == server.id)
            .order_by(ContainerImageUpdate.stack_name, ContainerImageUpdate.container_name)
        )
        rows = [update_to_dict(r) for r in (await self.db.execute(stmt)).scalars().all()]
        if not rows:
            return rows
        try:
            digests = live_digests(await self.agents.request_json(server, "GET", "/stacks"))
        except AgentError as e:
            logger.warning(f"Live digest lookup on {server.name} failed, returning stored rows: {e}")
            return rows
        for row in rows:
            live = digests.get((row["stack_name"], row["container_name"]))
            if live is None:
                continue
            row["current_repo_digest"] = live
            row["update_available"] = bool(row["latest_repo_digest"]) and live != row["latest_repo_digest"] \
                and not row["check_error"]
        return rows


class ImageUpdatePoller:
    """Background loop; runs only when image update checks are enabled."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        agents: AgentClient,
        crypto: Crypto,
        interval_seconds: float,
        disabled_registries: Optional[List[str]] = None,
        enabled: bool = True,
    ):
        self.session_factory = session_factory
        self.agents = agents
        self.crypto = crypto
        self.interval = interval_seconds
        self.disabled_registries = parse_disabled_registries(disabled_registries or [])
        self.enabled = enabled
        self.last_run_at = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def run_once(self) -> Dict[int, Optional[Dict[str, int]]]:
        outcome: Dict[int, Optional[Dict[str, int]]] = {}
        async with self.session_factory() as db:
            servers = (
                await db.execute(select(Server).where(Server.is_active.is_(True)).order_by(Server.id))
            ).scalars().all()
            service = ImageUpdateService(db, self.agents, self.crypto, self.disabled_registries)
            for server in servers:
                try:
                    outcome[server.id] = await service.check_server(server)
                except AgentError as e:
                    await db.rollback()
                    outcome[server.id] = None
                    logger.warning(f"Image check on {server.name} failed: {e}")
        self.last_run_at = utcnow()
        return outcome

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Image update poll failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if not self.enabled:
            logger.info("Image update check is disabled via configuration")
            return
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop(), name="image-update-poller")
            logger.info(f"Image update check enabled, interval {self.interval:.0f}s")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
