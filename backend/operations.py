# operations.py — Compose operation pipeline
# start:  OperationLog row (ULID) -> POST agent /stacks/{name}/operations.
#         One operation runs per stack; later ones wait QUEUED in a lane and
#         are dispatched in arrival order as the stack frees up.
# drive:  one background task per operation reads the agent's SSE stream,
#         persists every frame in arrival order with non-decreasing
#         timestamps, fans it out to the hub and to bounded live followers,
#         and closes the log on complete/error/timeout.
# stream: followers get the persisted backlog then the live tail; finished
#         operations are replayed from the database.
# Client disconnects never cancel an operation.

import re
import json
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set, Tuple

from fastapi import Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from ulid import ULID

from agent_client import AgentClient, AgentError, AgentTarget
from compose_engine import ComposeError, ComposeService
from config import Settings
from errors import NotFound
from file_logger import AuditOutbox
from logging_system import log_operation
from models import (
    OperationLog, OperationLogMessage, OperationStatus, MessageType, Server, User, utcnow, as_utc,
)
from rbac import PERM_FILES_WRITE, PERM_STACKS_MANAGE
from registry import RegistryService
from security_audit import SecurityAuditService, SecurityEvent
from subscription_hub import QUEUE_SIZE

logger = logging.getLogger("berth.operations")

OPERATIONS_STREAM = "operations"

COMMANDS = ("up", "down", "start", "stop", "restart", "pull", "create-archive", "extract-archive")
ARCHIVE_COMMANDS = frozenset({"create-archive", "extract-archive"})
CREDENTIAL_COMMANDS = frozenset({"up", "pull"})
TERMINAL_COMMAND = "terminal"
TERMINAL_FRAMES = frozenset({MessageType.COMPLETE.value, MessageType.ERROR.value})
_OPEN_STATUSES = (OperationStatus.QUEUED, OperationStatus.RUNNING)
QUEUE_SLOT_ESTIMATE = timedelta(minutes=2)


class OperationRequest(BaseModel):
    command: str
    options: List[str] = Field(default_factory=list)
    services: List[str] = Field(default_factory=list)

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        if v not in COMMANDS:
            raise ValueError(f"unsupported command '{v}'")
        return v


def required_permission(command: str) -> str:
    return PERM_FILES_WRITE if command in ARCHIVE_COMMANDS else PERM_STACKS_MANAGE


# ============================================================
# SUMMARIES
# ============================================================

def format_service_list(items: List[str]) -> str:
    """``a`` / ``a and b`` / ``a, b and c`` / ``a, b, c and N others``"""
    if not items:
        return ""
    if len(items) == 1:
        return items[0]
    if len(items) <= 4:
        return ", ".join(items[:-1]) + " and " + items[-1]
    return f"{', '.join(items[:3])} and {len(items) - 3} others"


def format_resource_list(kind: str, items: List[str]) -> str:
    if not items:
        return ""
    if len(items) == 1:
        return f"1 {kind} ({items[0]})"
    return f"{len(items)} {kind}s ({format_service_list(items)})"


def _collect(lines: List[str], prefix: str, *suffixes: str) -> List[str]:
    """Ordered unique names from lines like '<prefix><name><suffix>'."""
    names: List[str] = []
    for line in lines:
        if prefix and not line.startswith(prefix):
            continue
        for suffix in suffixes:
            if line.endswith(suffix):
                name = line[len(prefix):len(line) - len(suffix)].strip()
                if name and name not in names:
                    names.append(name)
                break
    return names


class SummaryParser:
    """One-line human summary of a finished operation's output."""

    LAYER_MARKERS = ("Pulling fs layer", "Downloading", "Download complete", "Pull complete", "Extracting")

    def generate(self, command: str, success: bool, exit_code: Optional[int], messages: List[str]) -> str:
        if not success:
            return f"Operation '{command}' failed with exit code {exit_code if exit_code is not None else -1}"
        lines = [m.strip() for m in messages if m and m.strip()]
        handler = getattr(self, f"_summarize_{command}", None)
        if handler is None:
            return f"Operation '{command}' completed successfully"
        return handler(lines)

    def _summarize_pull(self, lines: List[str]) -> str:
        seen: List[str] = []
        pulled: List[str] = []
        layer_activity = False
        for line in lines:
            if line.endswith(" Pulling"):
                name = line[:-len(" Pulling")].strip()
                if name not in seen:
                    seen.append(name)
            if any(marker in line for marker in self.LAYER_MARKERS):
                layer_activity = True
            if line.endswith(" Pulled"):
                name = line[:-len(" Pulled")].strip()
                if layer_activity and name not in pulled:
                    pulled.append(name)
                layer_activity = False
        up_to_date = [s for s in seen if s not in pulled]
        pulled = [s for s in seen if s in pulled]
        if not pulled and not up_to_date:
            return "Images checked"
        if pulled and not up_to_date:
            return f"Pulled new images for {format_service_list(pulled)}"
        if not pulled:
            return "All images up to date"
        return (
            f"Pulled new images for {format_service_list(pulled)}; "
            f"{format_service_list(up_to_date)} already up to date"
        )

    def _summarize_up(self, lines: List[str]) -> str:
        parts = []
        started = _collect(lines, "Container ", " Started")
        networks = _collect(lines, "Network ", " Created")
        volumes = _collect(lines, "Volume ", " Created")
        if started:
            parts.append(f"Started {format_service_list(started)}")
        if networks:
            parts.append(f"created {format_resource_list('network', networks)}")
        if volumes:
            parts.append(f"created {format_resource_list('volume', volumes)}")
        return "; ".join(parts) if parts else "Stack started"

    def _summarize_down(self, lines: List[str]) -> str:
        parts = []
        stopped = _collect(lines, "Container ", " Stopped")
        removed = _collect(lines, "Container ", " Removed")
        networks = _collect(lines, "Network ", " Removed")
        volumes = _collect(lines, "Volume ", " Removed")
        if stopped:
            parts.append(f"Stopped {format_service_list(stopped)}")
        if removed:
            parts.append(f"removed {format_service_list(removed)}")
        if networks:
            parts.append(f"removed {format_resource_list('network', networks)}")
        if volumes:
            parts.append(f"removed {format_resource_list('volume', volumes)}")
        return "; ".join(parts) if parts else "Stack stopped"

    def _summarize_restart(self, lines: List[str]) -> str:
        names = _collect(lines, "Container ", " Restarted", " Started")
        return f"Restarted {format_service_list(names)}" if names else "Containers restarted"

    def _summarize_start(self, lines: List[str]) -> str:
        names = _collect(lines, "Container ", " Started")
        return f"Started {format_service_list(names)}" if names else "Containers started"

    def _summarize_stop(self, lines: List[str]) -> str:
        names = _collect(lines, "Container ", " Stopped")
        return f"Stopped {format_service_list(names)}" if names else "Containers stopped"


# ============================================================
# FRAMES
# ============================================================

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def read_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, str) and value:
        text = _FRACTION_RE.sub(r"\1", value.strip()).replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def parse_timestamp(value: Any) -> datetime:
    return read_timestamp(value) or utcnow()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def normalize_frame(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    kind = raw.get("type")
    if kind not in MessageType._value2member_map_:
        return None
    exit_code = raw.get("exitCode", raw.get("exit_code"))
    data = raw.get("data")
    if data is None:
        data = ""
    elif not isinstance(data, str):
        data = json.dumps(data)
    frame: Dict[str, Any] = {
        "type": kind,
        "data": data,
        "timestamp": _iso(read_timestamp(raw.get("timestamp"))),
    }
    if kind == MessageType.COMPLETE.value:
        frame["success"] = bool(raw.get("success"))
        frame["exit_code"] = int(exit_code) if exit_code is not None else (0 if frame["success"] else 1)
    elif kind == MessageType.ERROR.value:
        frame["success"] = False
        if exit_code is not None:
            frame["exit_code"] = int(exit_code)
    return frame


def parse_stream_line(line: str) -> Optional[Dict[str, Any]]:
    """``data: {json}`` SSE line or bare NDJSON line -> normalized frame; anything else -> None."""
    line = line.strip()
    if line.startswith("data:"):
        payload = line[5:].strip()
    elif line.startswith("{"):
        payload = line
    else:
        return None
    if not payload:
        return None
    try:
        raw = json.loads(payload)
    except ValueError:
        logger.debug(f"Skipping undecodable stream line: {payload[:80]}")
        return None
    return normalize_frame(raw) if isinstance(raw, dict) else None


def message_to_frame(row: OperationLogMessage) -> Dict[str, Any]:
    frame: Dict[str, Any] = {
        "type": row.message_type,
        "data": row.message_data,
        "timestamp": as_utc(row.timestamp).isoformat() if row.timestamp else None,
        "sequence_number": row.sequence_number,
    }
    if row.success is not None:
        frame["success"] = row.success
    if row.exit_code is not None:
        frame["exit_code"] = row.exit_code
    return frame


def operation_to_dict(row: OperationLog, messages: Optional[List[OperationLogMessage]] = None) -> Dict[str, Any]:
    body = {
        "id": row.id,
        "operation_id": row.operation_id,
        "user_id": row.user_id,
        "server_id": row.server_id,
        "stack_name": row.stack_name,
        "command": row.command,
        "options": row.options or [],
        "services": row.services or [],
        "status": row.status.value if row.status else None,
        "start_time": as_utc(row.start_time).isoformat() if row.start_time else None,
        "end_time": as_utc(row.end_time).isoformat() if row.end_time else None,
        "last_message_at": as_utc(row.last_message_at).isoformat() if row.last_message_at else None,
        "success": row.success,
        "exit_code": row.exit_code,
        "duration_ms": row.duration_ms,
        "summary": row.summary,
        "failure_reason": row.failure_reason,
        "queued_at": as_utc(row.queued_at).isoformat() if row.queued_at else None,
        "batch_id": row.batch_id,
        "webhook_id": row.webhook_id,
    }
    if messages is not None:
        body["messages"] = [message_to_frame(m) for m in messages]
    return body


# ============================================================
# PERSISTENCE
# ============================================================

class OperationAuditService:
    def __init__(self, db: AsyncSession, outbox: Optional[AuditOutbox] = None):
        self.db = db
        self.outbox = outbox
        self.summaries = SummaryParser()

    def _publish(self, row: OperationLog) -> None:
        if self.outbox is not None:
            self.outbox.publish(OPERATIONS_STREAM, operation_to_dict(row))

    async def start(
        self,
        user_id: Optional[int],
        server_id: int,
        stack_name: str,
        command: str,
        options: Optional[List[str]] = None,
        services: Optional[List[str]] = None,
        operation_id: Optional[str] = None,
        status: OperationStatus = OperationStatus.RUNNING,
        batch_id: Optional[str] = None,
        webhook_id: Optional[int] = None,
    ) -> OperationLog:
        now = utcnow()
        row = OperationLog(
            user_id=user_id,
            server_id=server_id,
            stack_name=stack_name,
            operation_id=operation_id or str(ULID()),
            command=command,
            options=list(options or []),
            services=list(services or []),
            status=status,
            start_time=now,
            queued_at=now,
            batch_id=batch_id,
            webhook_id=webhook_id,
        )
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        self._publish(row)
        log_operation(row.operation_id, status.value, metadata={"command": command, "stack": stack_name})
        return row

    async def append(self, log_id: int, sequence: int, frame: Dict[str, Any]) -> OperationLogMessage:
        timestamp = parse_timestamp(frame.get("timestamp"))
        message = OperationLogMessage(
            operation_log_id=log_id,
            sequence_number=sequence,
            timestamp=timestamp,
            message_type=frame["type"],
            message_data=frame.get("data") or "",
            exit_code=frame.get("exit_code"),
            success=frame.get("success"),
        )
        self.db.add(message)
        await self.db.execute(
            update(OperationLog).where(OperationLog.id == log_id).values(last_message_at=utcnow())
        )
        await self.db.commit()
        return message

    async def next_sequence(self, log_id: int) -> int:
        stmt = select(func.max(OperationLogMessage.sequence_number)).where(
            OperationLogMessage.operation_log_id == log_id
        )
        return ((await self.db.execute(stmt)).scalar_one_or_none() or 0) + 1

    async def mark_running(self, log_id: int) -> None:
        await self.db.execute(
            update(OperationLog)
            .where(OperationLog.id == log_id)
            .values(status=OperationStatus.RUNNING, start_time=utcnow())
        )
        await self.db.commit()

    async def messages(self, log_id: int) -> List[OperationLogMessage]:
        stmt = (
            select(OperationLogMessage)
            .where(OperationLogMessage.operation_log_id == log_id)
            .order_by(OperationLogMessage.sequence_number)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def finish(
        self,
        log_id: int,
        success: bool,
        exit_code: Optional[int],
        status: Optional[OperationStatus] = None,
        failure_reason: Optional[str] = None,
        end_time: Optional[datetime] = None,
    ) -> Optional[OperationLog]:
        """Close a log once; later calls are no-ops."""
        row = await self.db.get(OperationLog, log_id)
        if row is None or row.end_time is not None:
            return row
        end_time = end_time or utcnow()
        start = as_utc(row.start_time)
        row.end_time = end_time
        row.duration_ms = max(0, int((end_time - start).total_seconds() * 1000)) if start else None
        row.success = success
        row.exit_code = exit_code
        row.failure_reason = failure_reason
        row.status = status or (OperationStatus.COMPLETED if success else OperationStatus.FAILED)
        row.summary = self.summaries.generate(
            row.command, success, exit_code, [m.message_data for m in await self.messages(log_id)]
        )
        await self.db.commit()
        await self.db.refresh(row)
        self._publish(row)
        log_operation(
            row.operation_id,
            row.status.value,
            duration_ms=row.duration_ms,
            metadata={"exit_code": exit_code, "summary": row.summary},
        )
        return row

    async def find(self, operation_id: str) -> Optional[OperationLog]:
        stmt = select(OperationLog).where(OperationLog.operation_id == operation_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get(self, log_id: int, user_id: Optional[int] = None) -> OperationLog:
        row = await self.db.get(OperationLog, log_id)
        if row is None or (user_id is not None and row.user_id != user_id):
            raise NotFound("Operation log not found")
        return row

    async def list_logs(
        self,
        user_id: Optional[int] = None,
        server_id: Optional[int] = None,
        stack_name: Optional[str] = None,
        command: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[OperationLog], int]:
        stmt = select(OperationLog)
        if user_id is not None:
            stmt = stmt.where(OperationLog.user_id == user_id)
        if server_id is not None:
            stmt = stmt.where(OperationLog.server_id == server_id)
        if stack_name:
            stmt = stmt.where(OperationLog.stack_name == stack_name)
        if command:
            stmt = stmt.where(OperationLog.command == command)
        if status:
            stmt = stmt.where(OperationLog.status == OperationStatus(status))
        total = (await self.db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
        stmt = (
            stmt.order_by(OperationLog.start_time.desc(), OperationLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list((await self.db.execute(stmt)).scalars().all()), total

    async def stats(self, user_id: Optional[int] = None) -> Dict[str, int]:
        stmt = select(OperationLog.status, func.count()).group_by(OperationLog.status)
        if user_id is not None:
            stmt = stmt.where(OperationLog.user_id == user_id)
        counts = {s.value: 0 for s in OperationStatus}
        for status, count in (await self.db.execute(stmt)).all():
            counts[status.value] = count
        counts["total"] = sum(counts.values())
        return counts

    async def mark_interrupted(self) -> int:
        """Logs left running by a previous process can never finish."""
        stmt = select(OperationLog.id).where(OperationLog.status == OperationStatus.RUNNING)
        ids = list((await self.db.execute(stmt)).scalars().all())
        for log_id in ids:
            await self.finish(log_id, False, None, OperationStatus.FAILED, failure_reason="interrupted")
        return len(ids)

    async def queued(self) -> List[OperationLog]:
        stmt = (
            select(OperationLog)
            .where(OperationLog.status == OperationStatus.QUEUED)
            .order_by(OperationLog.queued_at, OperationLog.id)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def purge_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        old_ids = select(OperationLog.id).where(
            OperationLog.start_time < cutoff, OperationLog.status.notin_(_OPEN_STATUSES)
        )
        await self.db.execute(
            delete(OperationLogMessage).where(OperationLogMessage.operation_log_id.in_(old_ids))
        )
        result = await self.db.execute(
            delete(OperationLog).where(
                OperationLog.start_time < cutoff, OperationLog.status.notin_(_OPEN_STATUSES)
            )
        )
        await self.db.commit()
        return result.rowcount or 0


# ============================================================
# RUNNER
# ============================================================

class FollowerDropped(Exception):
    """A follower fell too far behind the live stream and was cut off."""


class OperationFollower:
    """Bounded per-follower buffer. One slot is kept free for the end marker."""

    def __init__(self, limit: int = QUEUE_SIZE):
        self.limit = limit
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=limit + 1)
        self.close_reason: Optional[str] = None

    def offer(self, frame: Dict[str, Any]) -> bool:
        if self.close_reason is not None or self.queue.qsize() >= self.limit:
            return False
        self.queue.put_nowait(frame)
        return True

    def finish(self) -> None:
        if self.close_reason is None:
            self.close_reason = "complete"
            self.queue.put_nowait(None)

    def drop(self, reason: str) -> None:
        if self.close_reason is not None:
            return
        while not self.queue.empty():
            self.queue.get_nowait()
        self.close_reason = reason
        self.queue.put_nowait(None)

    async def next(self) -> Optional[Dict[str, Any]]:
        return await self.queue.get()


@dataclass
class ActiveOperation:
    operation_id: str
    log_id: int
    server_id: int
    stack_name: str
    command: str
    user_id: Optional[int] = None
    username: str = ""
    batch_id: Optional[str] = None
    frames: List[Dict[str, Any]] = field(default_factory=list)
    followers: Set[OperationFollower] = field(default_factory=set)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    next_sequence: int = 1
    last_timestamp: Optional[datetime] = None
    success: bool = False

    @property
    def lane_key(self) -> Tuple[int, str]:
        return (self.server_id, self.stack_name)


@dataclass
class StackLane:
    """One operation at a time per stack; the rest wait in arrival order."""

    running: Optional[str] = None
    pending: Deque[str] = field(default_factory=deque)
    failed_batches: Set[str] = field(default_factory=set)

    def claim(self, operation_id: str) -> bool:
        if self.running is None and not self.pending:
            self.running = operation_id
            return True
        self.pending.append(operation_id)
        return False

    def position(self, operation_id: str) -> int:
        """1-based place among waiting operations, 0 when running or unknown."""
        try:
            return self.pending.index(operation_id) + 1
        except ValueError:
            return 0

    def release(self, operation_id: str) -> None:
        if self.running == operation_id:
            self.running = None
        elif operation_id in self.pending:
            self.pending.remove(operation_id)


class OperationRunner:
    """Owns every in-flight and queued operation of this process."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        agents: AgentClient,
        hub,
        settings: Settings,
        outbox: Optional[AuditOutbox] = None,
        crypto=None,
    ):
        self.session_factory = session_factory
        self.agents = agents
        self.hub = hub
        self.settings = settings
        self.outbox = outbox
        self.crypto = crypto if crypto is not None else agents.crypto
        self._active: Dict[str, ActiveOperation] = {}
        self._lanes: Dict[Tuple[int, str], StackLane] = {}
        self._starting: Set[str] = set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    def is_active(self, operation_id: str) -> bool:
        return operation_id in self._active

    def queue_position(self, operation_id: str) -> int:
        state = self._active.get(operation_id)
        lane = self._lanes.get(state.lane_key) if state else None
        return lane.position(operation_id) if lane else 0

    async def _registry_credentials(self, db: AsyncSession, server, stack_name: str) -> List[Dict[str, str]]:
        try:
            content = await ComposeService(self.agents).fetch(server, stack_name)
        except (AgentError, ComposeError) as e:
            logger.warning(f"Could not read compose file for {stack_name}, proceeding without credentials: {e}")
            return []
        creds = await RegistryService(db, self.crypto).credentials_for_stack(server.id, stack_name, content)
        if creds:
            logger.info(f"Attached {len(creds)} registry credential(s) to operation on {stack_name}")
        return creds

    # ---- enqueue ----

    async def start(
        self,
        db: AsyncSession,
        user,
        server,
        stack_name: str,
        body: OperationRequest,
        request: Optional[Request] = None,
        batch_id: Optional[str] = None,
        webhook_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Run now when the stack is idle, otherwise queue behind the operation holding it.

        An idle stack is dispatched inside the request, so agent rejections
        surface to the caller. Queued operations are dispatched in the
        background once the lane frees up.
        """
        operation_id = str(ULID())
        lane = self._lanes.setdefault((server.id, stack_name), StackLane())
        runs_now = lane.claim(operation_id)
        self._starting.add(operation_id)
        status = OperationStatus.RUNNING if runs_now else OperationStatus.QUEUED

        audit = OperationAuditService(db, self.outbox)
        try:
            row = await audit.start(
                user.id, server.id, stack_name, body.command, body.options, body.services,
                operation_id=operation_id, status=status, batch_id=batch_id, webhook_id=webhook_id,
            )
        except BaseException:
            self._starting.discard(operation_id)
            lane.release(operation_id)
            self._advance(lane, (server.id, stack_name))
            raise

        # registered before any further await so followers can attach at once
        state = ActiveOperation(
            row.operation_id, row.id, server.id, stack_name, body.command,
            user_id=user.id, username=user.username, batch_id=batch_id,
        )
        self._active[row.operation_id] = state
        self._starting.discard(operation_id)

        if not runs_now:
            if lane.running == operation_id:
                # the stack freed up while the row was being written
                state.task = asyncio.create_task(self._launch(state), name=f"operation-{operation_id}")
            position = lane.position(operation_id)
            logger.info(f"Operation {operation_id} ({body.command}) queued at position {position} on {stack_name}")
            return {
                "operationId": operation_id,
                "operation_id": operation_id,
                "command": body.command,
                "status": OperationStatus.QUEUED.value,
                "batch_id": batch_id,
                "position_in_queue": position,
                "estimated_start_time": (utcnow() + QUEUE_SLOT_ESTIMATE * max(position - 1, 0)).isoformat(),
            }

        try:
            agent_operation_id = await self._dispatch(db, state, server, body, request)
        except AgentError:
            raise
        except Exception as e:
            await self._abandon(state, str(e) or type(e).__name__)
            raise
        state.task = asyncio.create_task(
            self._drive(state, AgentTarget.from_server(server), agent_operation_id),
            name=f"operation-{operation_id}",
        )
        return {
            "operationId": operation_id,
            "operation_id": operation_id,
            "agent_operation_id": agent_operation_id,
            "command": body.command,
            "status": OperationStatus.RUNNING.value,
            "batch_id": batch_id,
            "position_in_queue": 0,
        }

    async def start_batch(
        self,
        db: AsyncSession,
        user,
        server,
        stack_name: str,
        bodies: List[OperationRequest],
        request: Optional[Request] = None,
        webhook_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Queue several operations on one stack; a failure cancels the rest of the batch."""
        batch_id = str(ULID())
        results = []
        for body in bodies:
            results.append(await self.start(db, user, server, stack_name, body, request, batch_id, webhook_id))
        logger.info(f"Batch {batch_id} queued {len(results)} operation(s) on {stack_name}")
        return {"batch_id": batch_id, "operations": results}

    async def _dispatch(
        self, db: AsyncSession, state: ActiveOperation, server,
        body: OperationRequest, request: Optional[Request],
    ) -> Optional[str]:
        """POST the command to the agent. On rejection the log is closed and the lane moves on."""
        audit = OperationAuditService(db, self.outbox)
        payload: Dict[str, Any] = {"command": body.command, "options": body.options, "services": body.services}
        if body.command in CREDENTIAL_COMMANDS:
            creds = await self._registry_credentials(db, server, state.stack_name)
            if creds:
                payload["registry_credentials"] = creds

        try:
            response = await self.agents.request_json(
                server, "POST", f"/stacks/{state.stack_name}/operations", payload=payload
            )
        except AgentError as e:
            try:
                await audit.finish(state.log_id, False, None, OperationStatus.FAILED, failure_reason=str(e))
                await SecurityAuditService(db, self.outbox).log(
                    SecurityEvent.OPERATION_FAILED,
                    request=request,
                    actor_user_id=state.user_id,
                    actor_username=state.username,
                    success=False,
                    failure_reason=str(e),
                    target_type="operation",
                    target_id=state.log_id,
                    target_name=state.command,
                    server_id=state.server_id,
                    stack_name=state.stack_name,
                    metadata={"operation_id": state.operation_id},
                )
                await db.commit()
            finally:
                self._release(state)
            raise

        agent_operation_id = (response or {}).get("operationId") or (response or {}).get("operation_id")
        await db.execute(
            update(OperationLog)
            .where(OperationLog.id == state.log_id)
            .values(agent_operation_id=agent_operation_id)
        )
        await SecurityAuditService(db, self.outbox).log(
            SecurityEvent.OPERATION_STARTED,
            request=request,
            actor_user_id=state.user_id,
            actor_username=state.username,
            target_type="operation",
            target_id=state.log_id,
            target_name=state.command,
            server_id=state.server_id,
            stack_name=state.stack_name,
            metadata={"operation_id": state.operation_id, "services": body.services},
        )
        await db.commit()
        logger.info(f"Operation {state.operation_id} ({state.command}) started on {server.name}/{state.stack_name}")
        return agent_operation_id

    async def _launch(self, state: ActiveOperation) -> None:
        """Dispatch an operation that waited in its stack's lane."""
        lane = self._lanes.get(state.lane_key)
        if state.batch_id and lane is not None and state.batch_id in lane.failed_batches:
            await self._abandon(state, "previous batch operation failed")
            return
        try:
            async with self.session_factory() as db:
                row = await db.get(OperationLog, state.log_id)
                server = await db.get(Server, state.server_id)
                if row is None or server is None or not server.is_active:
                    raise AgentError("server is no longer available")
                await OperationAuditService(db, self.outbox).mark_running(state.log_id)
                body = OperationRequest(command=row.command, options=row.options or [], services=row.services or [])
                agent_operation_id = await self._dispatch(db, state, server, body, None)
                target = AgentTarget.from_server(server)
        except AgentError as e:
            if state.operation_id in self._active:
                await self._abandon(state, str(e))
            else:
                logger.error(f"Queued operation {state.operation_id} was rejected by the agent: {e}")
            return
        except Exception as e:
            logger.error(f"Could not start queued operation {state.operation_id}: {e}", exc_info=True)
            await self._abandon(state, str(e) or type(e).__name__)
            return
        await self._drive(state, target, agent_operation_id)

    async def _abandon(self, state: ActiveOperation, reason: str) -> None:
        """Close an operation that never reached the agent."""
        try:
            async with self.session_factory() as db:
                await OperationAuditService(db, self.outbox).finish(
                    state.log_id, False, None, OperationStatus.FAILED, failure_reason=reason
                )
                await SecurityAuditService(db, self.outbox).log(
                    SecurityEvent.OPERATION_FAILED,
                    actor_user_id=state.user_id,
                    actor_username=state.username,
                    success=False,
                    failure_reason=reason,
                    target_type="operation",
                    target_id=state.log_id,
                    target_name=state.command,
                    server_id=state.server_id,
                    stack_name=state.stack_name,
                    metadata={"operation_id": state.operation_id},
                )
                await db.commit()
            logger.warning(f"Operation {state.operation_id} failed before dispatch: {reason}")
        except Exception as e:
            logger.error(f"Could not close operation {state.operation_id}: {e}", exc_info=True)
        finally:
            self._release(state)

    def _release(self, state: ActiveOperation) -> None:
        """Forget a finished operation, end its followers and start the next one on its stack."""
        self._active.pop(state.operation_id, None)
        state.done.set()
        for follower in list(state.followers):
            follower.finish()
        state.followers.clear()
        lane = self._lanes.get(state.lane_key)
        if lane is None:
            return
        lane.release(state.operation_id)
        if state.batch_id and not state.success:
            lane.failed_batches.add(state.batch_id)
        self._advance(lane, state.lane_key)

    def _advance(self, lane: StackLane, key: Tuple[int, str]) -> None:
        while lane.running is None and lane.pending:
            next_id = lane.pending.popleft()
            lane.running = next_id
            state = self._active.get(next_id)
            if state is not None:
                state.task = asyncio.create_task(self._launch(state), name=f"operation-{next_id}")
            elif next_id not in self._starting:
                lane.running = None
        if lane.running is None and not lane.pending:
            self._lanes.pop(key, None)

    # ---- stream ----

    async def _emit(self, audit: OperationAuditService, state: ActiveOperation, frame: Dict[str, Any]) -> Dict[str, Any]:
        stamp = read_timestamp(frame.get("timestamp")) or state.last_timestamp or utcnow()
        if state.last_timestamp is not None and stamp < state.last_timestamp:
            stamp = state.last_timestamp
        state.last_timestamp = stamp
        sequence = state.next_sequence
        state.next_sequence += 1

        frame = dict(frame, timestamp=stamp.isoformat(), sequence_number=sequence)
        await audit.append(state.log_id, sequence, frame)
        state.frames.append(frame)
        for follower in list(state.followers):
            if not follower.offer(frame):
                follower.drop("slow_consumer")
                state.followers.discard(follower)
                logger.warning(f"Dropped slow follower of operation {state.operation_id}")
        if self.hub is not None:
            await self.hub.publish_operation(state.server_id, state.stack_name, state.operation_id, frame)
        return frame

    async def _consume(
        self, audit: OperationAuditService, state: ActiveOperation, target: AgentTarget, agent_operation_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.agents.stream(target, "GET", f"/operations/{agent_operation_id}/stream") as response:
            async for line in response.aiter_lines():
                frame = parse_stream_line(line)
                if frame is None:
                    continue
                frame = await self._emit(audit, state, frame)
                if frame["type"] in TERMINAL_FRAMES:
                    return frame
        return None

    async def _drive(self, state: ActiveOperation, target: AgentTarget, agent_operation_id: Optional[str]) -> None:
        timeout = self.settings.operation_timeout_seconds
        status: Optional[OperationStatus] = None
        failure_reason: Optional[str] = None
        terminal: Optional[Dict[str, Any]] = None
        try:
            async with self.session_factory() as db:
                if not agent_operation_id:
                    raise AgentError("agent did not return an operation id")
                terminal = await asyncio.wait_for(
                    self._consume(OperationAuditService(db, self.outbox), state, target, agent_operation_id),
                    timeout=timeout,
                )
                if terminal is None:
                    failure_reason = "stream ended without a completion frame"
        except asyncio.TimeoutError:
            status = OperationStatus.TIMEOUT
            failure_reason = "timeout"
            logger.warning(f"Operation {state.operation_id} exceeded {timeout}s")
        except AgentError as e:
            failure_reason = str(e)
            logger.error(f"Operation {state.operation_id} stream failed: {e}")
        except asyncio.CancelledError:
            failure_reason = "cancelled"
            raise
        except Exception as e:
            failure_reason = str(e) or type(e).__name__
            logger.error(f"Operation {state.operation_id} stream failed: {e}", exc_info=True)
        finally:
            await self._finalize(state, terminal, status, failure_reason)

    async def _finalize(
        self, state: ActiveOperation, terminal: Optional[Dict[str, Any]],
        status: Optional[OperationStatus], failure_reason: Optional[str],
    ) -> None:
        # the streaming session may be mid-transaction after a timeout, so close on a fresh one
        try:
            async with self.session_factory() as db:
                await self._close(OperationAuditService(db, self.outbox), db, state, terminal, status, failure_reason)
        except Exception as e:
            logger.error(f"Could not close operation {state.operation_id}: {e}", exc_info=True)
        finally:
            self._release(state)

    async def _close(
        self, audit: OperationAuditService, db: AsyncSession, state: ActiveOperation,
        terminal: Optional[Dict[str, Any]], status: Optional[OperationStatus], failure_reason: Optional[str],
    ) -> None:
        if terminal is None:
            if status == OperationStatus.TIMEOUT:
                message = f"Operation timed out after {self.settings.operation_timeout_seconds} seconds"
            else:
                message = f"Operation failed: {failure_reason}"
            state.next_sequence = await audit.next_sequence(state.log_id)
            terminal = await self._emit(audit, state, {
                "type": MessageType.ERROR.value, "data": message,
                "timestamp": utcnow().isoformat(), "success": False,
            })

        success = bool(terminal.get("success")) and terminal["type"] == MessageType.COMPLETE.value
        state.success = success
        exit_code = terminal.get("exit_code")
        if terminal["type"] == MessageType.ERROR.value and not failure_reason:
            failure_reason = terminal.get("data") or "agent reported an error"
        row = await audit.finish(
            state.log_id, success, exit_code, status,
            failure_reason=None if success else failure_reason,
            end_time=parse_timestamp(terminal.get("timestamp")),
        )
        await SecurityAuditService(db, self.outbox).log(
            SecurityEvent.OPERATION_COMPLETED if success else SecurityEvent.OPERATION_FAILED,
            actor_user_id=state.user_id,
            actor_username=state.username,
            success=success,
            failure_reason=None if success else failure_reason,
            target_type="operation",
            target_id=state.log_id,
            target_name=state.command,
            server_id=state.server_id,
            stack_name=state.stack_name,
            metadata={
                "operation_id": state.operation_id,
                "exit_code": exit_code,
                "summary": row.summary if row else None,
            },
        )
        await db.commit()

    async def follow(self, operation_id: str, limit: int = QUEUE_SIZE) -> AsyncIterator[Dict[str, Any]]:
        """Backlog then live frames; finished operations replay from the database.

        Raises FollowerDropped when the follower could not keep up.
        """
        state = self._active.get(operation_id)
        if state is not None:
            # snapshot and attach without an await in between, so no frame is missed
            backlog = list(state.frames)
            follower = OperationFollower(limit)
            state.followers.add(follower)
            try:
                for frame in backlog:
                    yield frame
                while True:
                    frame = await follower.next()
                    if frame is None:
                        break
                    yield frame
            finally:
                state.followers.discard(follower)
            if follower.close_reason == "slow_consumer":
                raise FollowerDropped(operation_id)
            return

        async with self.session_factory() as db:
            audit = OperationAuditService(db)
            row = await audit.find(operation_id)
            if row is None:
                return
            messages = await audit.messages(row.id)
        for message in messages:
            yield message_to_frame(message)

    async def wait(self, operation_id: str, timeout: Optional[float] = None) -> None:
        state = self._active.get(operation_id)
        if state is not None:
            await asyncio.wait_for(state.done.wait(), timeout=timeout)

    async def recover(self) -> int:
        """Fail operations a previous process left running and requeue the ones still waiting."""
        async with self.session_factory() as db:
            audit = OperationAuditService(db, self.outbox)
            count = await audit.mark_interrupted()
            queued = await audit.queued()
            owners = {}
            for row in queued:
                if row.user_id is not None and row.user_id not in owners:
                    owner = await db.get(User, row.user_id)
                    owners[row.user_id] = owner.username if owner else ""
        if count:
            logger.warning(f"Marked {count} interrupted operation(s) as failed")
        for row in queued:
            state = ActiveOperation(
                row.operation_id, row.id, row.server_id, row.stack_name, row.command,
                user_id=row.user_id, username=owners.get(row.user_id, ""), batch_id=row.batch_id,
            )
            self._active[row.operation_id] = state
            lane = self._lanes.setdefault(state.lane_key, StackLane())
            lane.pending.append(row.operation_id)
            self._advance(lane, state.lane_key)
        if queued:
            logger.info(f"Requeued {len(queued)} waiting operation(s)")
        return count

    async def stop(self) -> None:
        tasks = [s.task for s in self._active.values() if s.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class RetentionTask:
    """Daily purge of operation logs older than the retention window."""

    INTERVAL = 24 * 3600

    def __init__(self, session_factory: async_sessionmaker, days: int, interval: float = INTERVAL):
        self.session_factory = session_factory
        self.days = days
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.days > 0

    async def run_once(self) -> int:
        async with self.session_factory() as db:
            removed = await OperationAuditService(db).purge_older_than(self.days)
        if removed:
            logger.info(f"Purged {removed} operation log(s) older than {self.days} days")
        return removed

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Operation log retention failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.enabled and self._task is None:
            self._task = asyncio.create_task(self._loop(), name="operation-log-retention")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
