"""
Berth — Structured event logging

Request-scoped context (correlation ids, acting user, auth type) carried in a
contextvar, and a structured logger that renders entries as JSON through the
standard logging module while keeping a bounded in-memory buffer that admins
can query.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from datetime import datetime, timezone
from enum import Enum
from collections import deque
import contextvars
import json
import logging
import threading
import uuid
import os


class LogLevel(str, Enum):
    """Log severity levels"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def numeric(self) -> int:
        return getattr(logging, self.value.upper())


class LogCategory(str, Enum):
    """Log categories for filtering"""
    REQUEST = "request"
    AUTH = "auth"
    SECURITY = "security"
    AGENT = "agent"
    OPERATION = "operation"
    COMPOSE = "compose"
    IMAGE_UPDATE = "image_update"
    SYSTEM = "system"


@dataclass
class LogEntry:
    """A structured log entry"""
    id: str
    timestamp: str
    level: LogLevel
    category: LogCategory
    message: str
    service: str
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[int] = None
    auth_type: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "service": self.service,
            "correlation_id": self.correlation_id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "auth_type": self.auth_type,
            "duration_ms": self.duration_ms,
            "metadata": self.metadata,
            "error": self.error,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class RequestContext:
    """Context for request tracing"""
    request_id: str
    correlation_id: str
    user_id: Optional[int] = None
    auth_type: Optional[str] = None
    client_ip: Optional[str] = None

    @staticmethod
    def create(
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> "RequestContext":
        rid = request_id or str(uuid.uuid4())
        return RequestContext(
            request_id=rid,
            correlation_id=correlation_id or rid,
            client_ip=client_ip,
        )


_context_var: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "berth_request_context", default=None
)


def get_current_context() -> Optional[RequestContext]:
    return _context_var.get()


def set_current_context(context: RequestContext) -> contextvars.Token:
    return _context_var.set(context)


def reset_current_context(token: contextvars.Token) -> None:
    _context_var.reset(token)


def bind_user(user_id: int, auth_type: str) -> None:
    """Attach the authenticated principal to the active request context."""
    context = _context_var.get()
    if context is not None:
        context.user_id = user_id
        context.auth_type = auth_type


class LogBuffer:
    """Bounded ring buffer of recent entries"""

    def __init__(self, max_size: int = 5000):
        self.max_size = max_size
        self._buffer: deque = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._buffer.append(entry)

    def filter(
        self,
        level: Optional[LogLevel] = None,
        category: Optional[LogCategory] = None,
        correlation_id: Optional[str] = None,
        user_id: Optional[int] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> List[LogEntry]:
        with self._lock:
            snapshot = list(self._buffer)
        results = []
        for entry in reversed(snapshot):
            if level and entry.level.numeric < level.numeric:
                continue
            if category and entry.category != category:
                continue
            if correlation_id and entry.correlation_id != correlation_id:
                continue
            if user_id is not None and entry.user_id != user_id:
                continue
            if search and search.lower() not in entry.message.lower():
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def __len__(self) -> int:
        return len(self._buffer)


class StructuredLogger:
    """Structured logger that writes JSON lines through the logging module"""

    def __init__(
        self,
        service_name: str = "berth",
        min_level: LogLevel = LogLevel.INFO,
        buffer_size: int = 5000,
    ):
        self.service_name = service_name
        self.min_level = min_level
        self.buffer = LogBuffer(buffer_size)
        self._out = logging.getLogger(f"{service_name}.events")

    def _create_entry(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        duration_ms: Optional[float] = None,
    ) -> LogEntry:
        context = get_current_context()
        entry = LogEntry(
            id=uuid.uuid4().hex[:12],
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            category=category,
            message=message,
            service=self.service_name,
            correlation_id=context.correlation_id if context else None,
            request_id=context.request_id if context else None,
            user_id=context.user_id if context else None,
            auth_type=context.auth_type if context else None,
            duration_ms=duration_ms,
            metadata=metadata or {},
        )
        if error is not None:
            entry.error = {"type": type(error).__name__, "message": str(error)}
        return entry

    def log(self, level: LogLevel, category: LogCategory, message: str, **kwargs) -> Optional[LogEntry]:
        if level.numeric < self.min_level.numeric:
            return None
        entry = self._create_entry(level, category, message, **kwargs)
        self.buffer.append(entry)
        self._out.log(level.numeric, entry.to_json())
        return entry

    def security_event(self, event_type: str, severity: str, success: bool, **kwargs) -> Optional[LogEntry]:
        level = LogLevel.WARNING if (not success or severity in ("high", "critical")) else LogLevel.INFO
        metadata = {"event_type": event_type, "severity": severity, "success": success}
        metadata.update(kwargs.pop("metadata", None) or {})
        return self.log(level, LogCategory.SECURITY, f"Security event: {event_type}", metadata=metadata, **kwargs)

    def operation(self, operation_id: str, stage: str, **kwargs) -> Optional[LogEntry]:
        metadata = {"operation_id": operation_id, "stage": stage}
        metadata.update(kwargs.pop("metadata", None) or {})
        level = LogLevel.WARNING if stage in ("failed", "timeout") else LogLevel.INFO
        return self.log(level, LogCategory.OPERATION, f"Operation {operation_id} {stage}", metadata=metadata, **kwargs)

    def get_logs(self, **filters) -> List[LogEntry]:
        return self.buffer.filter(**filters)


_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get or create the process-wide structured logger"""
    global _logger
    if _logger is None:
        level = os.getenv("LOG_LEVEL", "INFO").lower()
        _logger = StructuredLogger(
            service_name="berth",
            min_level=LogLevel(level) if level in LogLevel._value2member_map_ else LogLevel.INFO,
        )
    return _logger


def log_security(event_type: str, severity: str, success: bool, **kwargs) -> Optional[LogEntry]:
    return get_logger().security_event(event_type, severity, success, **kwargs)


def log_operation(operation_id: str, stage: str, **kwargs) -> Optional[LogEntry]:
    return get_logger().operation(operation_id, stage, **kwargs)
