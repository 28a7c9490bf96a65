# file_logger.py — Asynchronous JSONL audit files
# Layout: <log_dir>/<stream>/<stream>-YYYY-MM-DD.jsonl, one file per UTC day.
# Producers call submit() from the request path; it never blocks. A single
# writer task drains the queue and does the file I/O in a worker thread.

import os
import json
import asyncio
import logging
from datetime import datetime, date, timezone
from typing import Any, Callable, Dict, Optional, TextIO

logger = logging.getLogger("berth.files")

_STOP = object()


class JSONLFileLogger:
    def __init__(
        self,
        log_dir: str,
        stream: str,
        queue_size: int = 10000,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.log_dir = log_dir
        self.stream = stream
        self._clock = clock
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task] = None
        self._file: Optional[TextIO] = None
        self._file_date: Optional[date] = None
        self.dropped = 0
        self.written = 0

    def path_for(self, day: date) -> str:
        return os.path.join(self.log_dir, self.stream, f"{self.stream}-{day.isoformat()}.jsonl")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        os.makedirs(os.path.join(self.log_dir, self.stream), exist_ok=True)
        self._task = asyncio.create_task(self._run(), name=f"jsonl-{self.stream}")

    def submit(self, record: Dict[str, Any]) -> bool:
        try:
            self._queue.put_nowait(record)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 1000 == 0:
                logger.warning(f"{self.stream} file log queue full, dropped={self.dropped}")
            return False

    async def flush(self) -> None:
        """Wait until everything submitted so far is on disk."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._queue.put(_STOP)
        try:
            await self._task
        finally:
            self._task = None
            await asyncio.to_thread(self._close)

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                if record is _STOP:
                    return
                await asyncio.to_thread(self._write, record)
            except Exception as e:
                logger.error(f"Failed writing {self.stream} log record: {e}")
            finally:
                self._queue.task_done()

    def _write(self, record: Dict[str, Any]) -> None:
        today = self._clock().date()
        if self._file is None or self._file_date != today:
            self._close()
            self._file = open(self.path_for(today), "a", encoding="utf-8")
            self._file_date = today
        self._file.write(json.dumps(record, default=str, separators=(",", ":")) + "\n")
        self._file.flush()
        self.written += 1

    def _close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            self._file_date = None


class AuditOutbox:
    """Hands committed audit rows to whichever file streams are enabled."""

    def __init__(self):
        self._streams: Dict[str, JSONLFileLogger] = {}

    def register(self, file_logger: JSONLFileLogger) -> None:
        self._streams[file_logger.stream] = file_logger

    def enabled(self, stream: str) -> bool:
        return stream in self._streams

    def publish(self, stream: str, record: Dict[str, Any]) -> None:
        target = self._streams.get(stream)
        if target is not None:
            target.submit(record)

    def start(self) -> None:
        for stream in self._streams.values():
            stream.start()

    async def flush(self) -> None:
        for stream in self._streams.values():
            await stream.flush()

    async def stop(self) -> None:
        for stream in self._streams.values():
            await stream.stop()
