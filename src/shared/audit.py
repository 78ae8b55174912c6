"""
Structured audit trail: records every link, unlink and verification
decision to both a JSON Lines file and the ``audit_log`` table.

Events are queued in memory and written by a background task in small
batches, so the OAuth callback and the verification cycle never wait on
audit I/O.  When the queue is full the event is dropped with a warning:
the database state, not the audit trail, is the source of truth.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class AuditEvent:
    service: str
    action: str
    details: Dict[str, Any]
    success: bool
    timestamp: datetime

    def to_json_line(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp.isoformat(),
                "service": self.service,
                "action": self.action,
                "details": self.details,
                "success": self.success,
            },
            default=str,
        ) + "\n"


class AuditLogger:
    """Buffered audit writer (file + database).

    Args:
        pool: ``asyncpg`` connection pool (needs INSERT on ``audit_log``).
        log_path: JSON Lines file; ``None`` disables the file sink.
        queue_size: Max queued events before new events are dropped.
        flush_batch_size: Events written per round-trip.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool],
        log_path: Optional[Path] = None,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = log_path
        self._queue: asyncio.Queue[AuditEvent | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False
        self.dropped = 0

    def record(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event without waiting for it to be written."""
        if self._closed:
            logger.debug("Audit logger closed; dropping %s/%s", service, action)
            return
        event = AuditEvent(
            service=service,
            action=action,
            details=details or {},
            success=success,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Audit queue full; dropped %s/%s", service, action)
            return
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(), name="rolegate-audit-writer"
            )

    async def _write_batch(self, batch: List[AuditEvent]) -> None:
        if self._log_path is not None:
            try:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._log_path, "a", encoding="utf-8") as handle:
                    handle.write("".join(event.to_json_line() for event in batch))
            except OSError:
                logger.exception("Failed to write audit log file")

        if self._pool is None:
            return
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL,
                    [
                        (
                            event.service,
                            event.action,
                            json.dumps(event.details, default=str),
                            event.success,
                        )
                        for event in batch
                    ],
                )
        except Exception:
            logger.exception("Failed to write audit events to database")

    async def _worker(self) -> None:
        stop = False
        while not stop:
            event = await self._queue.get()
            if event is None:
                break
            batch = [event]
            while len(batch) < self._flush_batch_size:
                try:
                    nxt = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if nxt is None:
                    stop = True
                    break
                batch.append(nxt)
            await self._write_batch(batch)

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        if self._closed:
            return
        self._closed = True
        if self._worker_task is not None:
            await self._queue.put(None)
            await self._worker_task
            self._worker_task = None
