"""
Audit service — non-blocking, ordered audit trail.

`QueuedAuditSink.append` never awaits: it stamps the event and drops it
into a bounded in-process queue.  One background worker drains the
queue in FIFO order and hands each event to the configured writer, so
events of a session are persisted in the order they were emitted.

Loss tolerance: when the queue is full the event is dropped and a
warning is logged; writer failures are logged and the worker moves on.
Neither ever reaches the caller of start / stop.
"""

import asyncio
import logging
import uuid
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_admin.models.audit import AuditLog
from tenant_admin.models.base import Clock, utcnow

logger = logging.getLogger(__name__)

AuditEvent = dict[str, Any]


class AuditSink(Protocol):
    def append(self, event: AuditEvent) -> None: ...


class AuditWriter(Protocol):
    async def write(self, event: AuditEvent) -> None: ...


def _as_uuid(value: Any) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


class DatabaseAuditWriter:
    """Persist each event as one append-only `audit_logs` row."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def write(self, event: AuditEvent) -> None:
        payload = _jsonable(event)
        async with self._session_factory() as db:
            async with db.begin():
                db.add(
                    AuditLog(
                        event=event["event"],
                        session_id=event.get("session_id"),
                        actor_id=_as_uuid(event.get("actor_id")),
                        target_id=_as_uuid(event.get("target_id")),
                        as_impersonated=bool(event.get("as_impersonated", False)),
                        payload=payload,
                        created_at=event["recorded_at"],
                    )
                )


class QueuedAuditSink:
    def __init__(
        self,
        writer: AuditWriter,
        *,
        maxsize: int = 10_000,
        clock: Clock = utcnow,
    ):
        self._writer = writer
        self._clock = clock
        self._queue: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task | None = None
        self.dropped = 0

    def append(self, event: AuditEvent) -> None:
        stamped = {**event, "recorded_at": event.get("recorded_at") or self._clock()}
        try:
            self._queue.put_nowait(stamped)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Audit queue full, dropped %s for session %s",
                stamped.get("event"),
                stamped.get("session_id"),
            )

    # ── Worker lifecycle ─────────────────────────────────────────────

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="audit-sink")

    async def stop(self) -> None:
        """Flush pending events, then stop the worker."""
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def drain(self) -> None:
        """Wait until every queued event has been handed to the writer."""
        if self._worker is None or self._worker.done():
            while not self._queue.empty():
                await self._write_one(self._queue.get_nowait())
                self._queue.task_done()
            return
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._write_one(event)
            finally:
                self._queue.task_done()

    async def _write_one(self, event: AuditEvent) -> None:
        try:
            await self._writer.write(event)
        except Exception:
            logger.exception(
                "Audit write failed for %s (session %s)",
                event.get("event"),
                event.get("session_id"),
            )
