from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

import asyncpg

from .app.billing.config import DatabaseConfig
from .app.billing.exceptions import is_retryable
from .app.billing.models import BillingAuditEvent, BillingAuditEventType
from .app.billing.service import BillingEventLogger


LOGGER = logging.getLogger("billing.queue")


INSERT_DEAD_LETTER_SQL = """
    INSERT INTO billing_dead_letters (
        ts,
        event_type,
        object_id,
        attempts,
        error,
        payload
    ) VALUES (
        $1, $2, $3, $4, $5, $6::jsonb
    )
"""


def _ensure_json(value: Optional[Dict[str, Any]]) -> str:
    return json.dumps(value or {}, default=str)


class DeadLetterSink(Protocol):
    """Operator-visible destination for events that exhausted their retries."""

    async def record(self, payload: Dict[str, Any], error: BaseException, attempts: int) -> None:
        ...


class LoggingDeadLetterSink:
    async def record(self, payload: Dict[str, Any], error: BaseException, attempts: int) -> None:
        LOGGER.error(
            "Billing event dead-lettered after %d attempts: %s",
            attempts,
            error,
            extra={"event_type": payload.get("eventType"), "object_id": payload.get("objectId")},
        )


class PostgresDeadLetterSink:
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def record(self, payload: Dict[str, Any], error: BaseException, attempts: int) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(
                INSERT_DEAD_LETTER_SQL,
                datetime.now(timezone.utc),
                payload.get("eventType"),
                payload.get("objectId"),
                attempts,
                f"{type(error).__name__}: {error}",
                _ensure_json(payload),
            )


async def create_dead_letter_pool(config: DatabaseConfig, *, enabled: bool) -> Optional[asyncpg.Pool]:
    if not enabled:
        return None
    return await asyncpg.create_pool(
        min_size=1,
        max_size=2,
        command_timeout=10,
        **config.asyncpg_kwargs(),
    )


class EventQueue:
    """Runs webhook payloads through ``handler`` off the event loop.

    A failing payload is re-run from the top up to ``max_retries`` times with
    linear backoff. Non-retryable failures and exhausted payloads go to the
    dead-letter sink.
    """

    def __init__(
        self,
        handler: Callable[[Dict[str, Any]], Any],
        *,
        loop: asyncio.AbstractEventLoop,
        dead_letters: Optional[DeadLetterSink] = None,
        event_logger: Optional[BillingEventLogger] = None,
        max_retries: int = 3,
        backoff_seconds: float = 5.0,
        maxsize: int = 10_000,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._handler = handler
        self._loop = loop
        self._dead_letters = dead_letters or LoggingDeadLetterSink()
        self._event_logger = event_logger
        self._max_retries = max(0, max_retries)
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def put_nowait(self, payload: Dict[str, Any]) -> bool:
        """Enqueue from any thread; ``False`` once the queue is closed."""

        if self._closed:
            return False
        self._loop.call_soon_threadsafe(self._enqueue, dict(payload))
        return True

    def _enqueue(self, payload: Dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            LOGGER.warning("Billing event queue is full; dropping %s", payload.get("eventType"))

    async def process(self, payload: Dict[str, Any]) -> bool:
        """Run one payload to completion; ``True`` when it succeeded."""

        attempt = 0
        while True:
            attempt += 1
            try:
                await asyncio.to_thread(self._handler, payload)
                return True
            except Exception as exc:
                if not is_retryable(exc) or attempt > self._max_retries:
                    await self._dead_letter(payload, exc, attempt)
                    return False
                LOGGER.warning(
                    "Billing event failed (attempt %d of %d): %s",
                    attempt,
                    self._max_retries + 1,
                    exc,
                    extra={"event_type": payload.get("eventType"), "object_id": payload.get("objectId")},
                )
                await self._sleep(self._backoff_seconds * attempt)

    async def _dead_letter(self, payload: Dict[str, Any], error: BaseException, attempts: int) -> None:
        try:
            await self._dead_letters.record(payload, error, attempts)
        except Exception:  # pragma: no cover - logged only
            LOGGER.exception("Failed to persist billing dead letter")
        if self._event_logger is not None:
            self._event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.EVENT_DEAD_LETTERED,
                    metadata={
                        "event_type": str(payload.get("eventType")),
                        "object_id": str(payload.get("objectId")),
                        "error": type(error).__name__,
                    },
                )
            )

    async def run(self) -> None:
        try:
            while not self._closed:
                payload = await self._queue.get()
                try:
                    await self.process(payload)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            await self.flush()
            raise

    def close(self) -> None:
        self._closed = True

    async def flush(self) -> None:
        items: List[Dict[str, Any]] = []
        while not self._queue.empty():
            try:
                items.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:  # pragma: no cover - race guard
                break
        for payload in items:
            try:
                await self.process(payload)
            finally:
                self._queue.task_done()


__all__ = [
    "DeadLetterSink",
    "EventQueue",
    "LoggingDeadLetterSink",
    "PostgresDeadLetterSink",
    "create_dead_letter_pool",
]
