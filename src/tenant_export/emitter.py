"""
Size/count-bounded batching in front of a streaming sink.

emit() appends one serialized event and flushes automatically when the next
event would overflow batch_max_bytes, or once batch_max_count or
batch_max_bytes is reached. flush() sends whatever is buffered with exactly
one sink call per attempt.

A batch that still fails after max_retries retries is dropped as a unit and
every event it contained is recorded as a batch-scope RunError. Events inside
a batch keep their emission order; there is no ordering across batches.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

from core.errors.exceptions import SinkDeliveryError
from core.resilience.rate_limiter import RateLimiter, RateLimiterConfig
from core.resilience.retry import RetryConfig
from tenant_export import metrics
from tenant_export.models import BatchOutcome, ExportEvent, RunError, RunErrorScope
from tenant_export.sinks import EventSink

logger = logging.getLogger(__name__)

DEFAULT_BATCH_MAX_BYTES = 1_000_000
DEFAULT_BATCH_MAX_COUNT = 500


class BatchingEmitter:
    """
    Accumulates events into batches and delivers them to a sink.

    Buffer state is guarded by an asyncio.Lock. A full batch is detached from
    the buffer under the lock and sent outside it, so emitters on other
    workers keep filling the next batch while one is in flight.
    """

    def __init__(
        self,
        sink: EventSink,
        batch_max_bytes: int = DEFAULT_BATCH_MAX_BYTES,
        batch_max_count: int = DEFAULT_BATCH_MAX_COUNT,
        max_retries: int = 5,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if batch_max_bytes <= 0 or batch_max_count <= 0:
            raise ValueError("batch_max_bytes and batch_max_count must be positive")

        self._sink = sink
        self._max_bytes = batch_max_bytes
        self._max_count = batch_max_count
        self._max_retries = max_retries
        self._retry_config = RetryConfig(
            max_attempts=max_retries + 1,
            base_delay=backoff_base_seconds,
            max_delay=backoff_max_seconds,
        )
        self._limiter = rate_limiter or RateLimiter(
            RateLimiterConfig(calls_per_second=5.0, name="sink")
        )
        self._sleep = sleep or asyncio.sleep

        self._lock = asyncio.Lock()
        self._buffer: list[tuple[ExportEvent, bytes]] = []
        self._buffer_bytes = 0

        self.events_emitted = 0
        self.batches_sent = 0
        self.batches_failed = 0
        self.errors: list[RunError] = []

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def _detach(self) -> list[tuple[ExportEvent, bytes]]:
        """Take the current batch out of the buffer. Caller holds the lock."""
        batch = self._buffer
        self._buffer = []
        self._buffer_bytes = 0
        return batch

    def _is_full(self) -> bool:
        return len(self._buffer) >= self._max_count or self._buffer_bytes >= self._max_bytes

    async def emit(self, event: ExportEvent) -> None:
        """Buffer one event, sending full batches as they form."""
        line = event.to_json_line()

        if len(line) > self._max_bytes:
            error = SinkDeliveryError(
                f"Event of {len(line)} bytes exceeds batch limit of {self._max_bytes} bytes",
                context={"source_id": event.source_id},
            )
            self.errors.append(
                RunError.from_exception(
                    RunErrorScope.EVENT,
                    error,
                    source_id=event.source_id,
                    subscription_id=event.subscription_id,
                )
            )
            logger.warning(
                "Event too large for any batch, not sent",
                extra={"source_id": event.source_id, "batch_bytes": len(line)},
            )
            return

        ready: list[list[tuple[ExportEvent, bytes]]] = []
        async with self._lock:
            if self._buffer and self._buffer_bytes + len(line) > self._max_bytes:
                ready.append(self._detach())

            self._buffer.append((event, line))
            self._buffer_bytes += len(line)

            if self._is_full():
                ready.append(self._detach())

        for batch in ready:
            await self._send(batch)

    async def flush(self) -> BatchOutcome:
        """Send the pending batch. An empty buffer makes no sink call."""
        async with self._lock:
            batch = self._detach()

        if not batch:
            return BatchOutcome(sent=True, event_count=0, attempts=0)

        return await self._send(batch)

    async def _send(self, batch: list[tuple[ExportEvent, bytes]]) -> BatchOutcome:
        records = [line for _, line in batch]
        batch_bytes = sum(len(r) for r in records)
        metrics.batch_size_bytes.observe(batch_bytes)

        last_error: Optional[Exception] = None
        attempts = 0

        for attempt in range(self._max_retries + 1):
            attempts = attempt + 1
            try:
                await self._limiter.acquire()
                await self._sink.send_batch(records)
            except Exception as e:
                last_error = e if isinstance(e, SinkDeliveryError) else SinkDeliveryError(
                    f"{type(e).__name__}: {e}", cause=e
                )
                if attempt >= self._max_retries:
                    break

                delay = self._retry_config.get_delay(attempt, last_error)
                logger.warning(
                    "Batch send failed, will retry",
                    extra={
                        "event_count": len(records),
                        "batch_bytes": batch_bytes,
                        "attempt": attempts,
                        "max_attempts": self._max_retries + 1,
                        "delay_seconds": round(delay, 2),
                        "error_type": type(e).__name__,
                        "error_message": str(e)[:200],
                    },
                )
                await self._sleep(delay)
                continue

            self.batches_sent += 1
            self.events_emitted += len(records)
            metrics.batches_sent_counter.inc()
            metrics.events_emitted_counter.inc(len(records))
            logger.debug(
                "Batch delivered",
                extra={"event_count": len(records), "batch_bytes": batch_bytes, "attempt": attempts},
            )
            return BatchOutcome(sent=True, event_count=len(records), attempts=attempts)

        self.batches_failed += 1
        metrics.batches_failed_counter.inc()
        for event, _ in batch:
            self.errors.append(
                RunError.from_exception(
                    RunErrorScope.BATCH,
                    last_error,
                    source_id=event.source_id,
                    subscription_id=event.subscription_id,
                )
            )
        logger.error(
            "Batch dropped after exhausting retries",
            extra={
                "event_count": len(records),
                "batch_bytes": batch_bytes,
                "total_attempts": attempts,
                "error_type": type(last_error).__name__,
                "error_message": str(last_error)[:200],
            },
        )
        return BatchOutcome(sent=False, event_count=len(records), attempts=attempts)


__all__ = [
    "BatchingEmitter",
    "DEFAULT_BATCH_MAX_BYTES",
    "DEFAULT_BATCH_MAX_COUNT",
]
