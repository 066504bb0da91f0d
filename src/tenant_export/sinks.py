"""
Streaming sink abstractions.

A sink receives one batch at a time as a list of serialized events (one
compact JSON object each) and either acknowledges it or raises
SinkDeliveryError. Batching, retries and rate limiting are the emitter's
concern, not the sink's.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from azure.eventhub import EventData, TransportType
from azure.eventhub.aio import EventHubProducerClient
from azure.eventhub.exceptions import EventHubError

from core.errors.exceptions import SinkDeliveryError

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/json"


@runtime_checkable
class EventSink(Protocol):
    """
    Protocol for export sinks.

    send_batch either acknowledges the whole batch (returns) or fails the
    whole batch (raises SinkDeliveryError); there is no partial acceptance.
    """

    async def start(self) -> None:
        """Open connections, files, etc."""
        ...

    async def stop(self) -> None:
        """Release connections, files, etc."""
        ...

    async def send_batch(self, records: list[bytes]) -> None:
        """
        Deliver one batch.

        Args:
            records: Serialized events, in order
        """
        ...


def mask_connection_string(conn_str: str) -> str:
    """Hide SharedAccessKey values for logging."""
    parts = []
    for part in conn_str.split(";"):
        if part.lower().startswith("sharedaccesskey="):
            parts.append("SharedAccessKey=***")
        else:
            parts.append(part)
    return ";".join(parts)


def eventhub_namespace(conn_str: str) -> str:
    """Extract namespace host from an Event Hub connection string."""
    if "Endpoint=sb://" not in conn_str:
        return "unknown"
    return conn_str.split("Endpoint=sb://", 1)[1].split("/")[0]


class EventHubSink:
    """
    Event Hub sink over AMQP-over-WebSocket.

    Each batch goes out as one EventDataBatch, one EventData per event, so
    event order inside a batch is preserved end-to-end.
    """

    def __init__(
        self,
        connection_string: str,
        eventhub_name: Optional[str] = None,
        send_timeout_seconds: float = 60.0,
    ):
        if not connection_string:
            raise ValueError("EventHubSink requires a connection string")

        self.connection_string = connection_string
        self.eventhub_name = eventhub_name
        self.send_timeout_seconds = send_timeout_seconds
        self._producer: Optional[EventHubProducerClient] = None
        self.batches_sent = 0

    @property
    def entity(self) -> str:
        return f"{eventhub_namespace(self.connection_string)}/{self.eventhub_name or '<EntityPath>'}"

    async def start(self) -> None:
        if self._producer is not None:
            logger.warning("Sink already started, ignoring duplicate start call")
            return

        kwargs: dict[str, Any] = {
            "conn_str": self.connection_string,
            "transport_type": TransportType.AmqpOverWebsocket,
        }
        if self.eventhub_name:
            kwargs["eventhub_name"] = self.eventhub_name

        try:
            self._producer = EventHubProducerClient.from_connection_string(**kwargs)
        except (ValueError, EventHubError) as e:
            logger.error(
                "Failed to create Event Hub producer",
                extra={
                    "entity": self.entity,
                    "error_type": type(e).__name__,
                    "error_message": mask_connection_string(str(e)),
                },
            )
            raise

        logger.info(
            "Event Hub sink started",
            extra={"entity": self.entity, "sink": "eventhub"},
        )

    async def stop(self) -> None:
        if self._producer is None:
            return

        try:
            await self._producer.close()
            logger.info("Event Hub sink stopped", extra={"entity": self.entity})
        except EventHubError as e:
            logger.warning(
                "Error closing Event Hub producer",
                extra={"entity": self.entity, "error_message": str(e)[:200]},
            )
        finally:
            self._producer = None
            # The SDK's websocket transport does not always close its aiohttp
            # session before returning
            await asyncio.sleep(0.250)

    async def send_batch(self, records: list[bytes]) -> None:
        if self._producer is None:
            raise RuntimeError("EventHubSink not started. Call start() first.")
        if not records:
            return

        total_bytes = sum(len(r) for r in records)
        try:
            batch = await self._producer.create_batch()
            for index, record in enumerate(records):
                event_data = EventData(record)
                event_data.content_type = CONTENT_TYPE
                try:
                    batch.add(event_data)
                except ValueError as e:
                    raise SinkDeliveryError(
                        f"Batch exceeds Event Hub size limit at event {index + 1} of {len(records)}",
                        cause=e,
                        context={"event_count": len(records), "batch_bytes": total_bytes},
                    ) from e

            await asyncio.wait_for(
                self._producer.send_batch(batch),
                timeout=self.send_timeout_seconds,
            )
        except SinkDeliveryError:
            raise
        except (EventHubError, asyncio.TimeoutError, OSError) as e:
            logger.warning(
                "Event Hub send failed",
                extra={
                    "entity": self.entity,
                    "event_count": len(records),
                    "batch_bytes": total_bytes,
                    "error_type": type(e).__name__,
                    "error_message": str(e)[:200],
                },
            )
            raise SinkDeliveryError(
                f"Event Hub send failed: {type(e).__name__}: {e}",
                cause=e,
                context={"event_count": len(records), "batch_bytes": total_bytes},
            ) from e

        self.batches_sent += 1
        logger.debug(
            "Batch sent to Event Hub",
            extra={"entity": self.entity, "event_count": len(records), "batch_bytes": total_bytes},
        )


class JsonLinesFileSink:
    """
    Appends batches to a newline-delimited JSON file.

    Used for dry runs and local debugging. Every batch is written with one
    write call and fsynced before it is acknowledged.
    """

    def __init__(self, output_path: str | Path):
        self.output_path = Path(output_path)
        self._file = None
        self._lock = asyncio.Lock()
        self.events_written = 0
        self.batches_sent = 0

    async def start(self) -> None:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.output_path, "ab")
        logger.info(
            "JSON lines sink started",
            extra={"sink": "file", "entity": str(self.output_path)},
        )

    async def stop(self) -> None:
        if self._file:
            self._file.close()
            self._file = None
        logger.info(
            "JSON lines sink stopped",
            extra={"entity": str(self.output_path), "event_count": self.events_written},
        )

    def _write(self, content: bytes) -> None:
        self._file.write(content)
        self._file.flush()
        os.fsync(self._file.fileno())

    async def send_batch(self, records: list[bytes]) -> None:
        if self._file is None:
            raise RuntimeError("JsonLinesFileSink not started. Call start() first.")
        if not records:
            return

        content = b"".join(record + b"\n" for record in records)
        async with self._lock:
            try:
                await asyncio.to_thread(self._write, content)
            except OSError as e:
                raise SinkDeliveryError(
                    f"Failed to write {self.output_path}: {e}",
                    cause=e,
                    context={"event_count": len(records)},
                ) from e

        self.events_written += len(records)
        self.batches_sent += 1


def create_sink(config) -> EventSink:
    """Build the sink named by config.sink_type."""
    if config.sink_type == "eventhub":
        return EventHubSink(
            connection_string=config.eventhub_connection_string,
            eventhub_name=config.eventhub_name,
            send_timeout_seconds=config.sink_timeout_seconds,
        )
    if config.sink_type == "file":
        return JsonLinesFileSink(config.output_path)
    raise ValueError(f"Unknown sink type: {config.sink_type!r}")


__all__ = [
    "EventSink",
    "EventHubSink",
    "JsonLinesFileSink",
    "create_sink",
    "mask_connection_string",
]
