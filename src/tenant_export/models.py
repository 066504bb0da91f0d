"""
Data model for one export run.

HierarchyNode is a tagged variant: a kind plus the raw record the API
returned, with no subclass per kind. ExportEvent is the wire envelope
downstream consumers rely on; they dispatch on eventType.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from core.errors.exceptions import PipelineError
from core.utils.json_serializers import json_serializer

ENVELOPE_SCHEMA_VERSION = "1.0"
FALLBACK_SCHEMA_VERSION = "fallback"


class NodeKind(str, Enum):
    """Kinds of entity discovered during traversal."""

    SUBSCRIPTION = "Subscription"
    RESOURCE_GROUP = "ResourceGroup"
    RESOURCE = "Resource"
    ROLE_ASSIGNMENT = "RoleAssignment"


@dataclass(frozen=True)
class HierarchyNode:
    """
    One entity discovered during traversal.

    Attributes:
        kind: Which tier of the hierarchy the record came from
        id: ARM id of the entity, None when the raw record carried none
        parent_id: id of the enclosing node, None for subscriptions
        subscription_id: Subscription the node was found under
        raw: Record exactly as returned by the API
        principal: Directory object of a role assignment's principal, None
            when unresolved or not looked up
    """

    kind: NodeKind
    id: str | None
    parent_id: str | None
    subscription_id: str | None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)
    principal: Mapping[str, Any] | None = field(default=None, compare=False, repr=False)


class ExportEvent(BaseModel):
    """Canonical event envelope, serialized as one compact JSON object per line.

    Example:
        >>> event = ExportEvent(
        ...     event_type="ResourceGroup",
        ...     source_id="/subscriptions/s1/resourceGroups/rg1",
        ...     parent_id="/subscriptions/s1",
        ...     timestamp_utc=datetime.now(timezone.utc),
        ...     payload={"name": "rg1", "location": "westeurope"},
        ... )
        >>> event.to_json_line()
        b'{"eventType":"ResourceGroup","sourceId":"/subscriptions/s1/resourceGroups/rg1",...}'
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_type: str = Field(..., alias="eventType", min_length=1)
    source_id: str = Field(..., alias="sourceId", min_length=1)
    parent_id: str | None = Field(default=None, alias="parentId")
    timestamp_utc: datetime = Field(..., alias="timestampUtc")
    payload: dict[str, Any] = Field(default_factory=dict)
    subscription_id: str | None = Field(default=None, alias="subscriptionId")
    run_id: str | None = Field(default=None, alias="runId")
    schema_version: str = Field(default=ENVELOPE_SCHEMA_VERSION, alias="schemaVersion")

    @property
    def is_fallback(self) -> bool:
        """True when the payload is the raw-record fallback shape."""
        return self.payload.get("schemaVersion") == FALLBACK_SCHEMA_VERSION

    def to_json_line(self) -> bytes:
        """Serialize to compact UTF-8 JSON (no trailing newline)."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    def canonical_payload(self) -> str:
        """Payload as canonical JSON (sorted keys), the event's content identity."""
        return json.dumps(
            self.payload,
            sort_keys=True,
            separators=(",", ":"),
            default=json_serializer,
            ensure_ascii=False,
        )


class RunErrorScope(str, Enum):
    """Smallest scope an error was contained at."""

    RUN = "run"
    SUBSCRIPTION = "subscription"
    LISTING = "listing"
    NODE = "node"
    EVENT = "event"
    BATCH = "batch"


@dataclass(frozen=True)
class RunError:
    """One entry in RunResult.errors."""

    scope: RunErrorScope
    error_type: str
    message: str
    source_id: str | None = None
    subscription_id: str | None = None

    @classmethod
    def from_exception(
        cls,
        scope: RunErrorScope,
        exc: BaseException,
        source_id: str | None = None,
        subscription_id: str | None = None,
    ) -> "RunError":
        message = exc.message if isinstance(exc, PipelineError) else str(exc)
        return cls(
            scope=scope,
            error_type=type(exc).__name__,
            message=message[:500],
            source_id=source_id,
            subscription_id=subscription_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope": self.scope.value,
            "errorType": self.error_type,
            "message": self.message,
            "sourceId": self.source_id,
            "subscriptionId": self.subscription_id,
        }


class SubscriptionState(str, Enum):
    """Terminal state of one subscription traversal."""

    DONE = "done"
    FAILED = "failed"


@dataclass
class SubscriptionOutcome:
    """Result of walking one subscription."""

    subscription_id: str
    state: SubscriptionState = SubscriptionState.DONE
    nodes_visited: int = 0
    errors: list[RunError] = field(default_factory=list)
    cancelled: bool = False


@dataclass(frozen=True)
class BatchOutcome:
    """Result of one flush."""

    sent: bool
    event_count: int
    attempts: int = 0


@dataclass
class RunResult:
    """Summary returned to the trigger for one invocation."""

    run_id: str
    nodes_visited: int = 0
    events_emitted: int = 0
    batches_sent: int = 0
    batches_failed: int = 0
    fallback_events: int = 0
    subscriptions_done: int = 0
    subscriptions_failed: int = 0
    errors: list[RunError] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        """No errors recorded and the run was not cut short."""
        return not self.errors and not self.cancelled

    @property
    def duration_seconds(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "nodesVisited": self.nodes_visited,
            "eventsEmitted": self.events_emitted,
            "batchesSent": self.batches_sent,
            "batchesFailed": self.batches_failed,
            "fallbackEvents": self.fallback_events,
            "subscriptionsDone": self.subscriptions_done,
            "subscriptionsFailed": self.subscriptions_failed,
            "cancelled": self.cancelled,
            "startedAt": json_serializer(self.started_at),
            "finishedAt": json_serializer(self.finished_at) if self.finished_at else None,
            "durationSeconds": self.duration_seconds,
            "errors": [e.to_dict() for e in self.errors],
        }


__all__ = [
    "NodeKind",
    "HierarchyNode",
    "ExportEvent",
    "RunErrorScope",
    "RunError",
    "SubscriptionState",
    "SubscriptionOutcome",
    "BatchOutcome",
    "RunResult",
    "ENVELOPE_SCHEMA_VERSION",
    "FALLBACK_SCHEMA_VERSION",
]
