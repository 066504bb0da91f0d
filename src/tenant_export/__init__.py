"""
Tenant hierarchy export engine.

Enumerates subscriptions, resource groups, resources and role assignments
under an Azure tenant and streams them as normalized events to Event Hub.

    from config import load_config
    from tenant_export import run_export

    result = await run_export(load_config())
"""

from tenant_export.emitter import BatchingEmitter
from tenant_export.fetcher import PagedFetcher
from tenant_export.models import (
    BatchOutcome,
    ExportEvent,
    HierarchyNode,
    NodeKind,
    RunError,
    RunErrorScope,
    RunResult,
    SubscriptionOutcome,
    SubscriptionState,
)
from tenant_export.normalizer import normalize
from tenant_export.orchestrator import RunOrchestrator, run_export
from tenant_export.principals import PrincipalResolver
from tenant_export.sinks import EventHubSink, EventSink, JsonLinesFileSink, create_sink
from tenant_export.walker import HierarchyWalker

__version__ = "0.1.0"

__all__ = [
    "BatchingEmitter",
    "PagedFetcher",
    "PrincipalResolver",
    "HierarchyWalker",
    "RunOrchestrator",
    "run_export",
    "normalize",
    "EventSink",
    "EventHubSink",
    "JsonLinesFileSink",
    "create_sink",
    "NodeKind",
    "HierarchyNode",
    "ExportEvent",
    "RunError",
    "RunErrorScope",
    "RunResult",
    "SubscriptionOutcome",
    "SubscriptionState",
    "BatchOutcome",
]
