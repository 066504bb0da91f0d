"""
Traversal of one subscription.

Two independent streams run concurrently per subscription:

    resources:         ListResourceGroups -> ListResources(group) per group
    role assignments:  ListRoleAssignments

Each stream drains an explicit worklist rather than recursing. Depth is fixed
at subscription / resource group / resource, and role-assignment scopes are
opaque strings that are never walked. Items of one stream run one at a time,
so every resource listing of a subscription shares that subscription's slot
of the rate budget.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional

from core.auth.credentials import MANAGEMENT_AUDIENCE
from core.errors.exceptions import PipelineError
from core.logging.context import set_log_context
from core.logging.utilities import log_exception, log_with_context
from tenant_export import metrics
from tenant_export.models import (
    HierarchyNode,
    NodeKind,
    RunError,
    RunErrorScope,
    SubscriptionOutcome,
    SubscriptionState,
)

logger = logging.getLogger(__name__)

NodeCallback = Callable[[HierarchyNode], Awaitable[None]]

DEFAULT_API_VERSIONS = {
    "subscriptions": "2022-12-01",
    "resource_groups": "2021-04-01",
    "resources": "2021-04-01",
    "role_assignments": "2022-04-01",
}


@dataclass(frozen=True)
class WorkItem:
    """One pending listing request."""

    listing: str
    url: str
    kind: NodeKind
    parent_id: str
    page_size: Optional[int] = None


def principal_id_of(record: Any) -> Optional[str]:
    """properties.principalId of a role assignment record, if present."""
    if not isinstance(record, dict):
        return None
    properties = record.get("properties")
    if not isinstance(properties, dict):
        return None
    principal_id = properties.get("principalId")
    return str(principal_id) if principal_id else None


def record_id(record: Any) -> Optional[str]:
    if not isinstance(record, dict):
        return None
    value = record.get("id")
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return str(value)


class HierarchyWalker:
    """
    Walks subscriptions, handing every discovered node to a callback.

    A listing that fails (AuthError, ThrottledError, ClientError, ServerError)
    is recorded as a listing-scope RunError and marks the subscription FAILED;
    the remaining work items of that subscription still run.

    Cancellation is checked before each work item and before each
    continuation page. Once the event is set the remaining worklist is drained
    without fetching; a page already in flight completes.
    """

    def __init__(
        self,
        fetcher,
        management_endpoint: str = "https://management.azure.com",
        api_versions: Optional[dict[str, str]] = None,
        page_size: Optional[int] = None,
        principal_resolver=None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self._fetcher = fetcher
        self._endpoint = management_endpoint.rstrip("/")
        self._api_versions = {**DEFAULT_API_VERSIONS, **(api_versions or {})}
        self._page_size = page_size
        self._resolver = principal_resolver
        self._cancel_event = cancel_event or asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _url(self, path: str, listing: str) -> str:
        return f"{self._endpoint}{path}?api-version={self._api_versions[listing]}"

    def _resource_groups_item(self, subscription: HierarchyNode) -> WorkItem:
        return WorkItem(
            listing="resource_groups",
            url=self._url(f"/subscriptions/{subscription.subscription_id}/resourcegroups", "resource_groups"),
            kind=NodeKind.RESOURCE_GROUP,
            parent_id=subscription.id,
            page_size=self._page_size,
        )

    def _resources_item(self, group_id: str) -> WorkItem:
        return WorkItem(
            listing="resources",
            url=self._url(f"{group_id}/resources", "resources"),
            kind=NodeKind.RESOURCE,
            parent_id=group_id,
            page_size=self._page_size,
        )

    def _role_assignments_item(self, subscription: HierarchyNode) -> WorkItem:
        # roleAssignments does not accept $top
        return WorkItem(
            listing="role_assignments",
            url=self._url(
                f"/subscriptions/{subscription.subscription_id}"
                "/providers/Microsoft.Authorization/roleAssignments",
                "role_assignments",
            ),
            kind=NodeKind.ROLE_ASSIGNMENT,
            parent_id=subscription.id,
        )

    async def walk(self, subscription: HierarchyNode, on_node: NodeCallback) -> SubscriptionOutcome:
        """
        Walk one subscription.

        Args:
            subscription: Root node (kind Subscription)
            on_node: Awaited for every node discovered below the root

        Returns:
            SubscriptionOutcome with state DONE or FAILED
        """
        if subscription.kind is not NodeKind.SUBSCRIPTION:
            raise ValueError(f"walk() expects a Subscription node, got {subscription.kind.value}")

        set_log_context(subscription_id=subscription.subscription_id)
        outcome = SubscriptionOutcome(subscription_id=subscription.subscription_id)

        await asyncio.gather(
            self._drain(deque([self._resource_groups_item(subscription)]), subscription, on_node, outcome),
            self._drain(deque([self._role_assignments_item(subscription)]), subscription, on_node, outcome),
        )

        outcome.state = SubscriptionState.FAILED if outcome.errors else SubscriptionState.DONE
        metrics.subscriptions_completed_counter.labels(state=outcome.state.value).inc()
        logger.info(
            "Subscription walked",
            extra={
                "outcome": outcome.state.value,
                "nodes_visited": outcome.nodes_visited,
                "error_count": len(outcome.errors),
                "cancelled": outcome.cancelled,
            },
        )
        return outcome

    async def _drain(
        self,
        worklist: deque,
        subscription: HierarchyNode,
        on_node: NodeCallback,
        outcome: SubscriptionOutcome,
    ) -> None:
        while worklist:
            if self.cancelled:
                logger.info(
                    "Cancellation requested, dropping pending listings",
                    extra={"records": len(worklist)},
                )
                worklist.clear()
                outcome.cancelled = True
                return

            item = worklist.popleft()
            try:
                await self._process(item, subscription, worklist, on_node, outcome)
            except PipelineError as e:
                outcome.errors.append(
                    RunError.from_exception(
                        RunErrorScope.LISTING,
                        e,
                        source_id=item.parent_id,
                        subscription_id=subscription.subscription_id,
                    )
                )
                log_exception(
                    logger,
                    e,
                    "Listing failed",
                    level=logging.WARNING,
                    include_traceback=False,
                    listing=item.listing,
                    parent_id=item.parent_id,
                )

    async def _process(
        self,
        item: WorkItem,
        subscription: HierarchyNode,
        worklist: deque,
        on_node: NodeCallback,
        outcome: SubscriptionOutcome,
    ) -> None:
        count = 0
        async for record in self._fetcher.fetch(
            item.url, MANAGEMENT_AUDIENCE, item.page_size, stop=self._cancel_event
        ):
            node = await self._to_node(item, record, subscription)
            count += 1
            outcome.nodes_visited += 1
            metrics.nodes_visited_counter.labels(kind=node.kind.value).inc()

            if node.kind is NodeKind.RESOURCE_GROUP and node.id:
                worklist.append(self._resources_item(node.id))

            await on_node(node)

        if self.cancelled:
            outcome.cancelled = True

        log_with_context(
            logger,
            logging.DEBUG,
            "Listing complete",
            listing=item.listing,
            parent_id=item.parent_id,
            records=count,
        )

    async def _to_node(
        self,
        item: WorkItem,
        record: Any,
        subscription: HierarchyNode,
    ) -> HierarchyNode:
        raw = record if isinstance(record, dict) else {"value": record}
        principal = None
        if item.kind is NodeKind.ROLE_ASSIGNMENT and self._resolver is not None:
            principal = await self._resolver.resolve(principal_id_of(raw))

        return HierarchyNode(
            kind=item.kind,
            id=record_id(raw),
            parent_id=item.parent_id,
            subscription_id=subscription.subscription_id,
            raw=raw,
            principal=principal,
        )


def subscription_node(record: Any) -> HierarchyNode:
    """Root node for a record from GET /subscriptions or /subscriptions/{id}.

    A record that is not an object yields a node without ids.
    """
    raw = record if isinstance(record, dict) else {"value": record}
    subscription_id = raw.get("subscriptionId")
    node_id = record_id(raw)
    if not subscription_id and node_id:
        subscription_id = node_id.rstrip("/").split("/")[-1]
    return HierarchyNode(
        kind=NodeKind.SUBSCRIPTION,
        id=node_id,
        parent_id=None,
        subscription_id=subscription_id,
        raw=raw,
    )


__all__ = [
    "HierarchyWalker",
    "WorkItem",
    "NodeCallback",
    "subscription_node",
    "principal_id_of",
    "record_id",
    "DEFAULT_API_VERSIONS",
]
