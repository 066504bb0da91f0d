"""
Mapping of hierarchy nodes onto the canonical event envelope.

normalize() is total: every node yields either an ExportEvent or an
EventError, nothing is raised. Payloads depend only on the node, so the same
node always produces byte-identical canonical payloads; timestampUtc is the
only field that reflects emission time.

A node of a known kind whose raw record has an unexpected shape still yields
an event, carrying {"schemaVersion": "fallback", "raw": <record>} as payload.
"""

import copy
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from core.errors.exceptions import EventError
from tenant_export.models import FALLBACK_SCHEMA_VERSION, ExportEvent, HierarchyNode, NodeKind

logger = logging.getLogger(__name__)

PayloadMapper = Callable[[HierarchyNode], dict[str, Any]]


def _properties(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    properties = raw.get("properties")
    if properties is None:
        return {}
    if not isinstance(properties, Mapping):
        raise TypeError(f"properties must be an object, got {type(properties).__name__}")
    return properties


def _tags(raw: Mapping[str, Any]) -> dict[str, Any]:
    tags = raw.get("tags")
    if tags is None:
        return {}
    if not isinstance(tags, Mapping):
        raise TypeError(f"tags must be an object, got {type(tags).__name__}")
    return dict(tags)


def _resource_group_of(resource_id: str) -> Optional[str]:
    parts = resource_id.strip("/").split("/")
    lowered = [p.lower() for p in parts]
    if "resourcegroups" in lowered:
        index = lowered.index("resourcegroups")
        if index + 1 < len(parts):
            return parts[index + 1]
    return None


def _map_subscription(node: HierarchyNode) -> dict[str, Any]:
    raw = node.raw
    return {
        "subscriptionId": raw.get("subscriptionId") or node.subscription_id,
        "displayName": raw.get("displayName"),
        "state": raw.get("state"),
        "tenantId": raw.get("tenantId"),
        "tags": _tags(raw),
    }


def _map_resource_group(node: HierarchyNode) -> dict[str, Any]:
    raw = node.raw
    return {
        "name": raw.get("name"),
        "location": raw.get("location"),
        "provisioningState": _properties(raw).get("provisioningState"),
        "managedBy": raw.get("managedBy"),
        "tags": _tags(raw),
    }


def _map_resource(node: HierarchyNode) -> dict[str, Any]:
    raw = node.raw
    sku = raw.get("sku")
    if sku is not None and not isinstance(sku, Mapping):
        raise TypeError(f"sku must be an object, got {type(sku).__name__}")
    return {
        "name": raw.get("name"),
        "type": raw.get("type"),
        "location": raw.get("location"),
        "kind": raw.get("kind"),
        "sku": dict(sku) if sku else None,
        "managedBy": raw.get("managedBy"),
        "resourceGroup": _resource_group_of(node.id),
        "tags": _tags(raw),
    }


def _map_role_assignment(node: HierarchyNode) -> dict[str, Any]:
    properties = _properties(node.raw)
    payload = {
        "principalId": properties.get("principalId"),
        "principalType": properties.get("principalType"),
        "roleDefinitionId": properties.get("roleDefinitionId"),
        "scope": properties.get("scope"),
        "condition": properties.get("condition"),
        "principalResolved": node.principal is not None,
    }
    if node.principal is not None:
        payload["principalDisplayName"] = node.principal.get("displayName")
        payload["principalObjectType"] = node.principal.get("@odata.type")
    return payload


PAYLOAD_MAPPERS: dict[NodeKind, PayloadMapper] = {
    NodeKind.SUBSCRIPTION: _map_subscription,
    NodeKind.RESOURCE_GROUP: _map_resource_group,
    NodeKind.RESOURCE: _map_resource,
    NodeKind.ROLE_ASSIGNMENT: _map_role_assignment,
}


def fallback_payload(raw: Any) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        raw = copy.deepcopy(dict(raw))
    else:
        raw = str(raw)
    return {"schemaVersion": FALLBACK_SCHEMA_VERSION, "raw": raw}


def normalize(
    node: HierarchyNode,
    run_id: Optional[str] = None,
    emitted_at: Optional[datetime] = None,
) -> ExportEvent | EventError:
    """
    Normalize one node.

    Args:
        node: Node discovered during traversal
        run_id: Lineage metadata copied onto the envelope
        emitted_at: Emission timestamp (defaults to now, UTC)

    Returns:
        ExportEvent, or EventError when the node has no usable id or an
        unknown kind
    """
    if not isinstance(node.id, str) or not node.id.strip():
        return EventError(
            f"{getattr(node.kind, 'value', node.kind)} record has no id",
            source_id=None,
            context={"parent_id": node.parent_id, "subscription_id": node.subscription_id},
        )

    mapper = PAYLOAD_MAPPERS.get(node.kind)
    if mapper is None:
        return EventError(f"No payload mapper for kind {node.kind!r}", source_id=node.id)

    try:
        payload = mapper(node)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.debug(
            "Unexpected record shape, using fallback payload",
            extra={"kind": node.kind.value, "source_id": node.id, "error_message": str(e)[:200]},
        )
        payload = fallback_payload(node.raw)

    try:
        return ExportEvent(
            event_type=node.kind.value,
            source_id=node.id,
            parent_id=node.parent_id,
            timestamp_utc=emitted_at or datetime.now(timezone.utc),
            payload=payload,
            subscription_id=node.subscription_id,
            run_id=run_id,
        )
    except ValueError as e:
        # pydantic.ValidationError subclasses ValueError
        return EventError(f"Invalid event envelope: {e}", source_id=node.id, cause=e)


__all__ = ["normalize", "fallback_payload", "PAYLOAD_MAPPERS"]
