"""Decoder for the board's historically unstable response shapes.

Known shapes, tried in order:

* a bare list of items
* ``{"data": {"items": [...]}}``
* ``{"items": [...]}``
* GraphQL connection ``{"nodes": [...]}``
* GraphQL connection ``{"edges": [{"node": {...}}]}``

New shapes are added as new entries in ``_DECODERS``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union


@dataclass(frozen=True)
class ValidShape:
    items: List[Any]
    shape: str
    valid_shape: bool = field(default=True, init=False)


@dataclass(frozen=True)
class InvalidShape:
    reason: str
    items: List[Any] = field(default_factory=list, init=False)
    valid_shape: bool = field(default=False, init=False)


CoercedPayload = Union[ValidShape, InvalidShape]


def extract_connection_nodes(connection: Any) -> Optional[List[Any]]:
    """Return the items of a GraphQL connection, or None if it is not one."""
    if not isinstance(connection, dict):
        return None
    nodes = connection.get("nodes")
    if isinstance(nodes, list):
        return [node for node in nodes if node is not None]
    edges = connection.get("edges")
    if isinstance(edges, list):
        return [edge["node"] for edge in edges if isinstance(edge, dict) and edge.get("node") is not None]
    return None


def _bare_list(payload: Any) -> Optional[List[Any]]:
    return list(payload) if isinstance(payload, list) else None


def _data_items(payload: Any) -> Optional[List[Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        items = payload["data"].get("items")
        if isinstance(items, list):
            return list(items)
    return None


def _items(payload: Any) -> Optional[List[Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        return list(payload["items"])
    return None


def _nodes(payload: Any) -> Optional[List[Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("nodes"), list):
        return extract_connection_nodes(payload)
    return None


def _edges(payload: Any) -> Optional[List[Any]]:
    if isinstance(payload, dict) and isinstance(payload.get("edges"), list):
        return extract_connection_nodes(payload)
    return None


_DECODERS: Sequence[Tuple[str, Callable[[Any], Optional[List[Any]]]]] = (
    ("list", _bare_list),
    ("data.items", _data_items),
    ("items", _items),
    ("nodes", _nodes),
    ("edges", _edges),
)


def coerce_project_payload(payload: Any) -> CoercedPayload:
    """Normalize any known payload shape into an item list. Never raises."""
    for shape, decode in _DECODERS:
        items = decode(payload)
        if items is not None:
            return ValidShape(items=items, shape=shape)
    return InvalidShape(reason=describe_payload_shape(payload))


def describe_payload_shape(payload: Any) -> str:
    """Short description of a payload for warning logs."""
    if payload is None:
        return "null"
    if isinstance(payload, bool):
        return "boolean"
    if isinstance(payload, (int, float)):
        return "number"
    if isinstance(payload, str):
        return "string"
    if isinstance(payload, list):
        return f"array(len={len(payload)})"
    if isinstance(payload, dict):
        keys = sorted(str(k) for k in payload)[:8]
        return "object(keys=" + ",".join(keys) + ")" if keys else "object(empty)"
    return type(payload).__name__


def payload_items(payload: Any) -> List[Dict[str, Any]]:
    """Items of ``payload`` that are mappings, dropping anything else."""
    return [item for item in coerce_project_payload(payload).items if isinstance(item, dict)]
