from __future__ import annotations

from typing import Any, Dict

from targetprocess_mcp.core.client import TargetProcessClient
from targetprocess_mcp.core.models import (
    CreateEntityInput,
    GetEntityInput,
    SearchEntitiesInput,
    UpdateEntityInput,
)
from targetprocess_mcp.core.query import parse_filter, parse_order_by


async def search_entities(
    client: TargetProcessClient, data: SearchEntitiesInput
) -> Dict[str, Any]:
    """
    Search entities of one type with a structured filter.

    Notes:
    - filter is a tree: {"field": "EntityState.Name", "op": "eq", "value": "Open"},
      combined with {"and": [...]}, {"or": [...]} or {"not": {...}}
    - {"preset": "myOpenTasks", "variables": {"currentUser": "me@example.com"}}
      expands a named preset (open, highPriority, createdThisWeek, ...) and can
      be nested inside and/or/not
    - only the first order_by entry is honoured; the rest are reported in warnings
    - take is clamped to 1..1000
    """
    result = await client.search_entities(
        data.entity_type,
        filter=parse_filter(data.filter) if data.filter else None,
        includes=data.include,
        order_by=parse_order_by(data.order_by),
        take=data.take,
        skip=data.skip,
    )
    return {
        "entity_type": data.entity_type,
        "count": len(result["items"]),
        "items": result["items"],
        "next": result["next"],
        "warnings": result["warnings"],
    }


async def get_entity(client: TargetProcessClient, data: GetEntityInput) -> Dict[str, Any]:
    """Fetch one entity by type and ID, optionally with related data."""
    return await client.get_entity(data.entity_type, data.id, includes=data.include)


async def create_entity(
    client: TargetProcessClient, data: CreateEntityInput
) -> Dict[str, Any]:
    """Create an entity; fields use TargetProcess names, e.g. {"Name": ..., "Project": {"Id": 1}}."""
    return await client.create_entity(data.entity_type, data.fields)


async def update_entity(
    client: TargetProcessClient, data: UpdateEntityInput
) -> Dict[str, Any]:
    """Update fields on an existing entity."""
    return await client.update_entity(data.entity_type, data.id, data.fields)
