from __future__ import annotations

from typing import Any, Dict, List

from targetprocess_mcp.core.client import TargetProcessClient
from targetprocess_mcp.core.entity_registry import (
    EntityCategory,
    common_includes,
    entity_types_by_category,
    get_entity_type_info,
)
from targetprocess_mcp.core.errors import UnknownEntityTypeError


def _categories(names: List[str], custom: List[str]) -> Dict[str, List[str]]:
    known = set(names)
    grouped = {
        category.value: [n for n in entity_types_by_category(category) if n in known]
        for category in EntityCategory
    }
    grouped[EntityCategory.CUSTOM.value] = sorted(
        set(grouped[EntityCategory.CUSTOM.value]) | set(custom)
    )
    return {k: v for k, v in grouped.items() if v}


async def list_entity_types(client: TargetProcessClient) -> Dict[str, Any]:
    """List entity types valid on the connected instance (system and custom), grouped by category."""
    snapshot = await client.entity_types.ensure_populated()
    names = snapshot.sorted_names()
    custom = sorted(snapshot.custom_types)
    return {
        "entity_types": names,
        "custom_types": custom,
        "categories": _categories(names, custom),
        "degraded": snapshot.degraded,
        "degradation_reasons": list(snapshot.reasons),
    }


async def inspect_entity_type(
    client: TargetProcessClient, entity_type: str, refresh: bool = False
) -> Dict[str, Any]:
    """
    Describe one entity type: properties, relationships and where the
    information came from. Works from partial metadata when the service's
    metadata endpoints misbehave; `degraded` says so.

    Built-in types also report their parent types and the includes that are
    usually worth requesting with them.
    """
    bundle = await client.fetch_metadata(refresh=refresh)
    descriptor = bundle.descriptor(entity_type)
    if descriptor is None:
        raise UnknownEntityTypeError(entity_type, valid_types=sorted(bundle.type_names()))

    info = get_entity_type_info(entity_type)
    return {
        "entity_type": descriptor.model_dump(),
        "parent_types": list(info.parent_types) if info else [],
        "common_includes": common_includes(entity_type),
        "properties": [p.model_dump() for p in bundle.properties_for(entity_type)],
        "relationships": [r.model_dump() for r in bundle.relationships_for(entity_type)],
        "degraded": bundle.degraded,
        "degradation_reasons": list(bundle.degradation_reasons),
    }
