"""
Tool namespace for TargetProcess MCP.

Each public coroutine here takes the shared client as its first argument
and is registered by core.registry.register_discovered_tools.
"""

from .entities import create_entity, get_entity, search_entities, update_entity
from .entity_types import inspect_entity_type, list_entity_types

__all__ = [
    "search_entities",
    "get_entity",
    "create_entity",
    "update_entity",
    "list_entity_types",
    "inspect_entity_type",
]
