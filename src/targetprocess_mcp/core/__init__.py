"""Core domain surface for targetprocess-mcp (transport-agnostic)."""

from .cache import EntityTypeCache, EntityTypeSet, discover_entity_type_names
from .client import TargetProcessClient
from .config import TargetProcessSettings, create_client_from_env, load_env_config
from .entity_registry import BASELINE_ENTITY_TYPES, EntityCategory, endpoint_for
from .errors import (
    APIError,
    ClientError,
    CompileError,
    TargetProcessError,
    TargetProcessParseError,
    TerminalError,
    TransientAPIError,
    UnknownEntityTypeError,
)
from .metadata import MetadataDiscoveryEngine, repair_json
from .models import MetadataBundle
from .query import (
    And,
    Comparison,
    Not,
    Or,
    Query,
    QueryCompiler,
    SortSpec,
    WireParams,
    build_preset,
    parse_filter,
    parse_order_by,
)
from .registry import (
    discover_tool_modules,
    iter_tool_functions,
    register_discovered_tools,
)
from .retry import AttemptTrace, RetryExecutor, RetryPolicy
from .transport import Transport

__all__ = [
    # Client
    "TargetProcessClient",
    "Transport",
    "RetryExecutor",
    "RetryPolicy",
    "AttemptTrace",
    # Queries
    "Query",
    "QueryCompiler",
    "WireParams",
    "Comparison",
    "And",
    "Or",
    "Not",
    "SortSpec",
    "parse_filter",
    "parse_order_by",
    "build_preset",
    # Entity types and metadata
    "EntityTypeCache",
    "EntityTypeSet",
    "discover_entity_type_names",
    "MetadataDiscoveryEngine",
    "MetadataBundle",
    "repair_json",
    "BASELINE_ENTITY_TYPES",
    "EntityCategory",
    "endpoint_for",
    # Exceptions
    "TargetProcessError",
    "CompileError",
    "APIError",
    "TransientAPIError",
    "ClientError",
    "TargetProcessParseError",
    "TerminalError",
    "UnknownEntityTypeError",
    # Config helpers
    "TargetProcessSettings",
    "create_client_from_env",
    "load_env_config",
    # Registry helpers
    "discover_tool_modules",
    "iter_tool_functions",
    "register_discovered_tools",
]
