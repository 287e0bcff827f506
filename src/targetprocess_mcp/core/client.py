from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from .cache import DEFAULT_TTL_SECONDS, EntityTypeCache, discover_entity_type_names
from .config import load_env_config
from .entity_registry import endpoint_for
from .errors import UnknownEntityTypeError
from .metadata import MetadataDiscoveryEngine
from .models import MetadataBundle
from .query import (
    DEFAULT_TAKE,
    MAX_TAKE,
    FilterExpr,
    Query,
    QueryCompiler,
    SortSpec,
    WireParams,
)
from .retry import RetryExecutor, RetryPolicy
from .transport import Transport
from ._collections import collection_items, next_link


class TargetProcessClient:
    """
    Shared client for the TargetProcess REST API (v1).
    - Transport does single requests; RetryExecutor retries them
    - Structured queries go through QueryCompiler
    - Entity types are validated against the live EntityTypeCache
    - Returns raw dict payloads; presentation belongs to callers
    """

    def __init__(
        self,
        *,
        domain: Optional[str] = None,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout_seconds: float = 10.0,
        retry: Optional[RetryPolicy] = None,
        max_take: int = MAX_TAKE,
        validate_types: bool = True,
        entity_type_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        logger: Optional[logging.Logger] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url and domain:
            base_url = f"https://{domain.strip().rstrip('/')}/api/v1"
        if not base_url:
            raise ValueError("domain or base_url must be provided.")

        self.log = logger or logging.getLogger("targetprocess_mcp.client")
        self.transport = Transport(
            base_url=base_url,
            username=username,
            password=password,
            access_token=access_token,
            timeout_seconds=timeout_seconds,
            http=http,
        )
        self.base_url = self.transport.base_url
        self.retry = retry if retry is not None else RetryPolicy()
        self.executor = RetryExecutor(self.retry)
        self.compiler = QueryCompiler(max_take=max_take)
        self.validate_types = validate_types

        self.entity_types = EntityTypeCache(
            lambda: discover_entity_type_names(self),
            ttl_seconds=entity_type_ttl_seconds,
        )
        self.metadata = MetadataDiscoveryEngine(self, self.entity_types)

    @classmethod
    def from_env(cls, **kwargs) -> "TargetProcessClient":
        settings = load_env_config()
        return cls(**{**settings.client_kwargs(), **kwargs})

    @property
    def http(self) -> httpx.AsyncClient:
        return self.transport.http

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> "TargetProcessClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --- Core request ---

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        tool: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> Dict[str, Any]:
        """
        Retrying request.
        - Adds format=json
        - Retries transient failures per policy (5xx, network, timeouts)
        - Raises TerminalError once no further attempt will be made
        """
        method = method.upper()
        merged = {"format": "json", **(params or {})}

        async def attempt() -> Dict[str, Any]:
            return await self.transport.send(method, url, params=merged, json=json, tool=tool)

        return await self.executor.execute(
            attempt, policy, context=f"{method} {url}"
        )

    # --- Type validation ---

    async def validate_entity_type(self, entity_type: str) -> str:
        """Return entity_type if the connected instance knows it, else raise."""
        if not self.validate_types:
            return entity_type
        if not self.entity_types.populated:
            await self.entity_types.ensure_populated()
        if not self.entity_types.is_valid(entity_type):
            self.log.info("entity_type.rejected", extra={"entity_type": entity_type})
            raise UnknownEntityTypeError(
                entity_type, valid_types=sorted(self.entity_types.names)
            )
        return entity_type

    @staticmethod
    def validate_entity_id(entity_id: Any) -> int:
        if isinstance(entity_id, bool) or not isinstance(entity_id, int) or entity_id <= 0:
            raise ValueError("Entity ID must be a positive integer")
        return entity_id

    # --- Logical operations ---

    def compile(self, query: Query) -> WireParams:
        return self.compiler.compile(query)

    async def search(self, query: Query, *, tool: Optional[str] = None) -> Dict[str, Any]:
        """Run a compiled query; returns {"items", "next", "warnings"}."""
        wire = self.compiler.compile(query)
        await self.validate_entity_type(query.record_type)
        payload = await self.request(
            "GET",
            f"/{endpoint_for(query.record_type)}",
            params=wire.to_params(),
            tool=tool or "search",
        )
        return {
            "items": collection_items(payload),
            "next": next_link(payload),
            "warnings": list(wire.warnings),
        }

    async def search_entities(
        self,
        entity_type: str,
        *,
        filter: Optional[FilterExpr] = None,
        includes: Iterable[str] = (),
        order_by: Sequence[SortSpec] = (),
        take: int = DEFAULT_TAKE,
        skip: int = 0,
    ) -> Dict[str, Any]:
        take = self.clamp_take(take)
        query = Query(
            record_type=entity_type,
            filter=filter,
            includes=tuple(includes),
            order_by=tuple(order_by),
            take=take,
            skip=max(0, skip),
        )
        return await self.search(query)

    def clamp_take(self, take: int) -> int:
        return max(1, min(take, self.compiler.max_take))

    async def get_entity(
        self, entity_type: str, entity_id: int, *, includes: Iterable[str] = ()
    ) -> Dict[str, Any]:
        self.validate_entity_id(entity_id)
        include = self.compiler.compile_includes(list(includes))
        await self.validate_entity_type(entity_type)
        params = {"include": include} if include else None
        return await self.request(
            "GET",
            f"/{endpoint_for(entity_type)}/{entity_id}",
            params=params,
            tool="get",
        )

    async def create_entity(self, entity_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        await self.validate_entity_type(entity_type)
        return await self.request(
            "POST", f"/{endpoint_for(entity_type)}", json=data, tool="create"
        )

    async def update_entity(
        self, entity_type: str, entity_id: int, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        # TargetProcess updates with POST to the entity URL
        self.validate_entity_id(entity_id)
        await self.validate_entity_type(entity_type)
        return await self.request(
            "POST",
            f"/{endpoint_for(entity_type)}/{entity_id}",
            json=data,
            tool="update",
        )

    async def fetch_metadata(self, *, refresh: bool = False) -> MetadataBundle:
        return await self.metadata.fetch_metadata(refresh=refresh)

    async def list_entity_types(self) -> List[str]:
        snapshot = await self.entity_types.ensure_populated()
        return snapshot.sorted_names()


__all__ = ["TargetProcessClient"]
