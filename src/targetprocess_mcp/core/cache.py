from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Tuple,
)

from pydantic import ValidationError

from .errors import TargetProcessError
from .entity_registry import baseline_type_names
from .models import EntityTypeRecord
from .observability import record_event
from .singleflight import SingleFlight
from ._collections import collection_items, next_link

if TYPE_CHECKING:  # pragma: no cover
    from .client import TargetProcessClient

DEFAULT_TTL_SECONDS = 3600  # 1 hour
DEFAULT_DEGRADED_TTL_SECONDS = 60
ENTITY_TYPES_ENDPOINT = "/EntityTypes"
DISCOVERY_PAGE_SIZE = 100
DISCOVERY_MAX_PAGES = 50

log = logging.getLogger("targetprocess_mcp.cache")


@dataclass(frozen=True)
class EntityTypeSet:
    names: FrozenSet[str]
    fetched_at: float
    ttl: float
    degraded: bool = False
    reasons: Tuple[str, ...] = ()
    custom_types: FrozenSet[str] = frozenset()

    def is_expired(self, now: float) -> bool:
        return now - self.fetched_at > self.ttl

    def sorted_names(self) -> List[str]:
        return sorted(self.names)


class TypeListing(list):
    """Discovered type names in first-seen order, plus notes on skipped records."""

    def __init__(self, names: Iterable[str] = (), reasons: Iterable[str] = ()):
        super().__init__(names)
        self.reasons: Tuple[str, ...] = tuple(reasons)


async def discover_entity_type_names(
    client: "TargetProcessClient",
    *,
    page_size: int = DISCOVERY_PAGE_SIZE,
    max_pages: int = DISCOVERY_MAX_PAGES,
) -> TypeListing:
    """
    Page through /EntityTypes (each page retried by the client) and return
    type names in first-seen order. Stops when a page has no Next link or
    comes back empty. Records that fail validation are skipped and counted.
    """
    names: List[str] = []
    seen = set()
    skipped = 0
    skip = 0
    for _ in range(max_pages):
        payload = await client.request(
            "GET",
            ENTITY_TYPES_ENDPOINT,
            params={"take": page_size, "skip": skip},
            tool="entity_types",
        )
        items = collection_items(payload)
        for item in items:
            try:
                record = EntityTypeRecord.model_validate(item)
            except ValidationError:
                skipped += 1
                continue
            if record.name not in seen:
                seen.add(record.name)
                names.append(record.name)
        if not items or not next_link(payload):
            break
        # skip counts raw records, valid or not
        skip += len(items)

    reasons = []
    if skipped:
        reasons.append(f"entity type listing skipped {skipped} malformed entries")
        log.warning("entity_types.malformed_records skipped=%d", skipped)
    return TypeListing(names, reasons)


class EntityTypeCache:
    """
    Process-wide set of valid entity type names for one TargetProcess instance.

    Lifecycle:
    - starts empty; is_valid() answers from the baseline until populated
    - ensure_populated() runs discovery once, shared by concurrent callers
    - after the TTL, is_valid() keeps answering from the stale set and
      kicks off a background refresh
    - invalidate() forces the next ensure_populated() to refetch
    """

    def __init__(
        self,
        discover: Callable[[], Awaitable[Iterable[str]]],
        *,
        baseline: Optional[Iterable[str]] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        degraded_ttl_seconds: float = DEFAULT_DEGRADED_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self._discover = discover
        self._baseline: FrozenSet[str] = frozenset(
            baseline if baseline is not None else baseline_type_names()
        )
        self.ttl_seconds = ttl_seconds
        self.degraded_ttl_seconds = degraded_ttl_seconds
        self._clock = clock
        self.log = logger or log

        self._snapshot: Optional[EntityTypeSet] = None
        self._stale = False
        self._generation = 0
        self._flight: SingleFlight[EntityTypeSet] = SingleFlight()

    # --- Read-only views ---

    @property
    def baseline(self) -> FrozenSet[str]:
        return self._baseline

    @property
    def names(self) -> FrozenSet[str]:
        snap = self._snapshot
        return snap.names if snap is not None else self._baseline

    @property
    def populated(self) -> bool:
        return self._snapshot is not None

    @property
    def degraded(self) -> bool:
        snap = self._snapshot
        return snap.degraded if snap is not None else False

    @property
    def refreshing(self) -> bool:
        return self._flight.in_flight

    def snapshot(self) -> Optional[EntityTypeSet]:
        return self._snapshot

    def needs_refresh(self) -> bool:
        snap = self._snapshot
        return snap is None or self._stale or snap.is_expired(self._clock())

    # --- Operations ---

    def is_valid(self, name: str) -> bool:
        """Non-blocking membership check; never raises."""
        if not isinstance(name, str) or not name:
            return False
        if self.needs_refresh():
            self._schedule_refresh()
        return name in self.names

    async def ensure_populated(self) -> EntityTypeSet:
        snap = self._snapshot
        if snap is not None and not self.needs_refresh():
            return snap
        return await self.refresh()

    async def refresh(self) -> EntityTypeSet:
        """
        Run discovery now, or join the discovery already in flight. A flight
        that started before the latest invalidate() is not joined; it is
        allowed to finish and a new one is started.
        """
        return await self._flight.run(self._populate, generation=self._generation)

    def invalidate(self) -> None:
        self._generation += 1
        self._stale = True

    # --- Internals ---

    def _schedule_refresh(self) -> None:
        if self._flight.in_flight:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # no loop to run on; the next ensure_populated() will refresh
            return
        self.log.debug("entity_types.background_refresh")
        self._flight.start(self._populate, generation=self._generation)

    async def _populate(self) -> EntityTypeSet:
        generation = self._generation
        now = self._clock()
        try:
            discovered = await self._discover()
            found = frozenset(n.strip() for n in discovered if isinstance(n, str) and n.strip())
        except (TargetProcessError, ValueError) as exc:
            snap = self._fallback(now, f"entity type discovery failed: {exc}")
            self.log.warning(
                "entity_types.discovery_failed",
                extra={"error_type": type(exc).__name__},
            )
        except Exception as exc:  # noqa: BLE001 - damped by the degraded TTL
            snap = self._fallback(now, f"entity type discovery error: {exc}")
            self.log.exception(
                "entity_types.discovery_crashed",
                extra={"error_type": type(exc).__name__},
            )
        else:
            if found:
                snap = EntityTypeSet(
                    names=self._baseline | found,
                    fetched_at=now,
                    ttl=self.ttl_seconds,
                    reasons=tuple(getattr(discovered, "reasons", ())),
                    custom_types=found - self._baseline,
                )
                record_event(
                    "entity_types.populated",
                    count=len(snap.names),
                    custom=len(snap.custom_types),
                    reasons=snap.reasons or None,
                )
            else:
                snap = self._fallback(now, "entity type discovery returned no types")

        self._snapshot = snap
        if generation == self._generation:
            self._stale = False
        return snap

    def _fallback(self, now: float, reason: str) -> EntityTypeSet:
        previous = self._snapshot
        # keep what an earlier successful discovery learned
        if previous is not None:
            names, custom = previous.names, previous.custom_types
        else:
            names, custom = self._baseline, frozenset()
        return EntityTypeSet(
            names=names | self._baseline,
            fetched_at=now,
            ttl=self.degraded_ttl_seconds,
            degraded=True,
            reasons=(reason,),
            custom_types=custom,
        )


__all__ = [
    "EntityTypeCache",
    "EntityTypeSet",
    "discover_entity_type_names",
    "TypeListing",
    "DEFAULT_TTL_SECONDS",
    "ENTITY_TYPES_ENDPOINT",
]
