"""
Best-effort metadata discovery.

The bundle is built by folding an ordered list of stages over a draft.
Each stage adds what it can and reports why it fell short:

1. primary   - type names from the EntityTypes listing (via EntityTypeCache)
2. secondary - per-type properties/relationships from /Index/meta, with a
               bounded repair pass for truncated payloads
3. tertiary  - only if nothing produced type names: request an invalid type
               and read the valid names out of the error message
4. static    - always merge the compiled-in baseline descriptors

fetch_metadata() never raises; failures show up as `degraded` plus
`degradation_reasons` on the returned bundle.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)

from pydantic import ValidationError

from .cache import EntityTypeCache
from .entity_registry import (
    BASELINE_ENTITY_TYPES,
    EntityTypeInfo,
    endpoint_for,
    include_target,
)
from .errors import TargetProcessError, TargetProcessParseError, TerminalError
from .models import EntityTypeDescriptor, MetadataBundle, Property, Relationship
from .observability import record_event
from .query import is_type_name
from .retry import RetryPolicy
from .singleflight import SingleFlight
from ._collections import collection_items

if TYPE_CHECKING:  # pragma: no cover
    from .client import TargetProcessClient

METADATA_ENDPOINT = "/Index/meta"
INVALID_ENTITY_TYPE = "NonExistentType"
DEFAULT_TTL_SECONDS = 600  # 10 minutes
DEFAULT_DEGRADED_TTL_SECONDS = 60

MAX_REPAIR_BYTES = 20 * 1024 * 1024
MAX_REPAIR_CANDIDATES = 16

REASON_SECONDARY_PARSE_FAILED = "secondary metadata parse failed"
REASON_SECONDARY_REPAIRED = "secondary metadata repaired"

STAGE_PRIMARY = "primary"
STAGE_SECONDARY = "secondary"
STAGE_TERTIARY = "tertiary"
STAGE_STATIC = "static"

log = logging.getLogger("targetprocess_mcp.metadata")


# --- JSON repair ----------------------------------------------------------- #


def _closers(stack: Iterable[str]) -> str:
    return "".join(reversed(tuple(stack)))


def repair_json(text: str) -> Optional[Any]:
    """
    Try to recover a document from a truncated or trailing-garbage payload.

    Candidates, most complete first:
    - the longest valid prefix (trailing garbage dropped)
    - the whole text with an open string and open containers closed
    - cuts at the latest member boundaries, containers closed
    At most MAX_REPAIR_CANDIDATES are parsed. Returns None when nothing
    parses or the structure is broken in a way truncation can't explain.
    """
    if not text:
        return None
    text = text.lstrip("\ufeff").strip()
    if not text or len(text) > MAX_REPAIR_BYTES:
        return None

    try:
        return json.loads(text)
    except ValueError:
        pass
    try:
        value, _ = json.JSONDecoder().raw_decode(text)
        return value
    except ValueError:
        pass

    stack: List[str] = []
    cuts: List[Tuple[int, Tuple[str, ...]]] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
            cuts.append((i + 1, tuple(stack)))
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            cuts.append((i + 1, tuple(stack)))
        elif ch == ",":
            cuts.append((i, tuple(stack)))

    candidates: List[str] = []
    if in_string:
        body = text[:-1] if escaped else text
        candidates.append(body + '"' + _closers(stack))
    else:
        candidates.append(text.rstrip(", \t\r\n") + _closers(stack))
    for end, open_stack in reversed(cuts):
        if len(candidates) >= MAX_REPAIR_CANDIDATES:
            break
        candidates.append(text[:end].rstrip(", \t\r\n") + _closers(open_stack))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


# --- Stage plumbing -------------------------------------------------------- #


@dataclass
class StageOutcome:
    descriptors: List[EntityTypeDescriptor] = field(default_factory=list)
    properties: Dict[str, List[Property]] = field(default_factory=dict)
    relationships: Dict[str, List[Relationship]] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)

    @classmethod
    def failure(cls, reason: str) -> "StageOutcome":
        return cls(reasons=[reason])

    @property
    def degraded(self) -> bool:
        return bool(self.reasons)


@dataclass
class DiscoveryDraft:
    """Accumulator the stages are folded into."""

    descriptors: Dict[str, EntityTypeDescriptor] = field(default_factory=dict)
    properties: Dict[str, List[Property]] = field(default_factory=dict)
    relationships: Dict[str, List[Relationship]] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)

    def has_discovered_types(self) -> bool:
        return any(
            src != STAGE_STATIC for d in self.descriptors.values() for src in d.sources
        )

    def absorb(self, stage: str, outcome: StageOutcome) -> None:
        for desc in outcome.descriptors:
            self._merge_descriptor(stage, desc)

        for type_name, props in outcome.properties.items():
            current = self.properties.setdefault(type_name, [])
            known = {p.name for p in current}
            current.extend(p for p in props if p.name not in known)

        for type_name, rels in outcome.relationships.items():
            current_rels = self.relationships.setdefault(type_name, [])
            known = {r.name for r in current_rels}
            for rel in rels:
                if rel.name not in known:
                    current_rels.append(rel)
                    known.add(rel.name)

        self.reasons.extend(outcome.reasons)

    def _merge_descriptor(self, stage: str, desc: EntityTypeDescriptor) -> None:
        existing = self.descriptors.get(desc.name)
        if existing is None:
            self.descriptors[desc.name] = desc.model_copy(update={"sources": (stage,)})
            return
        update: Dict[str, Any] = {"sources": existing.sources + (stage,)}
        for attr in ("description", "category", "supports_custom_fields"):
            if getattr(existing, attr) is None and getattr(desc, attr) is not None:
                update[attr] = getattr(desc, attr)
        self.descriptors[desc.name] = existing.model_copy(update=update)

    def to_bundle(self, *, fetched_at: float) -> MetadataBundle:
        return MetadataBundle(
            entity_types=list(self.descriptors.values()),
            relationships_by_type={k: list(v) for k, v in self.relationships.items() if v},
            properties_by_type={k: list(v) for k, v in self.properties.items() if v},
            degraded=bool(self.reasons),
            degradation_reasons=list(self.reasons),
            fetched_at=fetched_at,
        )


class DiscoveryStage:
    name = "stage"

    def applies(self, draft: DiscoveryDraft) -> bool:
        return True

    async def run(self, draft: DiscoveryDraft) -> StageOutcome:  # pragma: no cover
        raise NotImplementedError


def _unwrap(exc: BaseException) -> BaseException:
    return exc.last_error if isinstance(exc, TerminalError) else exc


def _describe(name: str, stage: str, **fields: Any) -> EntityTypeDescriptor:
    return EntityTypeDescriptor(
        name=name,
        is_custom=name not in BASELINE_ENTITY_TYPES,
        sources=(stage,),
        **fields,
    )


# --- Stages ---------------------------------------------------------------- #


class PrimaryTypeListingStage(DiscoveryStage):
    """Type names from the paginated listing, shared with EntityTypeCache."""

    name = STAGE_PRIMARY

    def __init__(self, type_cache: EntityTypeCache):
        self.type_cache = type_cache

    async def run(self, draft: DiscoveryDraft) -> StageOutcome:
        snapshot = await self.type_cache.ensure_populated()
        if snapshot.degraded:
            detail = "; ".join(snapshot.reasons) or "unknown error"
            return StageOutcome.failure(f"primary type listing failed: {detail}")
        return StageOutcome(
            descriptors=[_describe(n, self.name) for n in snapshot.sorted_names()]
        )


class SecondaryMetadataStage(DiscoveryStage):
    """
    Per-type properties and relationships from the detailed metadata document:
      {"Items": [{"Name": "Bug", "Description": "...",
                  "Fields": [{"Name", "Type", "IsRequired", ...}],
                  "References": [{"Name", "Type"}],
                  "Collections": [{"Name", "Type"}]}]}
    """

    name = STAGE_SECONDARY

    def __init__(self, client: "TargetProcessClient", *, endpoint: str = METADATA_ENDPOINT):
        self.client = client
        self.endpoint = endpoint

    async def run(self, draft: DiscoveryDraft) -> StageOutcome:
        reasons: List[str] = []
        try:
            doc: Any = await self.client.request("GET", self.endpoint, tool="metadata")
        except TargetProcessError as exc:
            cause = _unwrap(exc)
            if not isinstance(cause, TargetProcessParseError):
                message = getattr(exc, "message", None) or str(exc)
                return StageOutcome.failure(f"secondary metadata unavailable: {message}")
            doc = repair_json(cause.body)
            if doc is None:
                log.warning("metadata.repair_failed", extra={"endpoint": self.endpoint})
                return StageOutcome.failure(REASON_SECONDARY_PARSE_FAILED)
            reasons.append(REASON_SECONDARY_REPAIRED)

        try:
            outcome = self._parse_document(doc, draft)
        except ValueError as exc:
            return StageOutcome.failure(f"secondary metadata malformed: {exc}")
        outcome.reasons[:0] = reasons
        return outcome

    def _parse_document(self, doc: Any, draft: DiscoveryDraft) -> StageOutcome:
        if not isinstance(doc, dict):
            raise ValueError(f"expected an object, got {type(doc).__name__}")
        items = collection_items(doc)

        outcome = StageOutcome()
        raw_by_name: Dict[str, Dict[str, Any]] = {}
        skipped = 0
        for item in items:
            name = item.get("Name")
            if not is_type_name(name):
                skipped += 1
                continue
            raw_by_name[name] = item
        if not raw_by_name:
            raise ValueError("no entity types in document")

        known_types = set(raw_by_name) | set(draft.descriptors) | set(BASELINE_ENTITY_TYPES)
        for name, item in raw_by_name.items():
            description = item.get("Description")
            outcome.descriptors.append(
                _describe(
                    name,
                    self.name,
                    description=description if isinstance(description, str) else None,
                )
            )
            props, bad_props = self._properties(item)
            rels, bad_rels = self._relationships(item, props, known_types)
            skipped += bad_props + bad_rels
            if props:
                outcome.properties[name] = props
            if rels:
                outcome.relationships[name] = rels

        if skipped:
            outcome.reasons.append(f"secondary metadata skipped {skipped} malformed entries")
        return outcome

    @staticmethod
    def _properties(item: Dict[str, Any]) -> Tuple[List[Property], int]:
        fields = item.get("Fields") or []
        if not isinstance(fields, list):
            return [], 1
        props: List[Property] = []
        bad = 0
        for raw in fields:
            try:
                props.append(Property.model_validate(raw))
            except ValidationError:
                bad += 1
        return props, bad

    @staticmethod
    def _relationships(
        item: Dict[str, Any], props: Sequence[Property], known_types: set
    ) -> Tuple[List[Relationship], int]:
        rels: List[Relationship] = []
        seen: set = set()
        bad = 0
        for key, cardinality in (("References", "one"), ("Collections", "many")):
            entries = item.get(key) or []
            if not isinstance(entries, list):
                bad += 1
                continue
            for raw in entries:
                if not isinstance(raw, dict):
                    bad += 1
                    continue
                try:
                    rel = Relationship.model_validate({**raw, "cardinality": cardinality})
                except ValidationError:
                    bad += 1
                    continue
                if rel.name not in seen:
                    seen.add(rel.name)
                    rels.append(rel)
        # fields typed as another entity are to-one links
        for prop in props:
            if prop.type in known_types and prop.name not in seen:
                seen.add(prop.name)
                rels.append(Relationship(name=prop.name, target_type=prop.type, cardinality="one"))
        return rels, bad


_VALID_TYPES_RE = re.compile(
    r"valid\s+(?:entity\s+|resource\s+)?types\s+(?:are|include)\s*:?\s*(?P<names>[^\n]+)",
    re.IGNORECASE,
)


def extract_types_from_error(exc: BaseException) -> List[str]:
    """Pull 'Valid entity types are: A, B, C' style lists out of an API error."""
    texts: List[str] = []
    payload = getattr(exc, "response_json", None)
    if isinstance(payload, dict):
        for key in ("Message", "ErrorMessage", "Description"):
            value = payload.get(key)
            if isinstance(value, str):
                texts.append(value)
    for attr in ("message", "response_text"):
        value = getattr(exc, attr, None)
        if isinstance(value, str):
            texts.append(value)
    texts.append(str(exc))

    for text in texts:
        match = _VALID_TYPES_RE.search(text)
        if not match:
            continue
        names: List[str] = []
        for part in match.group("names").split(","):
            candidate = part.strip().strip("[]()'\"`").rstrip(".;").strip("'\"`")
            if is_type_name(candidate) and candidate not in names:
                names.append(candidate)
        if names:
            return names
    return []


class InvalidTypeStage(DiscoveryStage):
    """
    Last resort: request an entity under a type that can't exist and read
    the valid type names out of the error the service sends back.
    """

    name = STAGE_TERTIARY

    def __init__(self, client: "TargetProcessClient", *, invalid_type: str = INVALID_ENTITY_TYPE):
        self.client = client
        self.invalid_type = invalid_type

    def applies(self, draft: DiscoveryDraft) -> bool:
        return not draft.has_discovered_types()

    async def run(self, draft: DiscoveryDraft) -> StageOutcome:
        try:
            await self.client.request(
                "GET",
                f"/{endpoint_for(self.invalid_type)}/1",
                tool="metadata_invalid_type",
                policy=RetryPolicy(max_attempts=1),
            )
        except TargetProcessError as exc:
            names = extract_types_from_error(_unwrap(exc))
            if not names:
                return StageOutcome.failure("tertiary invalid-type lookup found no type list")
            return StageOutcome(descriptors=[_describe(n, self.name) for n in names])
        return StageOutcome.failure("tertiary invalid-type lookup did not fail as expected")


def _static_relationships(info: EntityTypeInfo) -> List[Relationship]:
    rels: List[Relationship] = []
    seen: set = set()
    for parent in info.parent_types:
        seen.add(parent)
        rels.append(Relationship(name=parent, target_type=parent, cardinality="one"))
    for include in info.common_includes:
        if include in seen:
            continue
        seen.add(include)
        target, cardinality = include_target(include)
        rels.append(Relationship(name=include, target_type=target, cardinality=cardinality))
    return rels


class StaticEnhancementStage(DiscoveryStage):
    """Baseline types are always fully described."""

    name = STAGE_STATIC

    def __init__(self, registry: Optional[Dict[str, EntityTypeInfo]] = None):
        self.registry = registry if registry is not None else BASELINE_ENTITY_TYPES

    async def run(self, draft: DiscoveryDraft) -> StageOutcome:
        outcome = StageOutcome()
        for name, info in self.registry.items():
            outcome.descriptors.append(
                EntityTypeDescriptor(
                    name=name,
                    description=info.description,
                    category=info.category.value,
                    supports_custom_fields=info.supports_custom_fields,
                    is_custom=False,
                    sources=(self.name,),
                )
            )
            rels = _static_relationships(info)
            if rels:
                outcome.relationships[name] = rels
        return outcome


def default_stages(
    client: "TargetProcessClient", type_cache: EntityTypeCache
) -> List[DiscoveryStage]:
    return [
        PrimaryTypeListingStage(type_cache),
        SecondaryMetadataStage(client),
        InvalidTypeStage(client),
        StaticEnhancementStage(),
    ]


async def fold_stages(
    stages: Sequence[DiscoveryStage],
    draft: Optional[DiscoveryDraft] = None,
    *,
    logger: Optional[logging.Logger] = None,
) -> DiscoveryDraft:
    """Run each applicable stage in order and absorb its outcome into the draft."""
    logger = logger or log
    draft = draft if draft is not None else DiscoveryDraft()
    for stage in stages:
        if not stage.applies(draft):
            logger.debug("metadata.stage_skipped", extra={"stage": stage.name})
            continue
        try:
            outcome = await stage.run(draft)
        except Exception as exc:  # noqa: BLE001 - recorded on the bundle
            logger.exception("metadata.stage_crashed", extra={"stage": stage.name})
            outcome = StageOutcome.failure(f"{stage.name} stage error: {exc}")
        draft.absorb(stage.name, outcome)
        if outcome.degraded:
            record_event("metadata.stage_failed", stage=stage.name, reasons=outcome.reasons)
    return draft


# --- Engine ---------------------------------------------------------------- #


class MetadataDiscoveryEngine:
    """
    Owns the process-wide MetadataBundle: built on demand through the
    stage pipeline, cached for ttl_seconds, rebuilt single-flight, and
    handed out as deep copies.
    """

    def __init__(
        self,
        client: "TargetProcessClient",
        type_cache: EntityTypeCache,
        *,
        stages: Optional[Sequence[DiscoveryStage]] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        degraded_ttl_seconds: float = DEFAULT_DEGRADED_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.type_cache = type_cache
        self.stages: List[DiscoveryStage] = (
            list(stages) if stages is not None else default_stages(client, type_cache)
        )
        self.ttl_seconds = ttl_seconds
        self.degraded_ttl_seconds = degraded_ttl_seconds
        self._clock = clock
        self.log = logger or log

        self._bundle: Optional[MetadataBundle] = None
        self._built_at = 0.0
        self._generation = 0
        self._stale = False
        self._flight: SingleFlight[MetadataBundle] = SingleFlight()

    def snapshot(self) -> Optional[MetadataBundle]:
        bundle = self._bundle
        return bundle.model_copy(deep=True) if bundle is not None else None

    def invalidate(self) -> None:
        self._generation += 1
        self._stale = True

    def _needs_rebuild(self) -> bool:
        bundle = self._bundle
        if bundle is None or self._stale:
            return True
        ttl = self.degraded_ttl_seconds if bundle.degraded else self.ttl_seconds
        return self._clock() - self._built_at > ttl

    async def fetch_metadata(self, *, refresh: bool = False) -> MetadataBundle:
        """Return the best bundle obtainable. Never raises."""
        if refresh:
            self.invalidate()
        bundle = self._bundle
        if bundle is None or self._needs_rebuild():
            bundle = await self._flight.run(self._build, generation=self._generation)
        return bundle.model_copy(deep=True)

    async def _build(self) -> MetadataBundle:
        generation = self._generation
        try:
            draft = await fold_stages(self.stages, logger=self.log)
        except Exception as exc:  # noqa: BLE001 - the engine never fails outright
            self.log.exception("metadata.build_failed")
            draft = await fold_stages([StaticEnhancementStage()], logger=self.log)
            draft.reasons.append(f"metadata discovery error: {exc}")

        bundle = draft.to_bundle(fetched_at=time.time())
        self._bundle = bundle
        self._built_at = self._clock()
        if generation == self._generation:
            self._stale = False

        record_event(
            "metadata.built",
            types=len(bundle.entity_types),
            degraded=bundle.degraded,
        )
        return bundle


__all__ = [
    "MetadataDiscoveryEngine",
    "DiscoveryStage",
    "DiscoveryDraft",
    "StageOutcome",
    "PrimaryTypeListingStage",
    "SecondaryMetadataStage",
    "InvalidTypeStage",
    "StaticEnhancementStage",
    "default_stages",
    "fold_stages",
    "repair_json",
    "extract_types_from_error",
    "METADATA_ENDPOINT",
    "REASON_SECONDARY_PARSE_FAILED",
    "REASON_SECONDARY_REPAIRED",
]
