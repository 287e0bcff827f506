"""
Structured queries and their compilation to the TargetProcess REST grammar.

Callers build a FilterExpr tree (Comparison / And / Or / Not) instead of
concatenating strings; QueryCompiler owns every quoting and formatting
rule. Example:

    Query(
        record_type="Bug",
        filter=And(
            Comparison("Priority.Name", "eq", "High"),
            Comparison("AssignedUser", "isNull"),
        ),
        take=50,
    )

compiles to ``where=(Priority.Name eq 'High') and (AssignedUser is null)&take=50``.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from .errors import CompileError

DEFAULT_TAKE = 25
MAX_TAKE = 1000

OPERATORS = frozenset(
    {"eq", "ne", "gt", "lt", "gte", "lte", "contains", "in", "isNull"}
)

_SEGMENT = r"[A-Za-z_][A-Za-z0-9_]*"
_FIELD_PATH_RE = re.compile(rf"^{_SEGMENT}(\.{_SEGMENT})*$")
_TYPE_NAME_RE = re.compile(rf"^{_SEGMENT}$")
_CUSTOM_FIELD_PREFIX = "CustomField."

log = logging.getLogger("targetprocess_mcp.query")


# --- Filter AST ------------------------------------------------------------ #


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class And:
    left: "FilterExpr"
    right: "FilterExpr"


@dataclass(frozen=True)
class Or:
    left: "FilterExpr"
    right: "FilterExpr"


@dataclass(frozen=True)
class Not:
    expr: "FilterExpr"


FilterExpr = Union[Comparison, And, Or, Not]


@dataclass(frozen=True)
class SortSpec:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class Query:
    record_type: str
    filter: Optional[FilterExpr] = None
    includes: Tuple[str, ...] = ()
    order_by: Tuple[SortSpec, ...] = ()
    take: int = DEFAULT_TAKE
    skip: int = 0


@dataclass(frozen=True)
class WireParams:
    where: Optional[str] = None
    include: Optional[str] = None
    order_by: Optional[str] = None
    take: int = DEFAULT_TAKE
    skip: int = 0
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.where is not None:
            params["where"] = self.where
        if self.include is not None:
            params["include"] = self.include
        if self.order_by is not None:
            params["orderBy"] = self.order_by
        params["take"] = self.take
        if self.skip:
            params["skip"] = self.skip
        return params

    def to_query_string(self) -> str:
        """Unencoded rendering, useful for logs and assertions."""
        return "&".join(f"{k}={v}" for k, v in self.to_params().items())


# --- Compiler -------------------------------------------------------------- #


def is_type_name(name: Any) -> bool:
    return isinstance(name, str) and bool(_TYPE_NAME_RE.match(name))


def format_field(path: str) -> str:
    """Validate a dotted field path and apply the custom-field rewrite."""
    if not isinstance(path, str):
        raise CompileError(f"Field path must be a string, got {type(path).__name__}")
    path = path.strip()
    if path.startswith(_CUSTOM_FIELD_PREFIX):
        path = "cf_" + path[len(_CUSTOM_FIELD_PREFIX) :]
    if not _FIELD_PATH_RE.match(path):
        raise CompileError(f"Ill-formed field path: {path!r}")
    return path


def format_literal(value: Any) -> str:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return f"'{value.date().isoformat()}'"
    if isinstance(value, date):
        return f"'{value.isoformat()}'"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise CompileError(f"Non-finite number is not a valid literal: {value}")
        return repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(format_literal(v) for v in value) + "]"
    if value is None:
        raise CompileError("None is only valid with the isNull operator")
    raise CompileError(f"Unsupported literal type: {type(value).__name__}")


class QueryCompiler:
    """Serializes Query objects into the service's where/include/orderBy params."""

    def __init__(self, *, max_take: int = MAX_TAKE, logger: Optional[logging.Logger] = None):
        if max_take < 1:
            raise ValueError("max_take must be >= 1")
        self.max_take = max_take
        self.log = logger or log

    def compile(self, query: Query) -> WireParams:
        if not isinstance(query.record_type, str) or not _TYPE_NAME_RE.match(
            query.record_type
        ):
            raise CompileError(f"Ill-formed record type: {query.record_type!r}")
        if isinstance(query.take, bool) or not isinstance(query.take, int):
            raise CompileError("take must be an integer")
        if query.take < 1 or query.take > self.max_take:
            raise CompileError(
                f"take={query.take} is outside the allowed range 1..{self.max_take}"
            )
        if isinstance(query.skip, bool) or not isinstance(query.skip, int):
            raise CompileError("skip must be an integer")
        if query.skip < 0:
            raise CompileError(f"skip must be >= 0, got {query.skip}")

        warnings: list[str] = []
        where = self.compile_filter(query.filter) if query.filter is not None else None
        include = self.compile_includes(query.includes)
        order_by = self._compile_order_by(query.order_by, warnings)

        return WireParams(
            where=where,
            include=include,
            order_by=order_by,
            take=query.take,
            skip=query.skip,
            warnings=tuple(warnings),
        )

    def compile_filter(self, expr: FilterExpr) -> str:
        if isinstance(expr, Comparison):
            return self._compile_comparison(expr)
        if isinstance(expr, And):
            return f"({self.compile_filter(expr.left)}) and ({self.compile_filter(expr.right)})"
        if isinstance(expr, Or):
            return f"({self.compile_filter(expr.left)}) or ({self.compile_filter(expr.right)})"
        if isinstance(expr, Not):
            return f"not ({self.compile_filter(expr.expr)})"
        raise CompileError(f"Unsupported filter node: {type(expr).__name__}")

    def compile_includes(self, includes: Sequence[str]) -> Optional[str]:
        if isinstance(includes, str):
            includes = [includes]
        names = [format_field(i) for i in includes if i and str(i).strip()]
        if not names:
            return None
        return "[" + ",".join(names) + "]"

    def _compile_comparison(self, cmp: Comparison) -> str:
        op = cmp.operator
        if op not in OPERATORS:
            raise CompileError(f"Unrecognized operator: {op!r}")
        name = format_field(cmp.field)

        if op == "isNull":
            if cmp.value is not None:
                raise CompileError("isNull takes no value")
            return f"{name} is null"
        if op == "in":
            if not isinstance(cmp.value, (list, tuple)) or not cmp.value:
                raise CompileError("in requires a non-empty list value")
        elif op == "contains":
            if not isinstance(cmp.value, str):
                raise CompileError("contains requires a string value")
        elif isinstance(cmp.value, (list, tuple)):
            raise CompileError(f"{op} does not accept a list value")

        return f"{name} {op} {format_literal(cmp.value)}"

    def _compile_order_by(
        self, specs: Sequence[SortSpec], warnings: list[str]
    ) -> Optional[str]:
        if not specs:
            return None
        first = specs[0]
        if isinstance(first, str):
            first = SortSpec(first)
        rendered = format_field(first.field) + (" desc" if first.descending else "")
        if len(specs) > 1:
            dropped = [s if isinstance(s, str) else s.field for s in specs[1:]]
            msg = (
                "orderBy supports a single field; "
                f"using '{first.field}' and ignoring {', '.join(dropped)}"
            )
            warnings.append(msg)
            self.log.warning(msg)
        return rendered


def compile_query(query: Query, *, max_take: int = MAX_TAKE) -> WireParams:
    return QueryCompiler(max_take=max_take).compile(query)


# --- Search presets -------------------------------------------------------- #

PresetBuilder = Callable[[Mapping[str, Any], date], FilterExpr]


def _require(variables: Mapping[str, Any], name: str) -> Any:
    value = variables.get(name)
    if value is None or value == "":
        raise CompileError(f"Preset needs variable '{name}'")
    return value


def _state(op: str, name: str) -> Comparison:
    return Comparison("EntityState.Name", op, name)


def _current_user(variables: Mapping[str, Any], today: date) -> Comparison:
    return Comparison("AssignedUser.Email", "eq", _require(variables, "currentUser"))


def _project(variables: Mapping[str, Any], today: date) -> Comparison:
    raw = _require(variables, "projectId")
    try:
        project_id = int(raw)
    except (TypeError, ValueError) as exc:
        raise CompileError(f"projectId must be an integer, got {raw!r}") from exc
    return Comparison("Project.Id", "eq", project_id)


def _unassigned(variables: Mapping[str, Any], today: date) -> Comparison:
    return Comparison("AssignedUser", "isNull")


def _high_priority(variables: Mapping[str, Any], today: date) -> Comparison:
    return Comparison("Priority.Name", "eq", "High")


def _on_day(field_path: str) -> PresetBuilder:
    def build(variables: Mapping[str, Any], today: date) -> FilterExpr:
        return And(
            Comparison(field_path, "gte", today),
            Comparison(field_path, "lt", today + timedelta(days=1)),
        )

    return build


def _since_week_start(field_path: str) -> PresetBuilder:
    def build(variables: Mapping[str, Any], today: date) -> FilterExpr:
        # weeks start on Monday
        return Comparison(field_path, "gte", today - timedelta(days=today.weekday()))

    return build


def _const(expr: FilterExpr) -> PresetBuilder:
    return lambda variables, today: expr


def _all(*builders: PresetBuilder) -> PresetBuilder:
    def build(variables: Mapping[str, Any], today: date) -> FilterExpr:
        parts = [b(variables, today) for b in builders]
        acc = parts[0]
        for part in parts[1:]:
            acc = And(acc, part)
        return acc

    return build


# Date presets resolve to explicit ISO dates at build time; no @Today macros.
PRESETS: Dict[str, PresetBuilder] = {
    "open": _const(_state("eq", "Open")),
    "inProgress": _const(_state("eq", "In Progress")),
    "done": _const(_state("eq", "Done")),
    "notDone": _const(_state("ne", "Done")),
    "notClosed": _const(_state("ne", "Closed")),
    "myTasks": _current_user,
    "unassigned": _unassigned,
    "projectItems": _project,
    "highPriority": _high_priority,
    "createdToday": _on_day("CreateDate"),
    "modifiedToday": _on_day("ModifyDate"),
    "createdThisWeek": _since_week_start("CreateDate"),
    "modifiedThisWeek": _since_week_start("ModifyDate"),
    "myOpenTasks": _all(_current_user, _const(_state("eq", "Open"))),
    "highPriorityUnassigned": _all(_high_priority, _unassigned),
    "myRecentTasks": _all(
        _current_user,
        lambda variables, today: Comparison("ModifyDate", "gte", today),
    ),
    "activeItems": _all(_const(_state("ne", "Done")), _const(_state("ne", "Closed"))),
}


def build_preset(
    name: str,
    variables: Optional[Mapping[str, Any]] = None,
    *,
    today: Optional[date] = None,
) -> FilterExpr:
    """
    Expand a named preset into a FilterExpr.

    `variables` supplies currentUser (an email) and projectId where the
    preset needs them. `today` defaults to the current UTC date.
    """
    builder = PRESETS.get(name)
    if builder is None:
        raise CompileError(
            f"Unknown preset '{name}'. Available presets: {', '.join(sorted(PRESETS))}"
        )
    if variables is not None and not isinstance(variables, Mapping):
        raise CompileError("Preset variables must be an object")
    if today is None:
        today = datetime.now(timezone.utc).date()
    return builder(variables or {}, today)


# --- JSON-shaped input ----------------------------------------------------- #


def _parse_value(raw: Any) -> Any:
    if isinstance(raw, Mapping) and set(raw) == {"date"}:
        try:
            return date.fromisoformat(str(raw["date"]))
        except ValueError as exc:
            raise CompileError(f"Invalid date literal: {raw['date']!r}") from exc
    if isinstance(raw, list):
        return [_parse_value(v) for v in raw]
    return raw


def _fold(nodes: Sequence[Any], combine: type, today: Optional[date]) -> FilterExpr:
    if not isinstance(nodes, (list, tuple)) or not nodes:
        raise CompileError(f"'{combine.__name__.lower()}' needs a non-empty list")
    parsed = [parse_filter(n, today=today) for n in nodes]
    acc = parsed[0]
    for node in parsed[1:]:
        acc = combine(acc, node)
    return acc


def parse_filter(data: Mapping[str, Any], *, today: Optional[date] = None) -> FilterExpr:
    """
    Build a FilterExpr from plain JSON data.

    {"field": "Name", "op": "contains", "value": "login"}
    {"and": [...]} / {"or": [...]} / {"not": {...}}
    {"preset": "myOpenTasks", "variables": {"currentUser": "a@b.c"}}
    Dates are passed as {"date": "2024-05-01"}.
    """
    if not isinstance(data, Mapping):
        raise CompileError(f"Filter must be an object, got {type(data).__name__}")
    if "preset" in data:
        return build_preset(data["preset"], data.get("variables"), today=today)
    if "and" in data:
        return _fold(data["and"], And, today)
    if "or" in data:
        return _fold(data["or"], Or, today)
    if "not" in data:
        return Not(parse_filter(data["not"], today=today))
    if "field" not in data or "op" not in data:
        raise CompileError("Comparison needs 'field' and 'op'")
    return Comparison(
        field=data["field"],
        operator=data["op"],
        value=_parse_value(data.get("value")),
    )


def parse_order_by(items: Sequence[Any]) -> Tuple[SortSpec, ...]:
    """Accept "Field", "Field desc" or {"field": ..., "direction": ...} entries."""
    specs = []
    for item in items or ():
        if isinstance(item, SortSpec):
            specs.append(item)
        elif isinstance(item, str):
            parts = item.split()
            if not parts:
                continue
            desc = len(parts) > 1 and parts[-1].lower() == "desc"
            specs.append(SortSpec(parts[0], descending=desc))
        elif isinstance(item, Mapping):
            direction = str(item.get("direction", "asc")).lower()
            specs.append(SortSpec(item.get("field", ""), descending=direction == "desc"))
        else:
            raise CompileError(f"Unsupported orderBy entry: {item!r}")
    return tuple(specs)


__all__ = [
    "Comparison",
    "And",
    "Or",
    "Not",
    "FilterExpr",
    "SortSpec",
    "Query",
    "WireParams",
    "QueryCompiler",
    "compile_query",
    "format_field",
    "is_type_name",
    "format_literal",
    "parse_filter",
    "parse_order_by",
    "build_preset",
    "PRESETS",
    "OPERATORS",
    "DEFAULT_TAKE",
    "MAX_TAKE",
]
