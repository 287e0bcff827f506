"""
Compiled-in baseline of well-known TargetProcess entity types.

These are always considered valid, even when live discovery fails, and
are used to describe well-known types when the metadata endpoint is
unavailable.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple


class EntityCategory(str, Enum):
    ASSIGNABLE = "assignable"
    PROJECT = "project"
    PLANNING = "planning"
    SYSTEM = "system"
    CUSTOM = "custom"


@dataclass(frozen=True)
class EntityTypeInfo:
    name: str
    category: EntityCategory
    description: str
    supports_custom_fields: bool
    parent_types: Tuple[str, ...] = ()
    common_includes: Tuple[str, ...] = ()


def _info(
    name: str,
    category: EntityCategory,
    description: str,
    *,
    custom_fields: bool = True,
    parents: Tuple[str, ...] = (),
    includes: Tuple[str, ...] = (),
) -> Tuple[str, EntityTypeInfo]:
    return name, EntityTypeInfo(
        name=name,
        category=category,
        description=description,
        supports_custom_fields=custom_fields,
        parent_types=parents,
        common_includes=includes,
    )


_A = EntityCategory.ASSIGNABLE
_P = EntityCategory.PROJECT
_PL = EntityCategory.PLANNING
_S = EntityCategory.SYSTEM

BASELINE_ENTITY_TYPES: Dict[str, EntityTypeInfo] = dict(
    [
        # Work items
        _info(
            "UserStory",
            _A,
            "User stories represent features from the user perspective",
            parents=("Feature", "Epic"),
            includes=("Project", "Feature", "EntityState", "Priority", "AssignedUser", "Team"),
        ),
        _info(
            "Bug",
            _A,
            "Bugs track defects and issues",
            parents=("UserStory", "Feature"),
            includes=("Project", "UserStory", "EntityState", "Priority", "Severity", "AssignedUser"),
        ),
        _info(
            "Task",
            _A,
            "Tasks represent work items within user stories",
            parents=("UserStory",),
            includes=("UserStory", "EntityState", "AssignedUser"),
        ),
        _info(
            "Feature",
            _A,
            "Features group related user stories",
            parents=("Epic",),
            includes=("Project", "Epic", "EntityState", "AssignedUser"),
        ),
        _info(
            "Epic",
            _A,
            "Epics represent large bodies of work",
            parents=("Project",),
            includes=("Project", "EntityState", "AssignedUser"),
        ),
        _info(
            "TestCase",
            _A,
            "Test cases for quality assurance",
            parents=("UserStory",),
            includes=("UserStory", "Project", "AssignedUser"),
        ),
        _info(
            "TestPlan",
            _A,
            "Test plans organize test cases",
            includes=("Project", "Release", "TestCases"),
        ),
        _info(
            "Request",
            _A,
            "Customer requests and feedback",
            includes=("Project", "EntityState", "AssignedUser"),
        ),
        # Project management
        _info(
            "Project",
            _P,
            "Projects contain all work items",
            includes=("Program", "Process", "EntityState"),
        ),
        _info("Program", _P, "Programs group related projects", includes=("Projects",)),
        _info("Team", _P, "Teams work on projects", includes=("TeamMembers", "Projects")),
        # Planning
        _info(
            "Iteration",
            _PL,
            "Iterations represent sprints or time boxes",
            includes=("Project", "UserStories", "Tasks", "Bugs"),
        ),
        _info(
            "Release",
            _PL,
            "Releases group work for deployment",
            includes=("Project", "Features", "UserStories"),
        ),
        _info(
            "TeamIteration",
            _PL,
            "Team-specific iteration planning",
            includes=("Team", "Iteration"),
        ),
        # System
        _info("GeneralUser", _S, "System users", custom_fields=False, includes=("Teams", "Role")),
        _info(
            "EntityState",
            _S,
            "Workflow states",
            custom_fields=False,
            includes=("Process", "EntityType"),
        ),
        _info("Priority", _S, "Priority levels", custom_fields=False),
        _info("Severity", _S, "Bug severity levels", custom_fields=False),
        _info("Role", _S, "User roles", custom_fields=False),
        _info("Process", _S, "Development process templates", custom_fields=False),
    ]
)

# Collection endpoints that don't follow the plural rules below.
ENDPOINT_OVERRIDES: Dict[str, str] = {"TimeSheet": "Times"}

# Include names that refer to a type under a different name.
_INCLUDE_ALIASES: Dict[str, str] = {
    "AssignedUser": "GeneralUser",
    "TeamMembers": "GeneralUser",
}


def baseline_type_names() -> List[str]:
    return list(BASELINE_ENTITY_TYPES)


def get_entity_type_info(entity_type: str) -> Optional[EntityTypeInfo]:
    return BASELINE_ENTITY_TYPES.get(entity_type)


def entity_types_by_category(category: EntityCategory) -> List[str]:
    return [n for n, info in BASELINE_ENTITY_TYPES.items() if info.category == category]


def common_includes(entity_type: str) -> List[str]:
    info = BASELINE_ENTITY_TYPES.get(entity_type)
    return list(info.common_includes) if info else []


def endpoint_for(entity_type: str) -> str:
    """Collection path segment for a type: UserStory -> UserStories, Bug -> Bugs."""
    if entity_type in ENDPOINT_OVERRIDES:
        return ENDPOINT_OVERRIDES[entity_type]
    if entity_type.endswith("y") and entity_type[-2:-1].lower() not in "aeiou":
        return entity_type[:-1] + "ies"
    if entity_type.endswith(("s", "x", "ch", "sh")):
        return entity_type + "es"
    return entity_type + "s"


def include_target(include: str) -> Tuple[str, str]:
    """
    Resolve an include name to (target_type, cardinality).
    'Project' -> ('Project', 'one'); 'UserStories' -> ('UserStory', 'many').
    """
    if include in _INCLUDE_ALIASES:
        cardinality = "many" if include.endswith("s") else "one"
        return _INCLUDE_ALIASES[include], cardinality
    if include in BASELINE_ENTITY_TYPES:
        return include, "one"
    if include.endswith("ies"):
        return include[:-3] + "y", "many"
    if include.endswith("s"):
        return include[:-1], "many"
    return include, "one"


__all__ = [
    "EntityCategory",
    "EntityTypeInfo",
    "BASELINE_ENTITY_TYPES",
    "ENDPOINT_OVERRIDES",
    "baseline_type_names",
    "get_entity_type_info",
    "entity_types_by_category",
    "common_includes",
    "endpoint_for",
    "include_target",
]
