import pytest
from targetprocess_mcp.core.entity_registry import (
    BASELINE_ENTITY_TYPES,
    EntityCategory,
    common_includes,
    endpoint_for,
    entity_types_by_category,
    get_entity_type_info,
    include_target,
)


@pytest.mark.parametrize(
    "entity_type, endpoint",
    [
        ("UserStory", "UserStories"),
        ("Bug", "Bugs"),
        ("Process", "Processes"),
        ("Priority", "Priorities"),
        ("TimeSheet", "Times"),
        ("GeneralUser", "GeneralUsers"),
    ],
)
def test_endpoint_naming(entity_type, endpoint):
    assert endpoint_for(entity_type) == endpoint


def test_baseline_covers_core_work_items():
    for name in ("UserStory", "Bug", "Task", "Feature", "Epic", "Project", "Iteration"):
        assert name in BASELINE_ENTITY_TYPES


def test_categories_and_lookup():
    assignable = entity_types_by_category(EntityCategory.ASSIGNABLE)
    assert "Bug" in assignable
    assert "Priority" not in assignable
    info = get_entity_type_info("GeneralUser")
    assert info.category is EntityCategory.SYSTEM
    assert info.supports_custom_fields is False
    assert get_entity_type_info("Nope") is None


def test_common_includes():
    assert "Project" in common_includes("UserStory")
    assert common_includes("Nope") == []


@pytest.mark.parametrize(
    "include, expected",
    [
        ("Project", ("Project", "one")),
        ("UserStories", ("UserStory", "many")),
        ("Tasks", ("Task", "many")),
        ("AssignedUser", ("GeneralUser", "one")),
        ("TeamMembers", ("GeneralUser", "many")),
    ],
)
def test_include_target(include, expected):
    assert include_target(include) == expected
