from datetime import date, datetime, timedelta, timezone

import pytest
from targetprocess_mcp.core.errors import CompileError
from targetprocess_mcp.core.query import (
    And,
    Comparison,
    Not,
    PRESETS,
    Or,
    Query,
    QueryCompiler,
    SortSpec,
    build_preset,
    compile_query,
    format_field,
    format_literal,
    parse_filter,
    parse_order_by,
)


@pytest.fixture
def compiler():
    return QueryCompiler()


def test_end_to_end_bug_query(compiler):
    query = Query(
        record_type="Bug",
        filter=And(
            Comparison("Priority.Name", "eq", "High"),
            Comparison("AssignedUser", "isNull"),
        ),
        take=50,
    )

    wire = compiler.compile(query)

    assert wire.to_query_string() == (
        "where=(Priority.Name eq 'High') and (AssignedUser is null)&take=50"
    )
    assert wire.warnings == ()


def test_internal_quote_is_doubled(compiler):
    where = compiler.compile_filter(Comparison("Name", "eq", "it's"))
    assert where == "Name eq 'it''s'"


def test_compile_is_deterministic(compiler):
    tree = Or(
        Not(Comparison("EntityState.Name", "in", ["Done", "Closed"])),
        And(Comparison("Effort", "gt", 2.5), Comparison("Name", "contains", "login")),
    )
    first = compiler.compile_filter(tree)
    assert all(compiler.compile_filter(tree) == first for _ in range(5))
    assert first == (
        "(not (EntityState.Name in ['Done','Closed'])) or "
        "((Effort gt 2.5) and (Name contains 'login'))"
    )


def test_multi_order_by_keeps_first_and_warns(compiler, caplog):
    query = Query(
        record_type="UserStory",
        order_by=(SortSpec("CreateDate", descending=True), SortSpec("Name")),
    )

    with caplog.at_level("WARNING", logger="targetprocess_mcp.query"):
        wire = compiler.compile(query)

    assert wire.order_by == "CreateDate desc"
    assert len(wire.warnings) == 1
    assert "Name" in wire.warnings[0]
    assert any("orderBy supports a single field" in r.message for r in caplog.records)


def test_includes_and_skip_rendering(compiler):
    wire = compiler.compile(
        Query(record_type="Task", includes=("Project", "AssignedUser"), take=10, skip=20)
    )
    assert wire.to_params() == {
        "include": "[Project,AssignedUser]",
        "take": 10,
        "skip": 20,
    }


def test_zero_skip_is_omitted(compiler):
    assert "skip" not in compiler.compile(Query(record_type="Bug")).to_params()


def test_custom_field_rewrite():
    assert format_field("CustomField.Risk") == "cf_Risk"
    where = QueryCompiler().compile_filter(Comparison("CustomField.Risk", "eq", "Low"))
    assert where == "cf_Risk eq 'Low'"


@pytest.mark.parametrize(
    "value, expected",
    [
        (True, "true"),
        (False, "false"),
        (42, "42"),
        (date(2024, 5, 1), "'2024-05-01'"),
        (["a", 1], "['a',1]"),
    ],
)
def test_literal_formatting(value, expected):
    assert format_literal(value) == expected


def test_aware_datetime_is_rendered_as_utc_date():
    late_evening = datetime(2024, 5, 1, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
    assert format_literal(late_evening) == "'2024-05-02'"


@pytest.mark.parametrize(
    "expr",
    [
        Comparison("Name", "like", "x"),
        Comparison("Name; drop", "eq", "x"),
        Comparison("Name", "eq", None),
        Comparison("Name", "isNull", "x"),
        Comparison("Id", "in", []),
        Comparison("Id", "eq", [1, 2]),
        Comparison("Name", "contains", 3),
        Comparison("Effort", "gt", float("nan")),
        Comparison("Name", "eq", object()),
    ],
)
def test_invalid_comparisons_raise_compile_error(compiler, expr):
    with pytest.raises(CompileError):
        compiler.compile_filter(expr)


@pytest.mark.parametrize("take", [0, -1, 1001])
def test_take_out_of_range_is_rejected(compiler, take):
    with pytest.raises(CompileError):
        compiler.compile(Query(record_type="Bug", take=take))


def test_take_upper_bound_is_inclusive():
    assert compile_query(Query(record_type="Bug", take=1000)).take == 1000


def test_negative_skip_and_bad_record_type_rejected(compiler):
    with pytest.raises(CompileError):
        compiler.compile(Query(record_type="Bug", skip=-1))
    with pytest.raises(CompileError):
        compiler.compile(Query(record_type="User Stories"))


def test_parse_filter_builds_tree():
    expr = parse_filter(
        {
            "and": [
                {"field": "Project.Id", "op": "eq", "value": 12},
                {"or": [
                    {"field": "CreateDate", "op": "gte", "value": {"date": "2024-01-01"}},
                    {"not": {"field": "Owner", "op": "isNull"}},
                ]},
            ]
        }
    )

    assert QueryCompiler().compile_filter(expr) == (
        "(Project.Id eq 12) and "
        "((CreateDate gte '2024-01-01') or (not (Owner is null)))"
    )


def test_parse_filter_rejects_bad_shapes():
    with pytest.raises(CompileError):
        parse_filter({"field": "Name"})
    with pytest.raises(CompileError):
        parse_filter({"and": []})
    with pytest.raises(CompileError):
        parse_filter({"field": "CreateDate", "op": "gt", "value": {"date": "yesterday"}})


def test_parse_order_by_accepts_strings_and_objects():
    specs = parse_order_by(["Name desc", {"field": "Id", "direction": "asc"}, "Effort"])
    assert specs == (
        SortSpec("Name", descending=True),
        SortSpec("Id"),
        SortSpec("Effort"),
    )


# Wednesday; the week starts on Monday 2024-05-13
TODAY = date(2024, 5, 15)


@pytest.mark.parametrize(
    "name,expected",
    [
        ("open", "EntityState.Name eq 'Open'"),
        ("notClosed", "EntityState.Name ne 'Closed'"),
        ("unassigned", "AssignedUser is null"),
        ("highPriorityUnassigned", "(Priority.Name eq 'High') and (AssignedUser is null)"),
        (
            "activeItems",
            "(EntityState.Name ne 'Done') and (EntityState.Name ne 'Closed')",
        ),
        (
            "createdToday",
            "(CreateDate gte '2024-05-15') and (CreateDate lt '2024-05-16')",
        ),
        ("modifiedThisWeek", "ModifyDate gte '2024-05-13'"),
    ],
)
def test_presets_compile_to_explicit_filters(compiler, name, expected):
    assert compiler.compile_filter(build_preset(name, today=TODAY)) == expected


def test_presets_never_emit_date_macros(compiler):
    variables = {"currentUser": "ann@example.com", "projectId": 7}
    for name in PRESETS:
        where = compiler.compile_filter(build_preset(name, variables, today=TODAY))
        assert "@" not in where.replace("ann@example.com", "")


def test_preset_variables_are_substituted_and_quoted(compiler):
    expr = build_preset("myRecentTasks", {"currentUser": "o'neil@example.com"}, today=TODAY)
    assert compiler.compile_filter(expr) == (
        "(AssignedUser.Email eq 'o''neil@example.com') and (ModifyDate gte '2024-05-15')"
    )

    project = build_preset("projectItems", {"projectId": "42"}, today=TODAY)
    assert compiler.compile_filter(project) == "Project.Id eq 42"


def test_preset_errors():
    with pytest.raises(CompileError, match="Unknown preset 'urgent'"):
        build_preset("urgent")
    with pytest.raises(CompileError, match="currentUser"):
        build_preset("myOpenTasks", {})
    with pytest.raises(CompileError, match="projectId must be an integer"):
        build_preset("projectItems", {"projectId": "abc"})


def test_parse_filter_expands_nested_preset(compiler):
    expr = parse_filter(
        {
            "and": [
                {"preset": "myOpenTasks", "variables": {"currentUser": "ann@example.com"}},
                {"field": "Project.Id", "op": "eq", "value": 3},
            ]
        },
        today=TODAY,
    )
    assert compiler.compile_filter(expr) == (
        "((AssignedUser.Email eq 'ann@example.com') and (EntityState.Name eq 'Open'))"
        " and (Project.Id eq 3)"
    )


def test_preset_today_defaults_to_utc_date(compiler):
    where = compiler.compile_filter(build_preset("modifiedToday"))
    today = datetime.now(timezone.utc).date()
    # tolerate a UTC midnight rollover between the two calls
    assert any(
        f"ModifyDate gte '{d.isoformat()}'" in where
        for d in (today, today - timedelta(days=1))
    )
