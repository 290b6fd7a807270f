from __future__ import annotations

import pytest

from portal.services.template_engine import (
    UNRESOLVED,
    extract_variables,
    find_missing_variables,
    format_value,
    is_date_path,
    parse_date,
    process_template,
    resolve_path,
)


@pytest.mark.parametrize(
    "template",
    ["", "Plain text only", "Braces { and } alone", "Unclosed {{name", "Empty {{}} marker"],
)
def test_templates_without_placeholders_are_unchanged(template: str) -> None:
    assert process_template(template, {"name": "Ada"}) == template


def test_top_level_values_are_stringified() -> None:
    record = {"title": "Drill", "count": 3, "ratio": 1.5}
    assert process_template("{{title}} x{{count}} @ {{ratio}}", record) == "Drill x3 @ 1.5"


def test_missing_and_null_values_render_empty() -> None:
    record = {"title": None}
    assert process_template("[{{title}}][{{absent}}]", record) == "[][]"


def test_nested_path_resolution() -> None:
    assert process_template("{{a.b}}", {"a": {"b": "x"}}) == "x"


def test_partial_nested_path_renders_empty() -> None:
    assert process_template("{{a.b.c}}", {"a": {"b": "x"}}) == ""


def test_exact_key_wins_over_nested_walk() -> None:
    record = {"a.b": "literal", "a": {"b": "nested"}}
    assert process_template("{{a.b}}", record) == "literal"


def test_whitespace_inside_braces_is_trimmed() -> None:
    assert process_template("Hello {{  first_name }}!", {"first_name": "Ada"}) == "Hello Ada!"


def test_date_like_paths_format_as_month_day_year() -> None:
    record = {"created_at": "2024-03-05T00:00:00Z"}
    assert process_template("{{created_at}}", record) == "03/05/2024"


def test_date_formatting_keeps_calendar_fields_without_timezone_shift() -> None:
    record = {"due_date": "2024-12-31T23:30:00-05:00"}
    assert process_template("{{due_date}}", record) == "12/31/2024"


def test_nested_date_path_is_detected_by_segment_name() -> None:
    record = {"task": {"completed_on": "2023-07-04"}}
    assert process_template("{{task.completed_on}}", record) == "07/04/2023"


def test_unparseable_date_string_is_kept_raw() -> None:
    record = {"start_date": "next tuesday-ish"}
    assert process_template("{{start_date}}", record) == "next tuesday-ish"


def test_non_string_date_value_is_stringified() -> None:
    assert process_template("{{updated_at}}", {"updated_at": 1700000000}) == "1700000000"


@pytest.mark.parametrize(
    ("path", "expected"),
    [("created_at", True), ("DueDate", True), ("signed_on", True), ("title", False), ("status", False)],
)
def test_is_date_path(path: str, expected: bool) -> None:
    assert is_date_path(path) is expected


def test_each_occurrence_is_substituted() -> None:
    assert process_template("{{x}}-{{x}}-{{y}}", {"x": "a", "y": "b"}) == "a-a-b"


def test_falsy_template_or_missing_record_returns_template() -> None:
    assert process_template("", {"a": 1}) == ""
    assert process_template(None, {"a": 1}) is None
    assert process_template("Hi {{name}}", None) == "Hi {{name}}"


def test_extract_variables_is_ordered_and_deduplicated() -> None:
    assert extract_variables("{{x}} and {{y}} and {{x}} again") == ["x", "y"]


def test_extract_variables_trims_paths() -> None:
    assert extract_variables("{{ assigned_to.first_name }} {{assigned_to.first_name}}") == [
        "assigned_to.first_name"
    ]


def test_extract_variables_empty_template() -> None:
    assert extract_variables("") == []
    assert extract_variables(None) == []


def test_resolve_path_reports_unresolved() -> None:
    assert resolve_path({"a": {"b": 1}}, "a.c") is UNRESOLVED
    assert resolve_path({"a": "scalar"}, "a.b") is UNRESOLVED
    assert resolve_path({"a": {"b": 1}}, "a.b") == 1


def test_format_value_handles_none() -> None:
    assert format_value("title", None) == ""
    assert format_value("title", UNRESOLVED) == ""


def test_find_missing_variables() -> None:
    template = "{{title}} for {{assigned_to.first_name}} due {{due_date}}"
    record = {"title": "Inspect", "assigned_to": None, "due_date": None}
    assert find_missing_variables(template, record) == ["assigned_to.first_name", "due_date"]


def test_booleans_render_lowercase() -> None:
    record = {"is_active": True, "archived": False}
    assert process_template("{{is_active}}/{{archived}}", record) == "true/false"


def test_nested_mapping_renders_as_json() -> None:
    record = {"unit": {"name": "Alpha", "size": 12}}
    assert process_template("{{unit}}", record) == '{"name": "Alpha", "size": 12}'


def test_lists_render_comma_separated() -> None:
    assert process_template("{{tags}}", {"tags": ["drill", "color guard"]}) == "drill, color guard"


@pytest.mark.parametrize("value", ["10", "May", "10:30", "2024-03"])
def test_partial_dates_on_date_paths_are_kept_raw(value: str) -> None:
    assert process_template("{{candidate_rank}}", {"candidate_rank": value}) == value
    assert parse_date(value) is None


@pytest.mark.parametrize(
    ("value", "expected"),
    [("2024-03-05", "03/05/2024"), ("March 5, 2024", "03/05/2024"), ("2024-03-05T08:00:00+02:00", "03/05/2024")],
)
def test_full_dates_still_format(value: str, expected: str) -> None:
    assert process_template("{{signed_on}}", {"signed_on": value}) == expected
