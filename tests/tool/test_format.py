"""Tests for the format library."""

import json

from gitops_local.tool.format import (
    JsonFormatter,
    PrintFormatter,
    YamlFormatter,
    format_columns,
    output_formatter,
)


def test_format_columns_empty() -> None:
    """Tests with no rows."""
    assert list(format_columns([], [])) == []


def test_format_columns_empty_rows() -> None:
    assert list(format_columns(["a", "b", "c"], [])) == ["a    b    c"]


def test_format_columns_rows() -> None:
    """Tests format with normal rows"""
    assert list(
        format_columns(["name", "namespace"], [["app", "apps"], ["monitoring", "infra"]])
    ) == [
        "name          namespace",
        "app           apps",
        "monitoring    infra",
    ]


def test_print_formatter() -> None:
    """Print formatting with empty data."""
    assert list(PrintFormatter().format([])) == []


def test_print_formatter_keys() -> None:
    """Print formatting with column names and missing values."""
    formatter = PrintFormatter(keys=["name", "phase"])
    assert list(
        formatter.format(
            [
                {"name": "app", "phase": "Converged", "ignored": "x"},
                {"name": "other", "phase": None},
            ]
        )
    ) == [
        "NAME     PHASE",
        "app      Converged",
        "other",
    ]


def test_yaml_formatter() -> None:
    formatter = YamlFormatter()
    assert list(formatter.format([{"name": "app"}, {"name": "other"}])) == [
        "---",
        "name: app",
        "---",
        "name: other",
    ]


def test_json_formatter() -> None:
    data = [{"name": "app", "resources": 2}]
    assert json.loads("\n".join(JsonFormatter().format(data))) == data


def test_output_formatter() -> None:
    assert isinstance(output_formatter("yaml"), YamlFormatter)
    assert isinstance(output_formatter("json"), JsonFormatter)
    assert isinstance(output_formatter("table", ["name"]), PrintFormatter)
