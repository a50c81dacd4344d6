"""Tests for the grouping + change-detection pipeline."""

from __future__ import annotations

import math
from typing import Any

import pandas as pd
import pytest

from loan_auditor import SOURCE_FILE_FIELD
from loan_auditor.models import AuditConfig, AuditFilter, AuditResult, SourceFile
from loan_auditor.pipeline import (
    as_text,
    build_master_pool,
    column_universe,
    diff_rows,
    filter_rows,
    group_and_diff,
    project_columns,
    resolve_identifier,
    run_audit,
)


def _source(name: str, *rows: dict[str, Any]) -> SourceFile:
    return SourceFile(name=name, rows=rows)


@pytest.fixture
def two_loans() -> list[SourceFile]:
    return [
        _source(
            "jan.csv",
            {"Loan #": "100", "Status": "Open", "Rate": "5.0"},
            {"Loan #": "200", "Status": "New", "Rate": "6.0"},
        ),
        _source(
            "feb.csv",
            {"Loan #": "100", "Status": "Closed", "Rate": "5.0"},
            {"Loan #": "200", "Status": "New", "Rate": "6.5"},
        ),
        _source(
            "mar.csv",
            {"Loan #": "100", "Status": "Closed", "Rate": "5.0"},
        ),
    ]


# ── Master pool ─────────────────────────────────────────────────


def test_master_pool_concatenates_in_load_then_file_order(two_loans: list[SourceFile]) -> None:
    pool = build_master_pool(two_loans)

    assert len(pool) == sum(source.row_count for source in two_loans)
    assert [(row[SOURCE_FILE_FIELD], row["Loan #"]) for row in pool] == [
        ("jan.csv", "100"),
        ("jan.csv", "200"),
        ("feb.csv", "100"),
        ("feb.csv", "200"),
        ("mar.csv", "100"),
    ]


def test_master_pool_of_no_files_is_empty() -> None:
    assert build_master_pool([]) == ()


def test_column_universe_uses_discovery_order_without_reserved_field() -> None:
    pool = build_master_pool(
        [_source("a.csv", {"Loan #": "1", "Status": "Open"}), _source("b.csv", {"Rate": "5", "Loan #": "1"})]
    )

    assert column_universe(pool) == ["Loan #", "Status", "Rate"]


# ── Identifier resolver ─────────────────────────────────────────


@pytest.mark.parametrize(
    ("columns", "expected"),
    [
        (["Borrower", "Loan Number", "Loan #"], "Loan Number"),
        (["Borrower", "LOAN # (primary)"], "LOAN # (primary)"),
        (["Borrower", "Loan#"], "Loan#"),
        (["Borrower", "Status"], "Borrower"),
        (["LoanNumber", "Status"], "LoanNumber"),
        ([], None),
    ],
)
def test_resolve_identifier_heuristic(columns: list[str], expected: str | None) -> None:
    assert resolve_identifier(columns) == expected


def test_resolve_identifier_is_deterministic() -> None:
    columns = ["Borrower", "Loan Number", "Status"]

    assert {resolve_identifier(columns) for _ in range(5)} == {"Loan Number"}


def test_resolve_identifier_override() -> None:
    columns = ["Loan #", "Borrower"]

    assert resolve_identifier(columns, "Borrower") == "Borrower"
    assert resolve_identifier(columns, "Missing") is None
    assert resolve_identifier(columns, "  ") == "Loan #"


# ── Filter engine ───────────────────────────────────────────────


def test_filter_matches_trimmed_case_insensitive_literals() -> None:
    pool = build_master_pool(
        [_source("a.csv", {"Loan #": " AB-100 ", "Status": "Open"}, {"Loan #": "ab-200", "Status": "Open"})]
    )

    matched = filter_rows(pool, "ab-100", "Loan #")

    assert [row["Loan #"] for row in matched] == [" AB-100 "]


def test_filter_output_is_an_order_preserving_subsequence(two_loans: list[SourceFile]) -> None:
    pool = build_master_pool(two_loans)

    matched = filter_rows(pool, "100", "Loan #")

    assert len(matched) == 3
    positions = [next(i for i, row in enumerate(pool) if row is m) for m in matched]
    assert positions == sorted(positions)
    assert len(set(positions)) == len(positions)


def test_filter_with_blank_query_skips_primary_check(two_loans: list[SourceFile]) -> None:
    pool = build_master_pool(two_loans)

    assert filter_rows(pool, "   ", "Loan #") == list(pool)


def test_filter_with_only_separators_matches_nothing(two_loans: list[SourceFile]) -> None:
    pool = build_master_pool(two_loans)

    assert filter_rows(pool, " , ", "Loan #") == []


def test_filter_without_identifier_returns_nothing(two_loans: list[SourceFile]) -> None:
    pool = build_master_pool(two_loans)

    assert filter_rows(pool, "100", None) == []
    assert filter_rows(pool, "", None) == []


def test_secondary_filters_are_conjunctive(two_loans: list[SourceFile]) -> None:
    pool = build_master_pool(two_loans)
    filters = [
        AuditFilter.new("Status", "closed, new"),
        AuditFilter.new("Rate", "5.0"),
    ]

    matched = filter_rows(pool, "", "Loan #", filters)

    assert [(row[SOURCE_FILE_FIELD], row["Loan #"]) for row in matched] == [
        ("feb.csv", "100"),
        ("mar.csv", "100"),
    ]


def test_inactive_filters_are_ignored(two_loans: list[SourceFile]) -> None:
    pool = build_master_pool(two_loans)
    filters = [AuditFilter.new("Status", "  "), AuditFilter.new("", "Open")]

    assert filter_rows(pool, "200", "Loan #", filters) == filter_rows(pool, "200", "Loan #")


def test_secondary_filter_column_name_is_trimmed(two_loans: list[SourceFile]) -> None:
    pool = build_master_pool(two_loans)

    padded = filter_rows(pool, "", "Loan #", [AuditFilter.new(" Status ", "closed")])
    plain = filter_rows(pool, "", "Loan #", [AuditFilter.new("Status", "closed")])

    assert padded == plain
    assert [row[SOURCE_FILE_FIELD] for row in padded] == ["feb.csv", "mar.csv"]


def test_secondary_filter_on_missing_column_excludes_row() -> None:
    pool = build_master_pool(
        [
            _source("a.csv", {"Loan #": "100", "Status": "Open"}),
            _source("b.csv", {"Loan #": "100", "Stage": "Open"}),
        ]
    )

    matched = filter_rows(pool, "100", "Loan #", [AuditFilter.new("Status", "Open,Pending")])

    assert [row[SOURCE_FILE_FIELD] for row in matched] == ["a.csv"]


def test_filter_preserves_source_file_field(two_loans: list[SourceFile]) -> None:
    matched = filter_rows(build_master_pool(two_loans), "200", "Loan #")

    assert [row[SOURCE_FILE_FIELD] for row in matched] == ["jan.csv", "feb.csv"]


# ── Diff + grouping ─────────────────────────────────────────────


def test_as_text_treats_missing_values_as_empty() -> None:
    assert as_text(None) == ""
    assert as_text(math.nan) == ""
    assert as_text(pd.NA) == ""
    assert as_text(5) == "5"
    assert as_text("Open") == "Open"


def test_diff_rows_compares_string_forms_and_skips_reserved_field() -> None:
    previous = {SOURCE_FILE_FIELD: "a.csv", "Loan #": "100", "Units": 5, "Note": None}
    current = {SOURCE_FILE_FIELD: "b.csv", "Loan #": "100", "Units": "5", "Extra": "x"}

    assert diff_rows(previous, current) == frozenset({"Extra"})


def test_diff_rows_treats_absent_column_as_empty() -> None:
    assert diff_rows({"Loan #": "1", "Note": ""}, {"Loan #": "1"}) == frozenset()
    assert diff_rows({"Loan #": "1"}, {"Loan #": "1", "Note": "late"}) == frozenset({"Note"})


def test_two_file_scenario_flags_status_change() -> None:
    files = [
        _source("A.csv", {"LoanNumber": "100", "Status": "Open"}),
        _source("B.csv", {"LoanNumber": "100", "Status": "Closed"}),
    ]

    view = run_audit(files, "100")

    assert [res.changes for res in view.results] == [frozenset(), frozenset({"Status"})]
    assert view.identifier == "LoanNumber"


def test_multi_match_query_is_group_major(two_loans: list[SourceFile]) -> None:
    view = run_audit(two_loans, "100,200")

    assert [(res.row["Loan #"], res.row[SOURCE_FILE_FIELD]) for res in view.results] == [
        ("100", "jan.csv"),
        ("100", "feb.csv"),
        ("100", "mar.csv"),
        ("200", "jan.csv"),
        ("200", "feb.csv"),
    ]
    assert [res.changes for res in view.results] == [
        frozenset(),
        frozenset({"Status"}),
        frozenset(),
        frozenset(),
        frozenset({"Rate"}),
    ]


def test_groups_are_diffed_independently_of_interleaving(two_loans: list[SourceFile]) -> None:
    rows = filter_rows(build_master_pool(two_loans), "100,200", "Loan #")

    results = group_and_diff(rows, "Loan #")

    # A naive predecessor diff would compare loan 200 against loan 100.
    assert all(SOURCE_FILE_FIELD not in res.changes for res in results)
    assert "Loan #" not in set().union(*(res.changes for res in results))


def test_each_group_starts_with_empty_changes(two_loans: list[SourceFile]) -> None:
    results = group_and_diff(build_master_pool(two_loans), "Loan #")

    firsts: dict[str, AuditResult] = {}
    for res in results:
        firsts.setdefault(res.row["Loan #"], res)
    assert all(res.changes == frozenset() for res in firsts.values())
    assert len(results) == len(build_master_pool(two_loans))


def test_exact_grouping_keeps_untrimmed_identifiers_apart() -> None:
    rows = build_master_pool(
        [_source("a.csv", {"Loan #": "100", "Status": "Open"}), _source("b.csv", {"Loan #": " 100", "Status": "Closed"})]
    )

    exact = group_and_diff(rows, "Loan #", "exact")
    normalized = group_and_diff(rows, "Loan #", "normalized")

    assert [res.changes for res in exact] == [frozenset(), frozenset()]
    assert [res.changes for res in normalized] == [frozenset(), frozenset({"Loan #", "Status"})]


def test_group_without_identifier_is_a_single_timeline() -> None:
    rows = build_master_pool([_source("a.csv", {"Status": "Open"}), _source("b.csv", {"Status": "Closed"})])

    results = group_and_diff(rows, None)

    assert [res.changes for res in results] == [frozenset(), frozenset({"Status"})]


def test_group_and_diff_of_nothing_is_empty() -> None:
    assert group_and_diff([], "Loan #") == []


# ── Column projection ───────────────────────────────────────────


def test_summary_columns_keep_keys_and_sorted_changed_columns(two_loans: list[SourceFile]) -> None:
    view = run_audit(two_loans, "100,200")

    assert list(view.columns) == [SOURCE_FILE_FIELD, "Loan #", "Rate", "Status"]


def test_summary_columns_keep_keys_even_without_changes() -> None:
    files = [_source("a.csv", {"Loan #": "1", "Status": "Open"}), _source("b.csv", {"Loan #": "1", "Status": "Open"})]

    view = run_audit(files, "1")

    assert list(view.columns) == [SOURCE_FILE_FIELD, "Loan #"]


def test_summary_columns_are_deduplicated() -> None:
    files = [_source("a.csv", {"Loan #": "100"}), _source("b.csv", {"Loan #": " 100 "})]

    view = run_audit(files, "100", config=AuditConfig(group_key="normalized"))

    assert list(view.columns) == [SOURCE_FILE_FIELD, "Loan #"]


def test_full_columns_list_every_observed_column() -> None:
    results = group_and_diff(
        build_master_pool(
            [_source("a.csv", {"Loan #": "1", "Status": "Open"}), _source("b.csv", {"Loan #": "1", "Amount": "9"})]
        ),
        "Loan #",
    )

    assert project_columns(results, "Loan #", "full") == [SOURCE_FILE_FIELD, "Loan #", "Status", "Amount"]
    assert project_columns(results, "Loan #", "full", "alphabetical") == [
        SOURCE_FILE_FIELD,
        "Amount",
        "Loan #",
        "Status",
    ]


@pytest.mark.parametrize("mode", ["summary", "full"])
def test_projection_of_no_results_is_empty(mode: str) -> None:
    assert project_columns([], "Loan #", mode) == []  # type: ignore[arg-type]


# ── Whole chain ─────────────────────────────────────────────────


def test_run_audit_without_files_degrades_to_empty_view() -> None:
    view = run_audit([], "100")

    assert view.results == ()
    assert view.columns == ()
    assert view.identifier is None
    assert view.has_files is False


def test_run_audit_with_no_columns_is_unresolved() -> None:
    view = run_audit([_source("empty.csv", {})], "")

    assert view.identifier is None
    assert view.results == ()
    assert view.rows_in == 1


def test_run_audit_no_match_is_empty_but_counts_files(two_loans: list[SourceFile]) -> None:
    view = run_audit(two_loans, "999")

    assert view.results == ()
    assert view.columns == ()
    assert view.files_loaded == 3
    assert view.rows_in == 5
    assert view.rows_matched == 0


def test_run_audit_is_idempotent(two_loans: list[SourceFile]) -> None:
    filters = [AuditFilter.new("Status", "open,closed,new")]

    first = run_audit(two_loans, "100, 200", filters)
    second = run_audit(two_loans, "100, 200", filters)

    assert first == second
    assert first.changed_columns == frozenset({"Status", "Rate"})


def test_run_audit_honours_identifier_override(two_loans: list[SourceFile]) -> None:
    view = run_audit(two_loans, "new", config=AuditConfig(identifier_override="Status"))

    assert view.identifier == "Status"
    assert [res.row["Loan #"] for res in view.results] == ["200", "200"]
    assert [res.changes for res in view.results] == [frozenset(), frozenset({"Rate"})]
