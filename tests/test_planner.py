"""Tests for the migration planner."""

from datetime import date, datetime, time
from unittest.mock import MagicMock

import pytest
from git import Repo

from conftest import add_commits
from histofy.core.backend import GitBackend
from histofy.core.errors import InvalidRange, NoCommitsFound, ValidationError
from histofy.core.planner import (
    MigrationPlanner,
    distribute,
    parse_date,
    parse_range,
    parse_time,
    validate_spread,
)


@pytest.fixture
def planner(temp_git_project):
    return MigrationPlanner(GitBackend(temp_git_project))


def test_single_commit_gets_start_timestamp(planner, temp_git_project):
    add_commits(temp_git_project, 1)

    plan = planner.plan("HEAD", "2023-06-15")

    assert plan.commit_count == 1
    assert plan.entries[0].new_date == datetime(2023, 6, 15, 9, 0)


def test_three_commits_spread_over_one_day(planner, temp_git_project):
    shas = add_commits(temp_git_project, 3)

    plan = planner.plan("HEAD~2..HEAD", "2023-06-15", spread_days=1, start_time="09:00")

    assert [e.original_hash for e in plan.entries] == shas
    assert [e.new_date for e in plan.entries] == [
        datetime(2023, 6, 15, 9, 0),
        datetime(2023, 6, 15, 17, 0),
        datetime(2023, 6, 16, 1, 0),
    ]


def test_range_is_inclusive_of_both_ends(planner, temp_git_project):
    shas = add_commits(temp_git_project, 4)

    plan = planner.plan(f"{shas[1]}..{shas[2]}", "2023-06-15")

    assert [e.original_hash for e in plan.entries] == shas[1:3]


def test_plan_copies_message_and_author_verbatim(planner, temp_git_project):
    add_commits(temp_git_project, 1)
    head = Repo(temp_git_project).head.commit

    entry = planner.plan("HEAD", "2023-06-15").entries[0]

    assert entry.message == head.message
    assert entry.author_name == "Test User"
    assert entry.author_email == "test@example.com"
    assert entry.parents == [p.hexsha for p in head.parents]


def test_plan_records_branch(planner, temp_git_project, branch):
    add_commits(temp_git_project, 2)

    plan = planner.plan("HEAD~1..HEAD", "2023-06-15")

    assert plan.ref == branch
    assert plan.range_spec == "HEAD~1..HEAD"


def test_new_dates_are_non_decreasing(planner, temp_git_project):
    add_commits(temp_git_project, 7)

    plan = planner.plan("HEAD~6..HEAD", "2023-01-01", spread_days=3, start_time="23:30")

    dates = [e.new_date for e in plan.entries]
    assert dates == sorted(dates)
    assert len(dates) == 7


def test_reversed_range_is_rejected(planner, temp_git_project):
    add_commits(temp_git_project, 2)

    with pytest.raises(InvalidRange):
        planner.plan("HEAD..HEAD~1", "2023-06-15")


def test_unknown_commit_is_rejected(planner):
    with pytest.raises(InvalidRange):
        planner.plan("deadbeefdeadbeef", "2023-06-15")


def test_detached_head_is_rejected(planner, temp_git_project):
    add_commits(temp_git_project, 1)
    repo = Repo(temp_git_project)
    repo.git.checkout("--detach", "HEAD")

    with pytest.raises(ValidationError) as exc_info:
        planner.plan("HEAD", "2023-06-15")
    assert exc_info.value.field == "ref"


@pytest.mark.parametrize(
    "range_spec, start_date, start_time, spread_days, field",
    [
        ("", "2023-06-15", "09:00", 1, "commit_range"),
        ("a...b", "2023-06-15", "09:00", 1, "commit_range"),
        ("a..b..c", "2023-06-15", "09:00", 1, "commit_range"),
        ("..HEAD", "2023-06-15", "09:00", 1, "commit_range"),
        ("HEAD", "2023-13-40", "09:00", 1, "start_date"),
        ("HEAD", "15/06/2023", "09:00", 1, "start_date"),
        ("HEAD", "2023-06-15", "24:00", 1, "start_time"),
        ("HEAD", "2023-06-15", "9am", 1, "start_time"),
        ("HEAD", "2023-06-15", "09:00", 0, "spread_days"),
        ("HEAD", "2023-06-15", "09:00", 366, "spread_days"),
    ],
)
def test_invalid_input_fails_before_touching_git(
    range_spec, start_date, start_time, spread_days, field
):
    backend = MagicMock()
    planner = MigrationPlanner(backend)

    with pytest.raises(ValidationError) as exc_info:
        planner.plan(range_spec, start_date, spread_days, start_time)

    assert exc_info.value.field == field
    assert backend.method_calls == []


def test_empty_range_raises_no_commits_found():
    backend = MagicMock()
    backend.current_branch.return_value = "main"
    backend.resolve_range.return_value = []

    with pytest.raises(NoCommitsFound):
        MigrationPlanner(backend).plan("HEAD", "2023-06-15")


def test_parse_helpers():
    assert parse_date("2023-06-15") == date(2023, 6, 15)
    assert parse_date(datetime(2023, 6, 15, 10, 0)) == date(2023, 6, 15)
    assert parse_time("7:05") == time(7, 5)
    assert parse_time("23:59") == time(23, 59)
    assert parse_range("abc") == (None, "abc")
    assert parse_range(" a..b ") == ("a", "b")
    assert validate_spread(365) == 365

    with pytest.raises(ValidationError):
        validate_spread(True)


def test_distribute_spacing():
    stamps = distribute(4, date(2023, 6, 15), time(0, 0), 2)

    assert stamps == [
        datetime(2023, 6, 15, 0, 0),
        datetime(2023, 6, 15, 12, 0),
        datetime(2023, 6, 16, 0, 0),
        datetime(2023, 6, 16, 12, 0),
    ]
