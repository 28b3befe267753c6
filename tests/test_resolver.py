import pytest

from kanthink.models import Board, BoardTarget, Column, ColumnsTarget, ColumnTarget
from kanthink.resolver import ColumnResolutionError, ColumnResolver


@pytest.fixture
def resolver():
    return ColumnResolver(Board(
        id="b",
        name="Roadmap",
        columns=[
            Column(id="c_ideas", name="Ideas"),
            Column(id="c_progress", name="In Progress"),
            Column(id="c_shipped", name="Shipped"),
        ],
    ))


def test_match_strategies_in_order(resolver):
    assert resolver.resolve("c_shipped").confidence == "id"
    assert resolver.resolve("Shipped").confidence == "exact"

    loose = resolver.resolve("in progress")
    assert (loose.column_id, loose.confidence) == ("c_progress", "case_insensitive")

    partial = resolver.resolve("progress")
    assert (partial.column_id, partial.confidence) == ("c_progress", "substring")


def test_unknown_name_falls_back_to_first_column(resolver):
    result = resolver.resolve("Backlog")
    assert result.column_id == "c_ideas"
    assert result.fell_back
    assert resolver.resolve(None).fell_back
    assert resolver.resolve("   ").fell_back


def test_short_column_names_do_not_swallow_queries():
    resolver = ColumnResolver(Board(
        id="b",
        name="Letters",
        columns=[Column(id="c_todo", name="To Do"), Column(id="c_a", name="A"), Column(id="c_blank", name="")],
    ))
    result = resolver.resolve("Archive of ideas")
    assert (result.column_id, result.confidence) == ("c_todo", "fallback")


def test_board_without_columns_raises():
    with pytest.raises(ColumnResolutionError):
        ColumnResolver(Board(name="Empty")).resolve("anything")


def test_board_target_covers_every_column(resolver):
    ids = [r.column_id for r in resolver.resolve_target(BoardTarget())]
    assert ids == ["c_ideas", "c_progress", "c_shipped"]


def test_stale_column_id_is_retried_by_name(resolver):
    [result] = resolver.resolve_target(ColumnTarget(column_id="c_deleted"), target_column_name="Shipped")
    assert result.column_id == "c_shipped"
    assert not result.fell_back


def test_multi_column_target_drops_duplicates(resolver):
    target = ColumnsTarget(column_ids=["c_progress", "In Progress", "c_shipped"])
    assert [r.column_id for r in resolver.resolve_target(target)] == ["c_progress", "c_shipped"]
