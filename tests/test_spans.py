"""Tests for merged-cell span resolution."""

from __future__ import annotations

from gridtpl.engine.mutations import apply_mutation
from gridtpl.engine.spans import (
    SpanResolver,
    effective_span,
    find_anchors,
    hidden_cells,
    index_merged,
)


def _merge(state, row_id, col, colspan=1, rowspan=1):
    cid = state.rows[row_id].cell_ids[col]
    return apply_mutation(state, "cell.update_render", cell_id=cid, patch={"colspan": colspan, "rowspan": rowspan})


def _pos(state, row_id, col):
    return (row_id, state.rows[row_id].cell_ids[col])


def test_no_merges_hide_nothing(grid):
    assert hidden_cells(grid) == frozenset()


def test_two_by_two_merge(grid):
    s = _merge(grid, "R__2", 0, colspan=2, rowspan=2)
    assert hidden_cells(s) == {
        _pos(s, "R__2", 1),
        _pos(s, "R__3", 0),
        _pos(s, "R__3", 1),
    }


def test_rowspan_truncated_at_end(grid):
    s = _merge(grid, "R__3", 1, rowspan=4)
    assert hidden_cells(s) == frozenset()
    assert effective_span(s, "R__3", s.rows["R__3"].cell_ids[1]) == (1, 1)


def test_rowspan_stops_at_dynamic_row(grid):
    s = apply_mutation(grid, "row.add", row={"id": "D", "rowType": "DYNAMIC"}, insert_at=1)
    s = _merge(s, "R__1", 0, rowspan=3)
    # R__2 sits below the dynamic row and stays visible
    assert hidden_cells(s) == frozenset()
    assert effective_span(s, "R__1", s.rows["R__1"].cell_ids[0]) == (1, 1)


def test_colspan_past_row_end_is_ignored(grid):
    s = _merge(grid, "R__1", 1, colspan=5)
    assert hidden_cells(s) == {_pos(s, "R__1", 2)}
    assert effective_span(s, "R__1", s.rows["R__1"].cell_ids[1]) == (2, 1)


def test_effective_span_of_unmerged_or_unknown(grid):
    cid = grid.rows["R__1"].cell_ids[0]
    assert effective_span(grid, "R__1", cid) == (1, 1)
    assert effective_span(grid, "nope", cid) == (1, 1)


def test_index_merged(state):
    footer_anchor = state.rows["R__4"].cell_ids[0]
    assert index_merged(state.rows, state.cells) == {footer_anchor: "R__4"}
    assert state.merged == {footer_anchor: "R__4"}


def test_merged_index_records_owning_row(grid):
    s = _merge(grid, "R__2", 1, colspan=2)
    assert s.merged == {s.rows["R__2"].cell_ids[1]: "R__2"}
    s = _merge(s, "R__2", 1, colspan=1)
    assert s.merged == {}


def test_anchors_follow_row_reorder(grid):
    s = _merge(grid, "R__1", 2, colspan=1, rowspan=2)
    s = _merge(s, "R__3", 0, colspan=2)
    right, left = s.rows["R__1"].cell_ids[2], s.rows["R__3"].cell_ids[0]
    assert find_anchors(s) == [(0, 2, right), (2, 0, left)]

    moved = apply_mutation(s, "row.reorder", from_index=2, to_index=0)
    assert moved.merged is s.merged
    assert find_anchors(moved) == [(0, 0, left), (1, 2, right)]
    assert hidden_cells(moved) == {_pos(moved, "R__3", 1), _pos(moved, "R__2", 2)}


def test_anchor_entry_with_wrong_owner_is_skipped(grid):
    s = _merge(grid, "R__1", 0, colspan=2)
    cid = s.rows["R__1"].cell_ids[0]
    stale = s.model_copy(update={"merged": {cid: "R__3"}})
    assert find_anchors(stale) == []


def test_footer_merge_in_fixture(state):
    assert hidden_cells(state) == {_pos(state, "R__4", 1)}


class TestSpanResolver:
    def test_matches_hidden_cells(self, grid):
        s = _merge(grid, "R__2", 0, colspan=2, rowspan=2)
        assert SpanResolver().resolve(s) == hidden_cells(s)

    def test_memoized_across_plain_edits(self, grid):
        s = _merge(grid, "R__1", 0, colspan=2)
        resolver = SpanResolver()
        first = resolver.resolve(s)
        assert resolver.resolve(s) is first
        edited = apply_mutation(s, "cell.update", cell_id=s.rows["R__2"].cell_ids[2], patch={"value": "x"})
        assert resolver.resolve(edited) is first

    def test_recomputes_when_anchor_changes(self, grid):
        s = _merge(grid, "R__1", 0, colspan=2)
        resolver = SpanResolver()
        first = resolver.resolve(s)
        wider = _merge(s, "R__1", 0, colspan=3)
        assert resolver.resolve(wider) != first
        assert resolver.is_hidden(wider, *_pos(wider, "R__1", 2))

    def test_recomputes_when_rows_reorder(self, grid):
        s = _merge(grid, "R__1", 0, rowspan=2)
        resolver = SpanResolver()
        assert resolver.is_hidden(s, *_pos(s, "R__2", 0))
        moved = apply_mutation(s, "row.reorder", from_index=2, to_index=1)
        assert resolver.is_hidden(moved, *_pos(moved, "R__3", 0))
        assert not resolver.is_hidden(moved, *_pos(moved, "R__2", 0))
