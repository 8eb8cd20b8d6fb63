"""Property-based tests using Hypothesis for the mutation engine.

These tests verify invariants that must hold after *any* sequence of edits:
- every non-DYNAMIC row has exactly one cell per column
- row order is a permutation of the row map
- the merged index matches the cells' render hints
- the memoizing span resolver agrees with a fresh resolve
- undoing every step restores the starting snapshot
- width allocation fits the page or container
"""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from gridtpl.contracts.template import Column, ColumnFormat
from gridtpl.engine.history import TemplateSession
from gridtpl.engine.mutations import apply_mutation
from gridtpl.engine.projector import from_document, to_document
from gridtpl.engine.sample import sample_document
from gridtpl.engine.spans import hidden_cells, index_merged
from gridtpl.engine.state import TemplateState
from gridtpl.engine.widths import available_width, export_widths, screen_widths

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

_index = st.integers(min_value=0, max_value=12)

edit_st = st.one_of(
    st.tuples(st.just("column.add")),
    st.tuples(st.just("column.remove"), _index),
    st.tuples(st.just("row.add"), st.sampled_from(["DATA", "HEADER", "DYNAMIC"]), _index),
    st.tuples(st.just("row.remove"), _index),
    st.tuples(st.just("row.reorder"), _index, _index),
    st.tuples(
        st.just("cell.update_render"), _index, _index,
        st.integers(min_value=1, max_value=4), st.integers(min_value=1, max_value=4),
    ),
    st.tuples(st.just("row.update"), _index, st.sampled_from(["DATA", "DYNAMIC", "FOOTER"])),
)


def _start() -> TemplateState:
    return from_document(sample_document(4))


def _payload(state: TemplateState, edit: tuple) -> tuple[str, dict] | None:
    """Turn a random edit into a mutation call against the current state."""
    kind = edit[0]
    rows = state.row_order
    if kind == "column.add":
        return kind, {}
    if kind == "column.remove":
        if len(state.columns) <= 1:
            return None
        return kind, {"index": edit[1] % len(state.columns)}
    if kind == "row.add":
        return kind, {"row": {"rowType": edit[1]}, "insert_at": edit[2]}
    if not rows:
        return None
    if kind == "row.remove":
        return kind, {"row_id": rows[edit[1] % len(rows)]}
    if kind == "row.reorder":
        return kind, {"from_index": edit[1] % len(rows), "to_index": edit[2] % len(rows)}
    if kind == "row.update":
        return kind, {"row_id": rows[edit[1] % len(rows)], "patch": {"rowType": edit[2]}}
    row = state.rows[rows[edit[1] % len(rows)]]
    if not row.cell_ids:
        return None
    cell_id = row.cell_ids[edit[2] % len(row.cell_ids)]
    return kind, {"cell_id": cell_id, "patch": {"colspan": edit[3], "rowspan": edit[4]}}


def _check_shape(state: TemplateState) -> None:
    assert sorted(state.row_order) == sorted(state.rows)
    owned: list[str] = []
    for _, row in state.iter_rows():
        if row.is_dynamic:
            assert row.cell_ids == ()
        else:
            assert len(row.cell_ids) == len(state.columns)
        owned.extend(row.cell_ids)
    assert len(owned) == len(set(owned))
    assert set(owned) == set(state.cells)
    assert state.merged == index_merged(state.rows, state.cells)


# ---------------------------------------------------------------------------
# Grid shape
# ---------------------------------------------------------------------------


@given(edits=st.lists(edit_st, max_size=25))
@settings(max_examples=60, deadline=None)
def test_grid_stays_rectangular(edits):
    state = _start()
    for edit in edits:
        call = _payload(state, edit)
        if call is None:
            continue
        state = apply_mutation(state, call[0], **call[1])
        _check_shape(state)


@given(edits=st.lists(edit_st, max_size=20))
@settings(max_examples=40, deadline=None)
def test_memoized_spans_match_fresh_resolve(edits):
    session = TemplateSession(_start())
    for edit in edits:
        call = _payload(session.state, edit)
        if call is None:
            continue
        session.apply(call[0], **call[1])
        assert session.hidden_cells() == hidden_cells(session.state)


@given(edits=st.lists(edit_st, max_size=20))
@settings(max_examples=40, deadline=None)
def test_hidden_cells_belong_to_their_rows(edits):
    state = _start()
    for edit in edits:
        call = _payload(state, edit)
        if call is not None:
            state = apply_mutation(state, call[0], **call[1])
    hidden = hidden_cells(state)
    for row_id, cell_id in hidden:
        assert row_id in state.rows
        assert cell_id in state.rows[row_id].cell_ids
    # the first cell of the first row can never be covered
    first = state.row_at(0)
    if first is not None and first.cell_ids:
        assert (first.id, first.cell_ids[0]) not in hidden


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@given(edits=st.lists(edit_st, min_size=1, max_size=15))
@settings(max_examples=40, deadline=None)
def test_undo_all_restores_start_and_redo_all_restores_end(edits):
    start = _start()
    session = TemplateSession(start)
    for edit in edits:
        call = _payload(session.state, edit)
        if call is not None:
            session.apply(call[0], **call[1])
    end = session.state

    while session.undo():
        pass
    assert session.state is start
    while session.redo():
        pass
    assert session.state is end


# ---------------------------------------------------------------------------
# Document round-trip
# ---------------------------------------------------------------------------


@given(edits=st.lists(edit_st, max_size=15))
@settings(max_examples=30, deadline=None)
def test_document_round_trip_keeps_layout(edits):
    state = _start()
    for edit in edits:
        call = _payload(state, edit)
        if call is not None:
            state = apply_mutation(state, call[0], **call[1])
    again = from_document(to_document(state))
    assert again.row_order == state.row_order
    assert again.columns == state.columns
    assert [r.row_type for _, r in again.iter_rows()] == [r.row_type for _, r in state.iter_rows()]
    assert len(hidden_cells(again)) == len(hidden_cells(state))


# ---------------------------------------------------------------------------
# Widths
# ---------------------------------------------------------------------------

width_st = st.one_of(st.none(), st.integers(min_value=1, max_value=400))
relative_st = st.one_of(st.none(), st.floats(min_value=0.1, max_value=10, allow_nan=False))


@given(
    specs=st.lists(st.tuples(width_st, relative_st), min_size=1, max_size=12),
    page=st.sampled_from(["A4", "LETTER"]),
    orientation=st.sampled_from(["portrait", "landscape"]),
)
@settings(max_examples=100)
def test_export_widths_fit_page(specs, page, orientation):
    cols = [
        Column(id=f"C__{i + 1}", name=str(i), format=ColumnFormat(width=w, relative_width=rw))
        for i, (w, rw) in enumerate(specs)
    ]
    widths = export_widths(cols, page, orientation)
    assert len(widths) == len(cols)
    assert all(w >= 0 for w in widths)
    assert sum(widths) <= available_width(page, orientation)
    assert widths == export_widths(cols, page, orientation)


@given(
    count=st.integers(min_value=1, max_value=20),
    container=st.integers(min_value=0, max_value=5000),
)
def test_auto_screen_widths_split_evenly(count, container):
    cols = [Column(id=f"C__{i + 1}", name=str(i)) for i in range(count)]
    widths = screen_widths(cols, container)
    assert len(set(widths)) == 1
    if container // count > 0:
        assert sum(widths) <= container
    else:
        assert widths[0] == 150
