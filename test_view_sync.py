#!/usr/bin/env python3
"""
Test suite for the Meta page view synchronizer: reduce() transitions and
render() output under brush, scroll, search, slider and hover input.
"""

import io
from datetime import datetime, timedelta, timezone

import pytest

from conftest import SAMPLE_CSV
from loc_meta import (
    MODE_BRUSH,
    MODE_CURSOR,
    MODE_IDLE,
    Brush,
    BrushEvent,
    FilterEvent,
    HoverEvent,
    ScrollStepEvent,
    SearchEvent,
    SliderEvent,
    initial_state,
    load_line_edits,
    process_commits,
    reduce,
    render,
    replay_story,
)


def ids(commits):
    return [c.id for c in commits]


@pytest.fixture
def state(history_commits, chart_area):
    return initial_state(history_commits.values(), chart_area)


@pytest.fixture
def full_brush(chart_area):
    return Brush(chart_area.left, chart_area.top, chart_area.right, chart_area.bottom)


# ============================================================================
# INITIAL STATE
# ============================================================================


class TestInitialState:
    def test_idle_state_plots_everything(self, state):
        assert state.mode == MODE_IDLE
        assert ids(state.commits) == ["c1", "c2", "c3", "c4"]
        assert ids(state.plotted) == ["c1", "c2", "c3", "c4"]
        assert state.selection == ()
        assert state.projection is not None

    def test_idle_render(self, state):
        view = render(state)
        assert view.selection_count == "No commits selected"
        assert len(view.dots) == 4
        assert not any(d.selected for d in view.dots)
        assert view.tooltip is None

    def test_dots_drawn_largest_first(self, state):
        view = render(state)
        assert [d.commit_id for d in view.dots] == ["c2", "c1", "c4", "c3"]

    def test_empty_selection_falls_back_to_full_breakdown(self, state):
        view = render(state)
        assert [(b.language, b.count) for b in view.breakdown] == [
            ("html", 3),
            ("css", 2),
            ("js", 5),
        ]

    def test_empty_dataset_renders_empty_chart(self, chart_area):
        empty = initial_state([], chart_area)
        view = render(empty)
        assert view.dots == ()
        assert view.breakdown == ()
        assert view.files == ()
        assert view.selection_count == "No commits selected"

        after = reduce(empty, ScrollStepEvent(datetime(2024, 1, 1, tzinfo=timezone.utc)))
        assert render(after).dots == ()


# ============================================================================
# BRUSH
# ============================================================================


class TestBrush:
    def test_full_brush_selects_everything(self, state, full_brush):
        new_state = reduce(state, BrushEvent(full_brush))
        view = render(new_state)
        assert new_state.mode == MODE_BRUSH
        assert view.selection_count == "4 commits selected"
        assert all(d.selected for d in view.dots)

    def test_brush_on_late_night_commits(self, state, chart_area):
        projection = state.projection
        brush = Brush(chart_area.left, projection.hour_to_y(24), chart_area.right, projection.hour_to_y(20))
        new_state = reduce(state, BrushEvent(brush))
        view = render(new_state)
        assert ids(new_state.selection) == ["c3"]
        assert view.selected_ids == ("c3",)
        assert [(b.language, b.proportion) for b in view.breakdown] == [("js", 1.0)]
        # brushing highlights; it does not narrow what is plotted
        assert len(view.dots) == 4

    def test_cleared_brush_selects_nothing(self, state, full_brush):
        brushed = reduce(state, BrushEvent(full_brush))
        cleared = reduce(brushed, BrushEvent(None))
        assert cleared.selection == ()
        assert cleared.brush is None
        assert render(cleared).selection_count == "No commits selected"

    def test_zero_width_brush_selects_nothing(self, state, chart_area):
        x = state.projection.time_to_x(state.commits[0].datetime)
        new_state = reduce(state, BrushEvent(Brush(x, chart_area.top, x, chart_area.bottom)))
        assert new_state.selection == ()
        assert new_state.brush is None

    def test_reduce_does_not_mutate_previous_state(self, state, full_brush):
        reduce(state, BrushEvent(full_brush))
        assert state.mode == MODE_IDLE
        assert state.selection == ()


# ============================================================================
# SCROLL CURSOR
# ============================================================================


class TestScroll:
    def test_cursor_narrows_plotted_commits(self, state, history_commits):
        cursor = history_commits["c2"].datetime
        new_state = reduce(state, ScrollStepEvent(cursor))
        view = render(new_state)

        assert new_state.mode == MODE_CURSOR
        assert ids(new_state.plotted) == ["c1", "c2"]
        assert ids(new_state.selection) == ["c1", "c2"]
        assert view.selection_count == "2 commits selected"
        assert [f.name for f in view.files] == ["index.html", "style.css", "global.js"]

    def test_projection_follows_plotted_commits(self, state, history_commits, chart_area):
        cursor = history_commits["c2"].datetime
        new_state = reduce(state, ScrollStepEvent(cursor))
        # the newest plotted commit moves right when later commits drop out
        full_x = state.projection.time_to_x(cursor)
        narrowed_x = new_state.projection.time_to_x(cursor)
        assert narrowed_x > full_x
        assert narrowed_x < chart_area.right
        # radius domain is re-derived: c2 is the largest commit either way,
        # c1 is now the smallest
        assert new_state.projection.lines_to_radius(3) == pytest.approx(2)

    def test_cursor_before_first_commit(self, state, history_commits):
        cursor = history_commits["c1"].datetime - timedelta(minutes=1)
        new_state = reduce(state, ScrollStepEvent(cursor))
        view = render(new_state)
        assert new_state.selection == ()
        assert view.dots == ()
        # falls back to the whole dataset instead of going blank
        assert sum(b.count for b in view.breakdown) == 10

    def test_cursor_after_last_commit(self, state, history_commits):
        cursor = history_commits["c4"].datetime + timedelta(days=1)
        new_state = reduce(state, ScrollStepEvent(cursor))
        assert ids(new_state.selection) == ["c1", "c2", "c3", "c4"]

    def test_worked_example_fallback(self, chart_area):
        commits = process_commits(load_line_edits(io.StringIO(SAMPLE_CSV)))
        start = initial_state(commits.values(), chart_area)
        before = commits["a1"].datetime - timedelta(hours=1)
        view = render(reduce(start, ScrollStepEvent(before)))
        assert [(b.language, b.count) for b in view.breakdown] == [("ts", 2), ("css", 1)]
        assert view.breakdown[0].proportion == pytest.approx(2 / 3)

    def test_replay_grows_monotonically(self, state):
        seen = []
        previous = set()
        for step, step_state in replay_story(state):
            current = set(ids(step_state.selection))
            assert previous <= current
            assert step.commit_id in current
            previous = current
            seen.append(len(step_state.plotted))
        assert seen == [1, 2, 3, 4]


# ============================================================================
# MODE EXCLUSIVITY
# ============================================================================


class TestModes:
    def test_latest_mode_wins(self, state, full_brush, history_commits):
        brushed = reduce(state, BrushEvent(full_brush))
        scrolled = reduce(brushed, ScrollStepEvent(history_commits["c1"].datetime))
        assert scrolled.mode == MODE_CURSOR
        assert ids(scrolled.selection) == ["c1"]
        # the brush is kept but inert until brushing again
        assert scrolled.brush == full_brush

        rebrushed = reduce(scrolled, BrushEvent(full_brush))
        assert rebrushed.mode == MODE_BRUSH
        assert ids(rebrushed.plotted) == ["c1", "c2", "c3", "c4"]
        assert len(rebrushed.selection) == 4


# ============================================================================
# SEARCH & SLIDER
# ============================================================================


class TestFilters:
    def test_search_narrows_visible_dataset(self, state):
        new_state = reduce(state, SearchEvent("META/"))
        assert ids(new_state.visible) == ["c3", "c4"]
        assert ids(new_state.plotted) == ["c3", "c4"]
        assert render(new_state).filter_label == "search:META/"

    def test_search_matches_author_and_language(self, state):
        assert len(reduce(state, SearchEvent("kay")).visible) == 4
        assert ids(reduce(state, SearchEvent("css")).visible) == ["c1", "c2"]

    def test_empty_search_clears_filter(self, state):
        narrowed = reduce(state, SearchEvent("meta/"))
        cleared = reduce(narrowed, SearchEvent("  "))
        assert cleared.predicate is None
        assert len(cleared.visible) == 4

    def test_slider(self, state):
        assert ids(reduce(state, SliderEvent(0)).visible) == ["c1"]
        assert len(reduce(state, SliderEvent(100)).visible) == 4
        # halfway through the span lands a few hours before c3 (UTC)
        middle = reduce(state, SliderEvent(50))
        assert ids(middle.visible) == ["c1", "c2"]
        assert ids(reduce(state, SliderEvent(60)).visible) == ["c1", "c2", "c3"]

    def test_slider_replaces_search(self, state):
        searched = reduce(state, SearchEvent("meta/"))
        slid = reduce(searched, SliderEvent(100))
        assert len(slid.visible) == 4
        assert slid.filter_label == "slider:100"

    def test_custom_filter_with_brush(self, state, full_brush):
        filtered = reduce(state, FilterEvent(lambda c: c.total_lines >= 3, "big"))
        brushed = reduce(filtered, BrushEvent(full_brush))
        assert ids(brushed.selection) == ["c1", "c2"]
        # breakdown fallback uses the filtered dataset
        idle_view = render(reduce(brushed, BrushEvent(None)))
        assert sum(b.count for b in idle_view.breakdown) == 7

    def test_cursor_operates_within_filter(self, state, history_commits):
        filtered = reduce(state, SearchEvent("js"))
        scrolled = reduce(filtered, ScrollStepEvent(history_commits["c3"].datetime))
        assert ids(scrolled.selection) == ["c2", "c3"]


# ============================================================================
# HOVER
# ============================================================================


class TestHover:
    def test_hover_shows_tooltip_without_touching_selection(self, state, full_brush):
        brushed = reduce(state, BrushEvent(full_brush))
        hovered = reduce(brushed, HoverEvent("c2", (120.0, 45.0)))
        view = render(hovered)

        assert hovered.selection == brushed.selection
        assert view.tooltip.commit_id == "c2"
        assert view.tooltip.date == "Saturday, February 3, 2024"
        assert view.tooltip.time == "1:45 PM"
        assert view.tooltip.lines_edited == 4
        assert (view.tooltip.left, view.tooltip.top) == (120.0, 45.0)

        dot = next(d for d in view.dots if d.commit_id == "c2")
        assert dot.hovered and dot.opacity == 1.0
        assert all(d.opacity == 0.7 for d in view.dots if d.commit_id != "c2")

    def test_hover_works_in_cursor_mode(self, state, history_commits):
        scrolled = reduce(state, ScrollStepEvent(history_commits["c1"].datetime))
        view = render(reduce(scrolled, HoverEvent("c1")))
        assert view.tooltip.commit_id == "c1"

    def test_leaving_hides_tooltip(self, state):
        hovered = reduce(state, HoverEvent("c1"))
        assert render(reduce(hovered, HoverEvent(None))).tooltip is None

    def test_unknown_commit_has_no_tooltip(self, state):
        assert render(reduce(state, HoverEvent("missing"))).tooltip is None


def test_unsupported_event(state):
    with pytest.raises(TypeError):
        reduce(state, "scroll")


def test_rendered_view_serializes(state, full_brush):
    payload = render(reduce(state, BrushEvent(full_brush))).to_dict()
    assert payload["mode"] == "brush"
    assert len(payload["dots"]) == 4
    assert payload["y_ticks"][0]["label"] == "00:00"
    assert payload["y_ticks"][-1]["label"] == "00:00"
    assert payload["tooltip"] is None
