#!/usr/bin/env python3
"""
Commit History Meta Analyzer (v1.0.0)

Turns a line-by-line git history export (``loc.csv``) into per-commit
aggregates and drives the views of the portfolio "Meta" page:

- Time / hour-of-day scatter plot with area-proportional dot radius
- Brush selection over the plot and a scroll-driven replay of history
- Per-language breakdown and per-file composition of the active selection
- Frontend-ready JSON and a standalone SVG rendering of the scatter plot

Every view update goes through ``reduce(state, event)`` followed by a pure
``render(state)``, so the synchronization logic runs without a display.

Version: 1.0.0
"""

import hashlib
import html
import json
import logging
import math
import os
import re
import sys
import time
from collections import ChainMap, Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import (
    IO,
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import click
import pandas as pd
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

import portfolio

colorama_init(autoreset=True)

logger = logging.getLogger(__name__)

# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

REQUIRED_COLUMNS = [
    "commit",
    "file",
    "line",
    "type",
    "depth",
    "length",
    "author",
    "date",
    "time",
    "timezone",
    "datetime",
]

DEFAULT_COMMIT_URL_BASE = "https://github.com/k-phantastic/vis_class_portfolio/commit/"
RADIUS_RANGE = (2.0, 30.0)
DOMAIN_PADDING = 0.02
SINGLE_POINT_PADDING_SECONDS = 12 * 3600

# d3.schemeTableau10
TABLEAU10 = [
    "#4e79a7",
    "#f28e2c",
    "#e15759",
    "#76b7b2",
    "#59a14f",
    "#edc949",
    "#af7aa1",
    "#ff9da7",
    "#9c755f",
    "#bab0ab",
]

MODE_IDLE = "idle"
MODE_BRUSH = "brush"
MODE_CURSOR = "cursor"


class DatasetLoadError(ValueError):
    """Raised when the line-edit CSV cannot be loaded in full."""


# ============================================================================
# TIMESTAMP HELPERS
# ============================================================================

_COMPACT_OFFSET = re.compile(r"\s*([+-])(\d{2}):?(\d{2})$")


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes so every timestamp is comparable."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(text: str) -> datetime:
    """
    Parse an ISO 8601 timestamp.

    Accepts git-style offsets (``+0000``, `` -0800``) as well as ``+00:00``
    and ``Z``. Values without an offset are read as UTC; the wall-clock
    fields are left untouched.
    """
    value = str(text).strip()
    if not value:
        raise ValueError("empty timestamp")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    if "T" in value or " " in value:
        value = _COMPACT_OFFSET.sub(r"\1\2:\3", value)
    return as_utc(datetime.fromisoformat(value))


def hour_fraction(value: datetime) -> float:
    return value.hour + value.minute / 60


def format_full_date(value: datetime) -> str:
    """'Monday, January 1, 2024'"""
    return f"{value:%A}, {value:%B} {value.day}, {value.year}"


def format_short_time(value: datetime) -> str:
    """'9:00 AM'"""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


def format_percent(proportion: float) -> str:
    """Percent with one decimal, trailing zero trimmed (d3 '.1~%')."""
    text = f"{proportion * 100:.1f}"
    if text.endswith(".0"):
        text = text[:-2]
    return f"{text}%"


# ============================================================================
# DATA MODEL
# ============================================================================


@dataclass(frozen=True)
class LineEdit:
    """One row of loc.csv: a single line touched by a single commit."""

    commit: str
    file: str
    line: int
    type: str
    depth: int
    length: int
    author: str
    date: datetime
    time: str
    timezone: str
    datetime: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commit": self.commit,
            "file": self.file,
            "line": self.line,
            "type": self.type,
            "depth": self.depth,
            "length": self.length,
            "author": self.author,
            "date": self.date.isoformat(),
            "time": self.time,
            "timezone": self.timezone,
            "datetime": self.datetime.isoformat(),
        }


@dataclass(frozen=True)
class Commit:
    """
    Summary of all line edits sharing a commit id.

    ``lines`` carries the per-line detail. It takes no part in equality or
    repr and is left out of ``to_dict``; use ``to_detail_dict`` when the
    lines are wanted.
    """

    id: str
    url: str
    author: str
    date: datetime
    time: str
    timezone: str
    datetime: datetime
    hour_frac: float
    total_lines: int
    lines: Tuple[LineEdit, ...] = field(default=(), repr=False, compare=False)

    @property
    def files(self) -> List[str]:
        return list(dict.fromkeys(line.file for line in self.lines))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "author": self.author,
            "date": self.date.isoformat(),
            "time": self.time,
            "timezone": self.timezone,
            "datetime": self.datetime.isoformat(),
            "hour_frac": round(self.hour_frac, 4),
            "total_lines": self.total_lines,
        }

    def to_detail_dict(self) -> Dict[str, Any]:
        detail = self.to_dict()
        detail["lines"] = [line.to_dict() for line in self.lines]
        return detail


# ============================================================================
# COMMIT AGGREGATOR
# ============================================================================


def _parse_int(row: Dict[str, str], column: str, row_no: int, minimum: int = 0) -> int:
    try:
        value = int(str(row[column]).strip())
    except ValueError as e:
        raise DatasetLoadError(
            f"Row {row_no}: column '{column}' is not an integer: {row[column]!r}"
        ) from e
    if value < minimum:
        raise DatasetLoadError(
            f"Row {row_no}: column '{column}' must be >= {minimum}: {value}"
        )
    return value


def _parse_time_field(value: str, column: str, row_no: int) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise DatasetLoadError(
            f"Row {row_no}: column '{column}' is not a valid timestamp: {value!r}"
        ) from e


def _row_to_line_edit(row: Dict[str, str], row_no: int) -> LineEdit:
    for column in ("commit", "datetime"):
        if not str(row[column]).strip():
            raise DatasetLoadError(f"Row {row_no}: missing required field '{column}'")

    date_text = f"{str(row['date']).strip()}T00:00{str(row['timezone']).strip()}"

    return LineEdit(
        commit=str(row["commit"]).strip(),
        file=row["file"],
        line=_parse_int(row, "line", row_no, minimum=1),
        type=row["type"],
        depth=_parse_int(row, "depth", row_no),
        length=_parse_int(row, "length", row_no),
        author=row["author"],
        date=_parse_time_field(date_text, "date", row_no),
        time=row["time"],
        timezone=row["timezone"],
        datetime=_parse_time_field(row["datetime"], "datetime", row_no),
    )


def load_line_edits(source: Union[str, Path, IO[str]]) -> List[LineEdit]:
    """
    Load every row of a loc.csv export.

    Args:
        source: Path, URL or open text stream of the CSV

    Returns:
        List of LineEdit in source order

    Raises:
        DatasetLoadError: on a missing file, missing columns or any malformed
            row. No partial dataset is ever returned.
    """
    logger.info(f"Loading line edits from {source}")
    try:
        df = pd.read_csv(source, dtype=str, keep_default_na=False)
    except FileNotFoundError as e:
        logger.error(f"Input file not found: {source}")
        raise DatasetLoadError(f"CSV file not found: {source}") from e
    except pd.errors.EmptyDataError as e:
        raise DatasetLoadError(f"CSV file is empty: {source}") from e
    except pd.errors.ParserError as e:
        raise DatasetLoadError(f"Malformed CSV: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    missing_cols = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing_cols:
        raise DatasetLoadError(f"Missing required columns: {missing_cols}")

    edits = [
        _row_to_line_edit(row, row_no)
        for row_no, row in enumerate(df.to_dict("records"), start=1)
    ]
    logger.info(f"Successfully loaded {len(edits)} line edits")
    return edits


def process_commits(
    edits: Iterable[LineEdit], commit_url_base: str = DEFAULT_COMMIT_URL_BASE
) -> Dict[str, Commit]:
    """
    Group line edits into commits, keyed by id in first-seen order.

    Author and timestamps come from the first line of each group; the
    remaining lines are assumed to agree and are not checked.
    """
    groups: Dict[str, List[LineEdit]] = {}
    for edit in edits:
        if not edit.commit:
            raise DatasetLoadError(f"Line edit without commit id: {edit!r}")
        groups.setdefault(edit.commit, []).append(edit)

    commits = {}
    for commit_id, lines in groups.items():
        first = lines[0]
        commits[commit_id] = Commit(
            id=commit_id,
            url=commit_url_base + commit_id,
            author=first.author,
            date=first.date,
            time=first.time,
            timezone=first.timezone,
            datetime=first.datetime,
            hour_frac=hour_fraction(first.datetime),
            total_lines=len(lines),
            lines=tuple(lines),
        )

    logger.debug(f"Aggregated {len(commits)} commits")
    return commits


def sort_commits(commits: Iterable[Commit]) -> List[Commit]:
    """Commits in ascending datetime order (stable for ties)."""
    return sorted(commits, key=lambda c: c.datetime)


def flatten_lines(commits: Iterable[Commit]) -> List[LineEdit]:
    return [line for commit in commits for line in commit.lines]


def summarize_dataset(
    edits: Sequence[LineEdit], commits: Sequence[Commit]
) -> Dict[str, Any]:
    """Headline numbers shown above the scatter plot."""
    n_commits = len(commits)
    n_lines = len(edits)
    depths = [e.depth for e in edits]

    return {
        "commits": n_commits,
        "total_loc": n_lines,
        "avg_loc_per_commit": math.floor(n_lines / n_commits + 0.5) if n_commits else 0,
        "files": len({e.file for e in edits}),
        "max_depth": max(depths, default=0),
        "avg_depth": round(sum(depths) / len(depths), 1) if depths else 0.0,
    }


# ============================================================================
# TIME / MAGNITUDE PROJECTION
# ============================================================================


@dataclass(frozen=True)
class ChartArea:
    """Usable pixel rectangle of the scatter plot."""

    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @classmethod
    def from_dimensions(
        cls,
        width: float = 1000,
        height: float = 600,
        margin_top: float = 10,
        margin_right: float = 10,
        margin_bottom: float = 30,
        margin_left: float = 20,
    ) -> "ChartArea":
        return cls(
            left=margin_left,
            top=margin_top,
            right=width - margin_right,
            bottom=height - margin_bottom,
        )


@dataclass(frozen=True)
class LinearScale:
    domain: Tuple[float, float]
    range: Tuple[float, float]

    def __call__(self, value: float) -> float:
        d0, d1 = self.domain
        r0, r1 = self.range
        t = 0.5 if d1 == d0 else (value - d0) / (d1 - d0)
        return r0 + t * (r1 - r0)

    def invert(self, value: float) -> float:
        d0, d1 = self.domain
        r0, r1 = self.range
        t = 0.5 if r1 == r0 else (value - r0) / (r1 - r0)
        return d0 + t * (d1 - d0)


@dataclass(frozen=True)
class TimeScale(LinearScale):
    """Linear scale whose domain is POSIX seconds and whose input is a datetime."""

    def __call__(self, value: datetime) -> float:
        return super().__call__(as_utc(value).timestamp())

    def invert(self, value: float) -> datetime:
        return datetime.fromtimestamp(super().invert(value), tz=timezone.utc)

    @property
    def extent(self) -> Tuple[datetime, datetime]:
        return (
            datetime.fromtimestamp(self.domain[0], tz=timezone.utc),
            datetime.fromtimestamp(self.domain[1], tz=timezone.utc),
        )


@dataclass(frozen=True)
class SqrtScale(LinearScale):
    """Square-root scale: area, not radius, grows linearly with the input."""

    def __call__(self, value: float) -> float:
        d0, d1 = self.domain
        root = LinearScale((math.sqrt(d0), math.sqrt(d1)), self.range)
        return root(math.sqrt(max(value, 0)))


@dataclass(frozen=True)
class Projection:
    """Scales mapping commit attributes to the chart area."""

    area: ChartArea
    x: TimeScale
    y: LinearScale
    r: SqrtScale

    def time_to_x(self, value: datetime) -> float:
        return self.x(value)

    def hour_to_y(self, hour_frac: float) -> float:
        return self.y(hour_frac)

    def lines_to_radius(self, total_lines: int) -> float:
        return self.r(total_lines)

    def point(self, commit: Commit) -> Tuple[float, float]:
        return self.x(commit.datetime), self.y(commit.hour_frac)

    def invert_x(self, x: float) -> datetime:
        return self.x.invert(x)


def compute_projection(
    commits: Sequence[Commit],
    area: ChartArea,
    padding: float = DOMAIN_PADDING,
    radius_range: Tuple[float, float] = RADIUS_RANGE,
) -> Projection:
    """
    Build the projection for the commits currently plotted.

    The time domain is the commits' extent widened by ``padding`` of the span
    at both ends (half a day each side for a single instant); the radius
    domain is their min/max total lines. An empty collection still yields a
    usable projection.
    """
    if commits:
        stamps = [as_utc(c.datetime).timestamp() for c in commits]
        start, end = min(stamps), max(stamps)
        span = end - start
        pad = span * padding if span > 0 else SINGLE_POINT_PADDING_SECONDS
        time_domain = (start - pad, end + pad)
        totals = [c.total_lines for c in commits]
        line_domain = (float(min(totals)), float(max(totals)))
    else:
        time_domain = (0.0, 1.0)
        line_domain = (0.0, 1.0)

    return Projection(
        area=area,
        x=TimeScale(time_domain, (area.left, area.right)),
        y=LinearScale((0.0, 24.0), (area.bottom, area.top)),
        r=SqrtScale(line_domain, tuple(radius_range)),
    )


# ============================================================================
# SELECTION ENGINE
# ============================================================================


@dataclass(frozen=True)
class Brush:
    """Brush rectangle in pixel space; corners may come in any order."""

    x0: float
    y0: float
    x1: float
    y1: float

    def normalized(self) -> "Brush":
        return Brush(
            min(self.x0, self.x1),
            min(self.y0, self.y1),
            max(self.x0, self.x1),
            max(self.y0, self.y1),
        )

    @property
    def is_empty(self) -> bool:
        return self.x0 == self.x1 or self.y0 == self.y1

    def contains(self, x: float, y: float) -> bool:
        b = self.normalized()
        return b.x0 <= x <= b.x1 and b.y0 <= y <= b.y1

    @classmethod
    def from_string(cls, text: str) -> "Brush":
        """Parse 'x0,y0,x1,y1'."""
        parts = [p.strip() for p in text.split(",")]
        if len(parts) != 4:
            raise ValueError(f"Brush needs four comma-separated numbers, got {text!r}")
        try:
            return cls(*(float(p) for p in parts))
        except ValueError as e:
            raise ValueError(f"Brush coordinates must be numbers: {text!r}") from e


def select_by_brush(
    commits: Iterable[Commit], brush: Optional[Brush], projection: Projection
) -> Tuple[Commit, ...]:
    """Commits whose projected point lies inside the brush (bounds inclusive)."""
    if brush is None or brush.is_empty:
        return ()
    rect = brush.normalized()
    return tuple(c for c in commits if rect.contains(*projection.point(c)))


def select_by_cursor(
    commits: Iterable[Commit], cursor: Optional[datetime]
) -> Tuple[Commit, ...]:
    """Commits made at or before the cursor."""
    if cursor is None:
        return ()
    limit = as_utc(cursor)
    return tuple(c for c in commits if as_utc(c.datetime) <= limit)


def slider_cursor(commits: Sequence[Commit], progress: float) -> Optional[datetime]:
    """Map a 0-100 slider position onto the commits' time extent."""
    if not commits:
        return None
    stamps = [as_utc(c.datetime).timestamp() for c in commits]
    scale = TimeScale((min(stamps), max(stamps)), (0.0, 100.0))
    return scale.invert(min(max(progress, 0.0), 100.0))


def cursor_predicate(limit: datetime) -> Callable[[Commit], bool]:
    limit = as_utc(limit)

    def made_before(commit: Commit) -> bool:
        return as_utc(commit.datetime) <= limit

    return made_before


def search_predicate(query: str) -> Callable[[Commit], bool]:
    """Case-insensitive match on commit id, author, file path or language."""
    needle = query.strip().lower()

    def matches(commit: Commit) -> bool:
        if needle in commit.id.lower() or needle in commit.author.lower():
            return True
        return any(
            needle in line.file.lower() or needle in line.type.lower()
            for line in commit.lines
        )

    return matches


# ============================================================================
# BREAKDOWN AGGREGATOR
# ============================================================================


@dataclass(frozen=True)
class BreakdownEntry:
    language: str
    count: int
    proportion: float

    @property
    def label(self) -> str:
        return f"{self.count} lines ({format_percent(self.proportion)})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language": self.language,
            "count": self.count,
            "proportion": self.proportion,
            "label": self.label,
        }


def language_breakdown(lines: Sequence[LineEdit]) -> List[BreakdownEntry]:
    """Line count and share per language, in first-seen order."""
    total = len(lines)
    if not total:
        return []
    counts = Counter(line.type for line in lines)
    return [
        BreakdownEntry(language, count, count / total)
        for language, count in counts.items()
    ]


def compute_breakdown(
    selection: Sequence[Commit], visible: Sequence[Commit]
) -> List[BreakdownEntry]:
    """
    Breakdown of the selection, or of the visible dataset when nothing is
    selected.

    ``visible`` is the dataset after search/slider filtering; with no filter
    active it is every commit.
    """
    source = selection if selection else visible
    return language_breakdown(flatten_lines(source))


class OrdinalColors:
    """Assigns palette colors to keys in the order they are first requested."""

    def __init__(self, palette: Sequence[str] = TABLEAU10):
        self.palette = list(palette)
        self.assigned: Dict[str, str] = {}

    def __call__(self, key: str) -> str:
        if key not in self.assigned:
            self.assigned[key] = self.palette[len(self.assigned) % len(self.palette)]
        return self.assigned[key]


@dataclass(frozen=True)
class FileEntry:
    name: str
    types: Tuple[str, ...]
    colors: Tuple[str, ...]

    @property
    def line_count(self) -> int:
        return len(self.types)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "line_count": self.line_count,
            "types": list(self.types),
            "colors": list(self.colors),
        }


def file_composition(commits: Iterable[Commit]) -> List[FileEntry]:
    """One entry per file (first-seen order) listing the language of each line."""
    by_file: Dict[str, List[LineEdit]] = {}
    for line in flatten_lines(commits):
        by_file.setdefault(line.file, []).append(line)

    colors = OrdinalColors()
    entries = []
    for name, lines in by_file.items():
        types = tuple(line.type for line in lines)
        entries.append(FileEntry(name, types, tuple(colors(t) for t in types)))
    return entries


# ============================================================================
# SCROLL NARRATIVE
# ============================================================================


@dataclass(frozen=True)
class StoryStep:
    index: int
    commit_id: str
    cursor: datetime
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "commit_id": self.commit_id,
            "cursor": self.cursor.isoformat(),
            "text": self.text,
        }


def build_story(commits: Iterable[Commit]) -> List[StoryStep]:
    """One narrative step per commit, oldest first."""
    steps = []
    for index, commit in enumerate(sort_commits(commits)):
        what = (
            "my first commit, and it was glorious"
            if index == 0
            else "another glorious commit"
        )
        text = (
            f"On {format_full_date(commit.datetime)} at "
            f"{format_short_time(commit.datetime)}, I made {what}. "
            f"I edited {commit.total_lines} lines across {len(commit.files)} files. "
            "Then I looked over all I had made, and I saw that it was very good."
        )
        steps.append(StoryStep(index, commit.id, commit.datetime, text))
    return steps


# ============================================================================
# VIEW SYNCHRONIZER
# ============================================================================


@dataclass(frozen=True)
class BrushEvent:
    brush: Optional[Brush]


@dataclass(frozen=True)
class ScrollStepEvent:
    cursor: datetime


@dataclass(frozen=True)
class SliderEvent:
    progress: float


@dataclass(frozen=True)
class SearchEvent:
    query: str


@dataclass(frozen=True)
class FilterEvent:
    predicate: Optional[Callable[[Commit], bool]]
    label: str = "custom"


@dataclass(frozen=True)
class HoverEvent:
    commit_id: Optional[str]
    pointer: Tuple[float, float] = (0.0, 0.0)


Event = Union[BrushEvent, ScrollStepEvent, SliderEvent, SearchEvent, FilterEvent, HoverEvent]


@dataclass(frozen=True)
class ViewState:
    """
    Input state of the Meta page plus the values derived from it.

    ``visible`` is the dataset after search/slider filtering, ``plotted`` the
    commits drawn on the chart (the cursor selection in cursor mode) and
    ``selection`` the active selection. Only ``reduce`` should produce new
    states so the derived fields stay consistent with the inputs.
    """

    commits: Tuple[Commit, ...]
    area: ChartArea
    padding: float = DOMAIN_PADDING
    radius_range: Tuple[float, float] = RADIUS_RANGE
    mode: str = MODE_IDLE
    brush: Optional[Brush] = None
    cursor: Optional[datetime] = None
    predicate: Optional[Callable[[Commit], bool]] = None
    filter_label: str = ""
    hover_id: Optional[str] = None
    pointer: Tuple[float, float] = (0.0, 0.0)
    visible: Tuple[Commit, ...] = ()
    plotted: Tuple[Commit, ...] = ()
    projection: Optional[Projection] = None
    selection: Tuple[Commit, ...] = ()


def _derive(state: ViewState) -> ViewState:
    if state.predicate is None:
        visible = state.commits
    else:
        visible = tuple(c for c in state.commits if state.predicate(c))

    plotted = select_by_cursor(visible, state.cursor) if state.mode == MODE_CURSOR else visible
    projection = compute_projection(plotted, state.area, state.padding, state.radius_range)

    if state.mode == MODE_BRUSH:
        selection = select_by_brush(plotted, state.brush, projection)
    elif state.mode == MODE_CURSOR:
        selection = plotted
    else:
        selection = ()

    return replace(
        state,
        visible=visible,
        plotted=plotted,
        projection=projection,
        selection=selection,
    )


def initial_state(
    commits: Iterable[Commit],
    area: Optional[ChartArea] = None,
    padding: float = DOMAIN_PADDING,
    radius_range: Tuple[float, float] = RADIUS_RANGE,
) -> ViewState:
    state = ViewState(
        commits=tuple(sort_commits(commits)),
        area=area or ChartArea.from_dimensions(),
        padding=padding,
        radius_range=tuple(radius_range),
    )
    return _derive(state)


def reduce(state: ViewState, event: Event) -> ViewState:
    """
    Apply one input event and return the new state.

    Brush and scroll are exclusive modes; whichever fired last is live.
    Search and slider input share one filter slot that narrows the dataset
    both modes work on. Hover only moves the tooltip.
    """
    if isinstance(event, BrushEvent):
        brush = event.brush if event.brush is not None and not event.brush.is_empty else None
        return _derive(replace(state, mode=MODE_BRUSH, brush=brush))

    if isinstance(event, ScrollStepEvent):
        return _derive(replace(state, mode=MODE_CURSOR, cursor=event.cursor))

    if isinstance(event, SliderEvent):
        limit = slider_cursor(state.commits, event.progress)
        predicate = cursor_predicate(limit) if limit is not None else None
        return _derive(
            replace(state, predicate=predicate, filter_label=f"slider:{event.progress:g}")
        )

    if isinstance(event, SearchEvent):
        query = event.query.strip()
        predicate = search_predicate(query) if query else None
        label = f"search:{query}" if query else ""
        return _derive(replace(state, predicate=predicate, filter_label=label))

    if isinstance(event, FilterEvent):
        label = event.label if event.predicate is not None else ""
        return _derive(replace(state, predicate=event.predicate, filter_label=label))

    if isinstance(event, HoverEvent):
        return replace(state, hover_id=event.commit_id, pointer=tuple(event.pointer))

    raise TypeError(f"Unsupported event: {event!r}")


def replay_story(
    state: ViewState, steps: Optional[Sequence[StoryStep]] = None
) -> Iterator[Tuple[StoryStep, ViewState]]:
    """Scroll through the narrative, yielding the state after every step."""
    if steps is None:
        steps = build_story(state.visible)
    for step in steps:
        state = reduce(state, ScrollStepEvent(step.cursor))
        yield step, state


# ============================================================================
# RENDERING
# ============================================================================


@dataclass(frozen=True)
class DotView:
    commit_id: str
    cx: float
    cy: float
    r: float
    selected: bool
    hovered: bool

    @property
    def opacity(self) -> float:
        return 1.0 if self.hovered else 0.7

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commit_id": self.commit_id,
            "cx": round(self.cx, 3),
            "cy": round(self.cy, 3),
            "r": round(self.r, 3),
            "selected": self.selected,
            "hovered": self.hovered,
            "opacity": self.opacity,
        }


@dataclass(frozen=True)
class AxisTick:
    value: float
    position: float
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "position": round(self.position, 3), "label": self.label}


@dataclass(frozen=True)
class TooltipView:
    commit_id: str
    url: str
    date: str
    time: str
    lines_edited: int
    left: float
    top: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commit_id": self.commit_id,
            "url": self.url,
            "date": self.date,
            "time": self.time,
            "lines_edited": self.lines_edited,
            "left": self.left,
            "top": self.top,
        }


@dataclass(frozen=True)
class RenderedView:
    mode: str
    filter_label: str
    dots: Tuple[DotView, ...]
    x_ticks: Tuple[AxisTick, ...]
    y_ticks: Tuple[AxisTick, ...]
    x_domain: Tuple[datetime, datetime]
    selection_count: str
    selected_ids: Tuple[str, ...]
    breakdown: Tuple[BreakdownEntry, ...]
    files: Tuple[FileEntry, ...]
    tooltip: Optional[TooltipView]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "filter": self.filter_label,
            "dots": [d.to_dict() for d in self.dots],
            "x_ticks": [t.to_dict() for t in self.x_ticks],
            "y_ticks": [t.to_dict() for t in self.y_ticks],
            "x_domain": [d.isoformat() for d in self.x_domain],
            "selection_count": self.selection_count,
            "selected_ids": list(self.selected_ids),
            "breakdown": [b.to_dict() for b in self.breakdown],
            "files": [f.to_dict() for f in self.files],
            "tooltip": self.tooltip.to_dict() if self.tooltip else None,
        }


def hour_ticks(projection: Projection, step: int = 2) -> List[AxisTick]:
    return [
        AxisTick(hour, projection.hour_to_y(hour), f"{hour % 24:02d}:00")
        for hour in range(0, 25, step)
    ]


def time_ticks(projection: Projection, count: int = 5) -> List[AxisTick]:
    """Evenly spaced ticks across the chart width, labelled with the time under each."""
    area = projection.area
    steps = max(count - 1, 1)
    ticks = []
    for i in range(count):
        x = area.left + area.width * i / steps
        moment = projection.invert_x(x)
        ticks.append(AxisTick(moment.timestamp(), x, f"{moment:%b} {moment.day}"))
    return ticks


def selection_count_text(selection: Sequence[Commit]) -> str:
    return f"{len(selection) or 'No'} commits selected"


def render(state: ViewState) -> RenderedView:
    """Project the state onto everything the Meta page displays."""
    projection = state.projection or compute_projection(
        state.plotted, state.area, state.padding, state.radius_range
    )
    selected_ids = [c.id for c in state.selection]
    selected = set(selected_ids)

    dots = tuple(
        DotView(
            commit_id=c.id,
            cx=projection.time_to_x(c.datetime),
            cy=projection.hour_to_y(c.hour_frac),
            r=projection.lines_to_radius(c.total_lines),
            selected=c.id in selected,
            hovered=c.id == state.hover_id,
        )
        for c in sorted(state.plotted, key=lambda c: -c.total_lines)
    )

    tooltip = None
    if state.hover_id is not None:
        hovered = next((c for c in state.commits if c.id == state.hover_id), None)
        if hovered is not None:
            tooltip = TooltipView(
                commit_id=hovered.id,
                url=hovered.url,
                date=format_full_date(hovered.datetime),
                time=format_short_time(hovered.datetime),
                lines_edited=hovered.total_lines,
                left=state.pointer[0],
                top=state.pointer[1],
            )

    return RenderedView(
        mode=state.mode,
        filter_label=state.filter_label,
        dots=dots,
        x_ticks=tuple(time_ticks(projection)),
        y_ticks=tuple(hour_ticks(projection)),
        x_domain=projection.x.extent,
        selection_count=selection_count_text(state.selection),
        selected_ids=tuple(selected_ids),
        breakdown=tuple(compute_breakdown(state.selection, state.visible)),
        files=tuple(file_composition(state.plotted)),
        tooltip=tooltip,
    )


def render_svg(view: RenderedView, area: ChartArea, width: float, height: float) -> str:
    """Standalone SVG of the scatter plot described by ``view``."""
    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 {width:g} {height:g}" '
        'style="overflow: visible">'
    ]

    parts.append('  <g class="gridlines">')
    for tick in view.y_ticks:
        parts.append(
            f'    <line x1="{area.left:g}" x2="{area.right:g}" y1="{tick.position:.2f}" '
            f'y2="{tick.position:.2f}" stroke="#ccc" stroke-opacity="0.5" />'
        )
    parts.append("  </g>")

    parts.append('  <g class="y-axis" font-size="10" text-anchor="end">')
    for tick in view.y_ticks:
        parts.append(
            f'    <text x="{area.left - 4:g}" y="{tick.position:.2f}" '
            f'dy="0.32em">{tick.label}</text>'
        )
    parts.append("  </g>")

    parts.append('  <g class="x-axis" font-size="10" text-anchor="middle">')
    parts.append(
        f'    <line x1="{area.left:g}" x2="{area.right:g}" y1="{area.bottom:g}" '
        f'y2="{area.bottom:g}" stroke="currentColor" />'
    )
    for tick in view.x_ticks:
        parts.append(
            f'    <text x="{tick.position:.2f}" y="{area.bottom + 16:g}">'
            f"{html.escape(tick.label)}</text>"
        )
    parts.append("  </g>")

    parts.append('  <g class="dots">')
    for dot in view.dots:
        css = ' class="selected"' if dot.selected else ""
        fill = "#ff6b6b" if dot.selected else "steelblue"
        parts.append(
            f'    <circle{css} cx="{dot.cx:.2f}" cy="{dot.cy:.2f}" r="{dot.r:.2f}" '
            f'fill="{fill}" fill-opacity="{dot.opacity:g}">'
            f"<title>{html.escape(dot.commit_id)}</title></circle>"
        )
    parts.append("  </g>")

    parts.append("</svg>")
    return "\n".join(parts) + "\n"


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================

CONFIG_NAMES = [".loc-meta.yaml", ".loc-meta.yml", ".loc-meta.json"]

PRESETS = {
    "standard": {"width": 1000, "height": 600},
    "compact": {
        "width": 640,
        "height": 400,
        "margin_bottom": 24,
        "radius_max": 20.0,
    },
    "wide": {"width": 1400, "height": 600},
}

DEFAULTS = {
    "width": 1000,
    "height": 600,
    "margin_top": 10,
    "margin_right": 10,
    "margin_bottom": 30,
    "margin_left": 20,
    "radius_min": RADIUS_RANGE[0],
    "radius_max": RADIUS_RANGE[1],
    "domain_padding": DOMAIN_PADDING,
    "commit_url_base": DEFAULT_COMMIT_URL_BASE,
    "log_level": "WARNING",
}


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Read a ``.yaml``/``.yml`` or ``.json`` config file into a dict.

    Raises FileNotFoundError for a missing file and ValueError for an unknown
    extension or a document that is not a mapping.
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError(f"Unsupported config file format: {suffix or path.name}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: expected a mapping at the top level")
    return data


def find_config_file(data_dir: str) -> Optional[str]:
    """First of CONFIG_NAMES found beside the dataset, then in the working directory."""
    for directory in (Path(data_dir), Path.cwd()):
        for name in CONFIG_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return str(candidate)
    return None


class ConfigResolver:
    """
    Layered settings lookup: CLI options, then the config file, then the
    preset, then DEFAULTS. CLI options left at ``None`` count as unset.
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        preset_name: Optional[str],
        data_dir: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = self._read_config(config_path, data_dir)

        preset_name = preset_name or self.config.get("preset")
        if preset_name and preset_name not in PRESETS:
            logger.warning(f"Unknown preset {preset_name!r} ignored")
        self.preset = PRESETS.get(preset_name, {}) if preset_name else {}

        self.layers = ChainMap(self.cli, self.config, self.preset, DEFAULTS)

    @staticmethod
    def _read_config(config_path: Optional[str], data_dir: str) -> Dict[str, Any]:
        if config_path:
            raw = load_config_file(config_path)
        else:
            found = find_config_file(data_dir)
            if not found:
                return {}
            try:
                raw = load_config_file(found)
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning(f"Ignoring unreadable config {found}: {e}")
                return {}
            logger.info(f"Using configuration from {found}")
        return {str(k).replace("-", "_"): v for k, v in raw.items()}

    def get(self, key: str, default: Any = None) -> Any:
        return self.layers.get(key, default)

    def chart_area(self) -> ChartArea:
        keys = ("width", "height", "margin_top", "margin_right", "margin_bottom", "margin_left")
        return ChartArea.from_dimensions(**{k: float(self.get(k)) for k in keys})


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console output for the CLI: a colored header per stage, a tqdm bar for
    long loops, and a closing summary. Errors always go to stderr; every
    other message is dropped with ``quiet``.
    """

    RULE_WIDTH = 70

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.started = time.time()
        self._stage_started = self.started

    def _paint(self, text: str, *styles: str) -> str:
        if not self.use_colors:
            return text
        return "".join(styles) + text + Style.RESET_ALL

    def _say(self, text: str) -> None:
        if not self.quiet:
            print(text)

    def _rule(self) -> str:
        return self._paint("-" * self.RULE_WIDTH, Fore.CYAN)

    def stage_start(self, stage_name: str, message: str = ""):
        self._stage_started = time.time()
        self._say(f"\n{self._rule()}")
        self._say(self._paint(f"[{stage_name}]", Fore.BLUE, Style.BRIGHT))
        if message:
            self._say(f"   {message}")

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        elapsed = time.time() - self._stage_started
        self._say(self._paint(f"{stage_name} done in {elapsed:.2f}s", Fore.GREEN))
        if stats and self.verbose:
            for key, value in stats.items():
                self._say(f"   {key}: {value}")

    def create_progress_bar(self, total: int, desc: str = "Processing") -> Optional[tqdm]:
        if self.quiet:
            return None
        return tqdm(total=total, desc=desc, unit="step", ncols=100, leave=False)

    def info(self, message: str):
        self._say(message)

    def warning(self, message: str):
        self._say(self._paint(f"Warning: {message}", Fore.YELLOW))

    def error(self, message: str):
        print(self._paint(f"Error: {message}", Fore.RED, Style.BRIGHT), file=sys.stderr)

    def success(self, message: str):
        self._say(self._paint(message, Fore.GREEN, Style.BRIGHT))

    def summary(self, stats: Dict[str, Any]):
        if self.quiet:
            return
        width = max(len(key) for key in stats) if stats else 0
        self._say(f"\n{self._rule()}")
        self._say(self._paint("Meta summary", Fore.MAGENTA, Style.BRIGHT))
        for key, value in stats.items():
            self._say(f"   {key.ljust(width)}  {value}")
        self._say(f"   {'Elapsed'.ljust(width)}  {time.time() - self.started:.2f}s")
        self._say(self._rule())


# ============================================================================
# EXPORT & MANIFEST
# ============================================================================


def write_json(path: str, payload: Any) -> int:
    """Write ``payload`` as pretty JSON, creating parent directories."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return len(text)


def generate_manifest(output_dir: str, source: str, datasets: Dict[str, str]) -> Dict:
    """Generate manifest.json with a checksum for every exported file"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "source": source,
        "datasets": {},
    }

    for dataset_name, file_path in datasets.items():
        full_path = os.path.join(output_dir, file_path)
        if os.path.exists(full_path):
            with open(full_path, "rb") as f:
                data = f.read()
            manifest["datasets"][dataset_name] = {
                "file": file_path,
                "file_size_bytes": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            }

    write_json(os.path.join(output_dir, "manifest.json"), manifest)
    return manifest


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    numeric = getattr(logging, level.upper())
    logger.setLevel(numeric)
    logging.getLogger(portfolio.__name__).setLevel(numeric)


def build_cli_events(
    search: Optional[str],
    slider: Optional[float],
    brush: Optional[Brush],
    cursor: Optional[datetime],
    hover: Optional[str],
) -> List[Event]:
    """Translate CLI options into the event sequence a user would produce."""
    events: List[Event] = []
    if search:
        events.append(SearchEvent(search))
    if slider is not None:
        events.append(SliderEvent(slider))
    if brush is not None:
        events.append(BrushEvent(brush))
    if cursor is not None:
        events.append(ScrollStepEvent(cursor))
    if hover:
        events.append(HoverEvent(hover))
    return events


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "csv_path",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: loc_meta_output_TIMESTAMP)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--preset",
    type=click.Choice(sorted(PRESETS)),
    help="Use predefined chart dimensions",
)
# Chart
@click.option("--width", type=int, help="Chart width in pixels")
@click.option("--height", type=int, help="Chart height in pixels")
@click.option("--commit-url-base", help="Prefix for commit links")
# Interaction
@click.option("--brush", help="Brush rectangle in pixels: X0,Y0,X1,Y1")
@click.option("--cursor", help="Scroll cursor timestamp (ISO 8601)")
@click.option("--slider", type=click.FloatRange(0, 100), help="Time slider position (0-100)")
@click.option("--search", help="Only show commits matching this text")
@click.option("--hover", help="Commit id to show in the tooltip")
# Outputs
@click.option("--replay", is_flag=True, default=None, help="Write one view per story step")
@click.option("--svg", is_flag=True, default=None, help="Also write scatter.svg")
@click.option("--projects", help="URL of a projects JSON list to render")
# Output Control
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show detailed progress information (implies --log-level DEBUG)",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (default: WARNING)",
)
@click.version_option(version=VERSION)
def main(csv_path, output, config, preset, brush, cursor, slider, search, hover, projects, **kwargs):
    """
    Commit History Meta Analyzer

    Loads a loc.csv export, applies brush / scroll / search / slider input
    and writes the resulting Meta page views as JSON (and optionally SVG).
    """
    if brush and cursor:
        raise click.UsageError("--brush and --cursor are mutually exclusive")
    try:
        brush_rect = Brush.from_string(brush) if brush else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--brush")
    try:
        cursor_dt = parse_timestamp(cursor) if cursor else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--cursor")

    resolver = ConfigResolver(kwargs, config, preset, os.path.dirname(csv_path))

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    no_color = resolver.get("no_color", False)
    log_level = "DEBUG" if verbose else resolver.get("log_level")
    configure_logging(log_level)

    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    output_dir = output or f"loc_meta_output_{datetime.now():%Y%m%d_%H%M%S}"
    meta_dir = os.path.join(output_dir, "meta")
    datasets: Dict[str, str] = {}

    try:
        # Load
        reporter.stage_start("Loading", f"Reading {csv_path}")
        edits = load_line_edits(csv_path)
        commits = process_commits(edits, resolver.get("commit_url_base"))
        reporter.stage_complete(
            "Loading", {"Line edits": f"{len(edits):,}", "Commits": f"{len(commits):,}"}
        )

        # Views
        reporter.stage_start("Rendering", "Applying interaction events...")
        area = resolver.chart_area()
        state = initial_state(
            commits.values(),
            area,
            padding=float(resolver.get("domain_padding")),
            radius_range=(float(resolver.get("radius_min")), float(resolver.get("radius_max"))),
        )
        for event in build_cli_events(search, slider, brush_rect, cursor_dt, hover):
            logger.debug(f"Applying {event!r}")
            state = reduce(state, event)
        view = render(state)
        story = build_story(state.visible)

        ordered = sort_commits(commits.values())
        write_json(os.path.join(meta_dir, "commit_stats.json"), summarize_dataset(edits, ordered))
        datasets["commit_stats"] = "meta/commit_stats.json"
        write_json(os.path.join(meta_dir, "commits.json"), [c.to_dict() for c in ordered])
        datasets["commits"] = "meta/commits.json"
        write_json(os.path.join(meta_dir, "view.json"), view.to_dict())
        datasets["view"] = "meta/view.json"
        write_json(os.path.join(meta_dir, "story.json"), [s.to_dict() for s in story])
        datasets["story"] = "meta/story.json"

        if resolver.get("svg", False):
            svg_path = os.path.join(meta_dir, "scatter.svg")
            width = float(resolver.get("width"))
            height = float(resolver.get("height"))
            with open(svg_path, "w", encoding="utf-8") as f:
                f.write(render_svg(view, area, width, height))
            datasets["scatter_svg"] = "meta/scatter.svg"
        reporter.stage_complete("Rendering", {"Selection": view.selection_count})

        # Scroll replay
        if resolver.get("replay", False):
            reporter.stage_start("Replay", f"Scrolling through {len(story)} steps...")
            pbar = reporter.create_progress_bar(len(story), "Replaying")
            for step, step_state in replay_story(state, story):
                rel_path = f"meta/replay/step_{step.index + 1:04d}.json"
                write_json(os.path.join(output_dir, rel_path), render(step_state).to_dict())
                datasets[f"replay_{step.index + 1:04d}"] = rel_path
                if pbar:
                    pbar.update(1)
            if pbar:
                pbar.close()
            reporter.stage_complete("Replay")

        # Projects
        if projects:
            reporter.stage_start("Projects", f"Fetching {projects}")
            data = portfolio.fetch_json(projects)
            if data is None:
                reporter.warning("No project data available, writing an empty list")
            payload = portfolio.projects_payload(data if data is not None else [])
            write_json(os.path.join(output_dir, "projects", "projects.json"), payload)
            datasets["projects"] = "projects/projects.json"
            reporter.stage_complete("Projects", {"Projects": len(payload["cards"])})

        generate_manifest(output_dir, csv_path, datasets)

        reporter.summary(
            {
                "Dataset": csv_path,
                "Output directory": output_dir,
                "Line edits": f"{len(edits):,}",
                "Commits": f"{len(commits):,}",
                "Mode": view.mode,
                "Selection": view.selection_count,
                "Files written": len(datasets) + 1,
            }
        )
        reporter.success(f"Meta views saved to: {output_dir}")

    except Exception as e:
        reporter.error(f"Analysis failed: {str(e)}")
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
