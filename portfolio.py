"""
Portfolio site helpers.

Everything around the Meta page that the site needs: fetching and rendering
the project list, the year pie chart with its search filter, navigation
links, the persisted color scheme, and the contact form's mailto URL.
"""

import html
import json
import logging
import math
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE = "https://vis-society.github.io/labs/2/images/empty.svg"
VALID_HEADINGS = ("h1", "h2", "h3", "h4", "h5", "h6")

AUTOMATIC_SCHEME = "light dark"
COLOR_SCHEMES = {
    AUTOMATIC_SCHEME: "Automatic",
    "light": "Light",
    "dark": "Dark",
}

DEFAULT_PAGES = [
    {"url": "", "title": "Home"},
    {"url": "projects/", "title": "Projects"},
    {"url": "meta/", "title": "Meta"},
    {"url": "contact/", "title": "Contact"},
    {"url": "resume/", "title": "Resume"},
    {"url": "https://github.com/k-phantastic", "title": "GitHub"},
]

# Characters encodeURIComponent leaves alone
_URI_COMPONENT_SAFE = "-_.!~*'()"


# ============================================================================
# FETCHING
# ============================================================================


def fetch_json(
    url: str, client: Optional[httpx.Client] = None, timeout: float = 10.0
) -> Optional[Any]:
    """
    GET ``url`` and decode its JSON body.

    Failures (non-2xx status, transport errors, invalid JSON) are logged and
    reported as ``None``; callers treat that as "no data".
    """
    owns_client = client is None
    http = client or httpx.Client(timeout=timeout, follow_redirects=True)
    try:
        response = http.get(url)
        response.raise_for_status()
        logger.debug(f"Response {response.status_code} for {url}")
        return response.json()
    except httpx.HTTPStatusError as e:
        logger.error(
            f"Failed to fetch {url}: {e.response.status_code} {e.response.reason_phrase}"
        )
    except httpx.RequestError as e:
        logger.error(f"Error fetching {url}: {e}")
    except ValueError as e:
        logger.error(f"Error parsing JSON data from {url}: {e}")
    finally:
        if owns_client:
            http.close()
    return None


def fetch_github_profile(username: str, client: Optional[httpx.Client] = None):
    return fetch_json(f"https://api.github.com/users/{username}", client=client)


# ============================================================================
# PROJECT LIST
# ============================================================================


@dataclass(frozen=True)
class ProjectCard:
    title: str
    year: Any
    image: str
    description: str
    heading_level: str = "h2"

    def to_html(self) -> str:
        h = self.heading_level
        title = html.escape(str(self.title))
        return (
            "<article>\n"
            f"  <{h}>{title}</{h}>\n"
            f'  <p class="project-year"><strong>{html.escape(str(self.year))}</strong></p>\n'
            f'  <img src="{html.escape(str(self.image), quote=True)}" alt="{title}">\n'
            f"  <p>{html.escape(str(self.description))}</p>\n"
            "</article>"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "year": self.year,
            "image": self.image,
            "description": self.description,
            "html": self.to_html(),
        }


def _year_key(project: Mapping) -> float:
    year = project.get("year")
    if year is None:
        return 0.0
    try:
        return float(year)
    except (TypeError, ValueError):
        return 0.0


def _field(project: Mapping, key: str, fallback: Any) -> Any:
    value = project.get(key)
    return fallback if value is None else value


def render_projects(projects: Any, heading_level: str = "h2") -> List[ProjectCard]:
    """
    Build project cards, newest year first.

    Missing fields fall back to placeholders. A bad heading level is replaced
    with ``h2``; anything other than a list renders nothing.
    """
    if heading_level not in VALID_HEADINGS:
        logger.warning(f'Invalid headingLevel "{heading_level}". Defaulting to "h2".')
        heading_level = "h2"
    if not isinstance(projects, list):
        logger.error("Invalid projects data: Expected a list of project objects.")
        return []

    entries = [p if isinstance(p, Mapping) else {} for p in projects]
    return [
        ProjectCard(
            title=_field(p, "title", "Untitled Project"),
            year=_field(p, "year", ""),
            image=_field(p, "image", PLACEHOLDER_IMAGE),
            description=_field(p, "description", "No description available."),
            heading_level=heading_level,
        )
        for p in sorted(entries, key=_year_key, reverse=True)
    ]


def projects_title(count: int) -> str:
    return f"Projects ({count})"


# ============================================================================
# YEAR PIE CHART & FILTER
# ============================================================================


@dataclass(frozen=True)
class PieSlice:
    label: Any
    value: int
    start_angle: float
    end_angle: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "value": self.value,
            "start_angle": round(self.start_angle, 6),
            "end_angle": round(self.end_angle, 6),
        }


def year_slices(projects: Iterable[Mapping]) -> List[PieSlice]:
    """
    Project count per year, in first-seen order.

    Angles follow d3.pie defaults: the largest slice starts at 12 o'clock and
    the rest follow by descending value, while the returned list keeps the
    data order.
    """
    counts = Counter(p.get("year") for p in projects)
    labels = list(counts)
    total = sum(counts.values())
    if not total:
        return []

    order = sorted(range(len(labels)), key=lambda i: -counts[labels[i]])
    angles: Dict[int, Tuple[float, float]] = {}
    k = 2 * math.pi / total
    angle = 0.0
    for i in order:
        end = angle + counts[labels[i]] * k
        angles[i] = (angle, end)
        angle = end

    return [
        PieSlice(label, counts[label], *angles[i]) for i, label in enumerate(labels)
    ]


@dataclass
class ProjectFilter:
    """Selected pie year combined with the search box query."""

    selected_year: Any = None
    query: str = ""

    def toggle_year(self, year: Any) -> None:
        """Clicking the selected slice again clears the selection."""
        self.selected_year = None if self.selected_year == year else year

    def set_query(self, query: str) -> None:
        self.query = query

    def matches(self, project: Mapping) -> bool:
        title = str(project.get("title") or "")
        match_query = self.query.lower() in title.lower()
        match_year = self.selected_year is None or project.get("year") == self.selected_year
        return match_query and match_year

    def apply(self, projects: Iterable[Mapping]) -> List[Mapping]:
        return [p for p in projects if self.matches(p)]

    def pie_source(self, projects: Sequence[Mapping]) -> List[Mapping]:
        """Projects the pie chart is drawn from: all of them while the search box is empty."""
        if not self.query:
            return list(projects)
        return self.apply(projects)


def projects_payload(
    projects: Any, project_filter: Optional[ProjectFilter] = None
) -> Dict[str, Any]:
    """Frontend-ready project list, title and pie slices."""
    project_filter = project_filter or ProjectFilter()
    items = projects if isinstance(projects, list) else []
    valid = [p for p in items if isinstance(p, Mapping)]
    shown = project_filter.apply(valid)
    cards = render_projects(shown)
    return {
        "title": projects_title(len(cards)),
        "cards": [c.to_dict() for c in cards],
        "slices": [s.to_dict() for s in year_slices(project_filter.pie_source(valid))],
    }


# ============================================================================
# NAVIGATION
# ============================================================================


@dataclass(frozen=True)
class NavLink:
    href: str
    title: str
    current: bool
    external: bool

    @property
    def target(self) -> Optional[str]:
        return "_blank" if self.external else None


def _page_path(path: str) -> str:
    return path + "index.html" if path.endswith("/") else path


def build_nav(
    current_url: str,
    pages: Sequence[Mapping[str, str]] = DEFAULT_PAGES,
    base_path: str = "/",
) -> List[NavLink]:
    """
    Navigation links for the page at ``current_url``.

    Site-relative URLs are prefixed with ``base_path``. A link is current when
    it points at the same host and page (``/dir/`` reads as
    ``/dir/index.html``); links to other hosts open in a new tab.
    """
    here = httpx.URL(current_url)
    links = []
    for page in pages:
        url = page["url"]
        if not url.startswith("http"):
            url = base_path + url
        target = here.join(url)
        same_host = target.host == here.host
        links.append(
            NavLink(
                href=url,
                title=page["title"],
                current=same_host and _page_path(target.path) == _page_path(here.path),
                external=not same_host,
            )
        )
    return links


# ============================================================================
# COLOR SCHEME PREFERENCE
# ============================================================================


class ColorSchemePreference:
    """The one persisted user preference: the selected color scheme."""

    KEY = "colorScheme"

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> str:
        if not self.path.exists():
            return AUTOMATIC_SCHEME
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read color scheme preference: {e}")
            return AUTOMATIC_SCHEME

        value = data.get(self.KEY, AUTOMATIC_SCHEME) if isinstance(data, dict) else None
        if value not in COLOR_SCHEMES:
            logger.warning(f"Ignoring unknown color scheme {value!r}")
            return AUTOMATIC_SCHEME
        return value

    def save(self, value: str) -> None:
        if value not in COLOR_SCHEMES:
            raise ValueError(
                f"Unknown color scheme {value!r}; expected one of {sorted(COLOR_SCHEMES)}"
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({self.KEY: value}), encoding="utf-8")
        logger.info(f"color scheme changed to {value}")


# ============================================================================
# CONTACT FORM
# ============================================================================


def build_mailto_url(
    action: str, fields: Union[Mapping[str, Any], Iterable[Tuple[str, Any]]]
) -> str:
    """
    ``action?name=value&...`` with values encoded like encodeURIComponent.

    >>> build_mailto_url("mailto:me@example.com", {"subject": "Hello there"})
    'mailto:me@example.com?subject=Hello%20there'
    """
    items = fields.items() if isinstance(fields, Mapping) else fields
    params = "&".join(
        f"{name}={quote(str(value), safe=_URI_COMPONENT_SAFE)}" for name, value in items
    )
    return f"{action}?{params}"
