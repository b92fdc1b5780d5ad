import io

import pytest

from loc_meta import (
    ChartArea,
    ProgressReporter,
    load_line_edits,
    process_commits,
)

HEADER = "commit,file,line,type,depth,length,author,date,time,timezone,datetime\n"

# Two commits: a1 (two TypeScript lines) and b2 (one CSS line)
SAMPLE_CSV = HEADER + (
    "a1,src/main.ts,1,ts,0,20,Kay,2024-01-01,09:00:00,+00:00,2024-01-01T09:00\n"
    "a1,src/main.ts,2,ts,1,14,Kay,2024-01-01,09:00:00,+00:00,2024-01-01T09:00\n"
    "b2,style.css,1,css,0,9,Kay,2024-01-02,15:30:00,+00:00,2024-01-02T15:30\n"
)

# Four commits over ten days; c2's rows come first in the file
HISTORY_CSV = HEADER + (
    "c2,global.js,1,js,0,40,Kay,2024-02-03,13:45:00,-08:00,2024-02-03T13:45:00-08:00\n"
    "c2,global.js,2,js,1,22,Kay,2024-02-03,13:45:00,-08:00,2024-02-03T13:45:00-08:00\n"
    "c2,global.js,3,js,2,18,Kay,2024-02-03,13:45:00,-08:00,2024-02-03T13:45:00-08:00\n"
    "c2,style.css,2,css,1,9,Kay,2024-02-03,13:45:00,-08:00,2024-02-03T13:45:00-08:00\n"
    "c1,index.html,1,html,0,15,Kay,2024-02-01,08:15:00,-08:00,2024-02-01T08:15:00-08:00\n"
    "c1,index.html,2,html,1,30,Kay,2024-02-01,08:15:00,-08:00,2024-02-01T08:15:00-08:00\n"
    "c1,style.css,1,css,0,12,Kay,2024-02-01,08:15:00,-08:00,2024-02-01T08:15:00-08:00\n"
    "c3,meta/main.js,1,js,0,50,Kay,2024-02-05,22:30:00,-08:00,2024-02-05T22:30:00-08:00\n"
    "c4,meta/index.html,1,html,0,25,Kay,2024-02-10,00:05:00,-08:00,2024-02-10T00:05:00-08:00\n"
    "c4,meta/main.js,2,js,1,33,Kay,2024-02-10,00:05:00,-08:00,2024-02-10T00:05:00-08:00\n"
)


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def chart_area():
    return ChartArea.from_dimensions(1000, 600)


@pytest.fixture
def sample_edits():
    return load_line_edits(io.StringIO(SAMPLE_CSV))


@pytest.fixture
def sample_commits(sample_edits):
    return process_commits(sample_edits)


@pytest.fixture
def history_edits():
    return load_line_edits(io.StringIO(HISTORY_CSV))


@pytest.fixture
def history_commits(history_edits):
    return process_commits(history_edits)


@pytest.fixture
def history_csv(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    path = data_dir / "loc.csv"
    path.write_text(HISTORY_CSV, encoding="utf-8")
    return path
