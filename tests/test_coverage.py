"""Tests for sonarcloud_report/reports/coverage.py"""

import itertools
import logging
import threading
import time

import pytest

from sonarcloud_report.cancellation import CancellationToken, ReportCancelled
from sonarcloud_report.client import SonarClient, SonarClientError
from sonarcloud_report.models import CoverageFile, FilterOptions, UncoveredLine
from sonarcloud_report.query import PipelineRef, PullRequestRef, build_query_context
from sonarcloud_report.reports import coverage
from sonarcloud_report.reports.coverage import (
    ELIGIBILITY_CHECKS,
    get_coverage_data,
    is_eligible,
    prioritize_uncovered_lines,
    process_code_line,
)

BASE    = "https://sonarcloud.example.com/api"
PROJECT = "acme_payments"

PR     = build_query_context(PullRequestRef("acme", "payments", 42), PROJECT)
BRANCH = build_query_context(PipelineRef("acme", "payments", branch="main"), PROJECT)


@pytest.fixture(autouse=True)
def _no_batch_delay(monkeypatch):
    monkeypatch.setattr(coverage, "BATCH_DELAY_SECONDS", 0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _client():
    return SonarClient(BASE, "tok")


def _measure(metric: str, value, period: bool = False) -> dict:
    if period:
        return {"metric": metric, "periods": [{"index": 1, "value": str(value)}]}
    return {"metric": metric, "value": str(value)}


def _mock_project(m, measures: list[dict]):
    return m.get(
        f"{BASE}/measures/component",
        json={"component": {"key": PROJECT, "measures": measures}},
    )


def _file(path: str, cov: float, uncovered: int, new_uncovered: int = 0) -> dict:
    return {
        "key": f"{PROJECT}:{path}",
        "name": path.rsplit("/", 1)[-1],
        "path": path,
        "language": "py",
        "measures": [
            _measure("coverage", cov),
            _measure("uncovered_lines", uncovered),
            _measure("new_uncovered_lines", new_uncovered, period=True),
        ],
    }


def _mock_tree(m, files: list[dict]):
    return m.get(
        f"{BASE}/measures/component_tree",
        json={"paging": {"pageIndex": 1, "pageSize": 100, "total": len(files)},
              "components": files},
    )


def _src(line: int, code: str = "x = 1", hits=0, is_new: bool = False) -> dict:
    item = {"line": line, "code": code, "isNew": is_new}
    if hits is not None:
        item["lineHits"] = hits
    return item


def _mock_sources(m, by_path: dict, delays: dict | None = None, on_call=None):
    """Serve /sources/lines per file; a ``None`` entry answers HTTP 500."""
    # requests_mock lowercases query string values
    table  = {f"{PROJECT}:{path}".lower(): lines for path, lines in by_path.items()}
    delays = {f"{PROJECT}:{path}".lower(): d for path, d in (delays or {}).items()}

    def respond(request, context):
        key = request.qs["key"][0]
        if on_call:
            on_call(key)
        time.sleep(delays.get(key, 0))
        lines = table.get(key)
        if lines is None:
            context.status_code = 500
            return {"errors": [{"msg": "boom"}]}
        return {"sources": lines}

    return m.get(f"{BASE}/sources/lines", json=respond)


def _setup(m, files, sources, project=None, **kw):
    _mock_project(m, project or [])
    _mock_tree(m, files)
    return _mock_sources(m, sources, **kw)


def _project_call(m):
    return next(r for r in m.request_history if r.path.endswith("/measures/component"))


def _cf(path="src/a.py", cov=50.0, uncovered=10, new_uncovered=2) -> CoverageFile:
    return CoverageFile(
        path=path, name=path.rsplit("/", 1)[-1], language="py",
        component_key=f"{PROJECT}:{path}", coverage=cov,
        uncovered_lines=uncovered, new_uncovered_lines=new_uncovered,
    )


def _lines(flags: dict[int, bool]) -> list[UncoveredLine]:
    return [UncoveredLine(file="a.go", line=n, code="", is_new=new) for n, new in flags.items()]


# ---------------------------------------------------------------------------
# Project coverage
# ---------------------------------------------------------------------------

def test_pr_requests_new_code_metrics(requests_mock):
    sources = _setup(requests_mock, [], {})
    get_coverage_data(_client(), PR, FilterOptions())

    qs = _project_call(requests_mock).qs
    assert qs["metrickeys"]  == ["coverage,uncovered_lines,new_coverage,new_uncovered_lines"]
    assert qs["pullrequest"] == ["42"]
    assert sources.call_count == 0


def test_branch_requests_overall_metrics(requests_mock):
    _setup(requests_mock, [], {})
    get_coverage_data(_client(), BRANCH, FilterOptions())

    qs = _project_call(requests_mock).qs
    assert qs["metrickeys"] == ["coverage,uncovered_lines"]
    assert qs["branch"]     == ["main"]


def test_project_values_parsed(requests_mock):
    _setup(requests_mock, [], {}, project=[
        _measure("coverage", "81.4"),
        _measure("uncovered_lines", "120"),
        _measure("new_coverage", "64.5", period=True),
        _measure("new_uncovered_lines", "9", period=True),
    ])
    data = get_coverage_data(_client(), PR, FilterOptions())

    assert data.available
    assert data.overall_coverage          == 81.4
    assert data.uncovered_lines_total     == 120
    assert data.new_code_coverage         == 64.5
    assert data.new_uncovered_lines_total == 9


def test_missing_project_values_default_to_zero(requests_mock):
    _setup(requests_mock, [], {}, project=[_measure("coverage", "")])
    data = get_coverage_data(_client(), PR, FilterOptions())
    assert data.overall_coverage  == 0.0
    assert data.new_code_coverage == 0.0


def test_project_fetch_failure_raises(requests_mock):
    requests_mock.get(f"{BASE}/measures/component", status_code=500)
    with pytest.raises(SonarClientError):
        get_coverage_data(_client(), PR, FilterOptions())


# ---------------------------------------------------------------------------
# File coverage
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("limit,page_size", [(0, "100"), (-5, "100"), (20, "20"), (900, "500")])
def test_file_tree_page_size(requests_mock, limit, page_size):
    _mock_project(requests_mock, [])
    tree = _mock_tree(requests_mock, [])
    get_coverage_data(_client(), PR, FilterOptions(limit=limit))

    assert tree.last_request.qs["ps"]         == [page_size]
    assert tree.last_request.qs["qualifiers"] == ["fil"]


def test_worst_first_sorts_by_coverage(requests_mock):
    _mock_project(requests_mock, [])
    tree = _mock_tree(requests_mock, [])
    get_coverage_data(_client(), PR, FilterOptions(show_worst_first=True))

    qs = tree.last_request.qs
    assert qs["s"]          == ["metric"]
    assert qs["metricsort"] == ["coverage"]
    assert qs["asc"]        == ["true"]


def test_default_order_not_sorted(requests_mock):
    _mock_project(requests_mock, [])
    tree = _mock_tree(requests_mock, [])
    get_coverage_data(_client(), PR, FilterOptions())
    assert "metricsort" not in tree.last_request.qs


def test_threshold_excludes_well_covered_files(requests_mock):
    files = [_file("src/low.py", 40, 30), _file("src/high.py", 90, 3), _file("src/edge.py", 80, 5)]
    _setup(requests_mock, files, {})
    data = get_coverage_data(_client(), PR, FilterOptions(coverage_threshold=80, no_line_details=True))
    assert [f.path for f in data.files] == ["src/low.py"]


def test_duplicate_component_keys_dropped(requests_mock):
    _setup(requests_mock, [_file("src/a.py", 40, 3), _file("src/a.py", 50, 4)], {})
    data = get_coverage_data(_client(), PR, FilterOptions(no_line_details=True))
    assert len(data.files) == 1
    assert data.files[0].coverage == 40


def test_file_fields(requests_mock):
    _setup(requests_mock, [_file("src/pay/api.py", 72.5, 11, new_uncovered=4)], {})
    data = get_coverage_data(_client(), PR, FilterOptions(no_line_details=True))

    f = data.files[0]
    assert f.component_key       == f"{PROJECT}:src/pay/api.py"
    assert f.name                == "api.py"
    assert f.language            == "py"
    assert f.coverage            == 72.5
    assert f.uncovered_lines     == 11
    assert f.new_uncovered_lines == 4


def test_tree_fetch_failure_raises(requests_mock):
    _mock_project(requests_mock, [])
    requests_mock.get(f"{BASE}/measures/component_tree", status_code=404)
    with pytest.raises(SonarClientError):
        get_coverage_data(_client(), PR, FilterOptions())


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------

def test_plain_file_is_eligible():
    assert is_eligible(_cf(), FilterOptions())


def test_new_lines_only_needs_new_uncovered():
    opts = FilterOptions(new_lines_only=True)
    assert not is_eligible(_cf(new_uncovered=0), opts)
    assert is_eligible(_cf(new_uncovered=1), opts)


def test_uncovered_bounds():
    assert not is_eligible(_cf(uncovered=8), FilterOptions(min_uncovered_lines=10))
    assert is_eligible(_cf(uncovered=10), FilterOptions(min_uncovered_lines=10))
    assert not is_eligible(_cf(uncovered=6), FilterOptions(max_uncovered_lines=5))
    assert is_eligible(_cf(uncovered=5), FilterOptions(max_uncovered_lines=5))


def test_files_with_too_many_uncovered_lines_skipped():
    assert is_eligible(_cf(uncovered=500), FilterOptions())
    assert not is_eligible(_cf(uncovered=501), FilterOptions())


def test_fully_covered_file_skipped():
    assert not is_eligible(_cf(cov=100.0, uncovered=0), FilterOptions())


@pytest.mark.parametrize("path", [
    "web/node_modules/lib/index.js",
    "proto/user_pb2.py",
    "api/user.pb.go",
    "vendor/github.com/x/y.go",
    "build/out.py",
    "dist/bundle.js",
    "static/app.min.js",
    "src/generated/client.py",
])
def test_generated_files_skipped(path):
    assert not is_eligible(_cf(path=path), FilterOptions())


def test_file_pattern_matches_path_or_basename():
    opts = FilterOptions(file_pattern="src/pay/*.py")
    assert is_eligible(_cf(path="src/pay/api.py"), opts)
    assert not is_eligible(_cf(path="src/other/api.py"), opts)

    opts = FilterOptions(file_pattern="api_*.py")
    assert is_eligible(_cf(path="deep/dir/api_v2.py"), opts)
    assert not is_eligible(_cf(path="deep/dir/models.py"), opts)


def test_check_order_does_not_change_result():
    files = [
        _cf(), _cf(new_uncovered=0), _cf(uncovered=3), _cf(uncovered=900),
        _cf(cov=100.0), _cf(path="vendor/x.py"), _cf(path="tests/test_a.py"),
    ]
    opts = FilterOptions(new_lines_only=True, min_uncovered_lines=5, file_pattern="src/*")
    expected = [is_eligible(f, opts) for f in files]

    for order in itertools.permutations(ELIGIBILITY_CHECKS):
        assert [all(check(f, opts) for check in order) for f in files] == expected


def test_ineligible_file_stays_in_file_list(requests_mock):
    files = [_file("src/small.py", 60, 8), _file("src/big.py", 30, 20)]
    _setup(requests_mock, files, {"src/small.py": [_src(1)], "src/big.py": [_src(3)]})
    data = get_coverage_data(_client(), PR, FilterOptions(min_uncovered_lines=10))

    assert [f.path for f in data.files]                 == ["src/small.py", "src/big.py"]
    assert [d.file_path for d in data.coverage_details] == ["src/big.py"]


# ---------------------------------------------------------------------------
# process_code_line()
# ---------------------------------------------------------------------------

def test_highlighting_tags_stripped():
    code = '  <span class="k">return</span>  <span class="s">"ok"</span>  '
    assert process_code_line(code, 0, "src/a.py") == 'return "ok"'


@pytest.mark.parametrize("path", ["ui/App.tsx", "ui/Card.jsx", "ui/page.HTML", "ui/x.vue", "ui/y.svelte"])
def test_markup_files_keep_tags(path):
    assert process_code_line("<div>{name}</div>", 0, path) == "<div>{name}</div>"


def test_long_line_truncated_with_ellipsis():
    out = process_code_line("x" * 100, 20, "a.py")
    assert len(out) == 20
    assert out.endswith("...")


def test_short_line_untouched():
    assert process_code_line("pass", 20, "a.py") == "pass"


@pytest.mark.parametrize("limit,expected", [(1, "a"), (2, "ab"), (3, "abc"), (4, "a...")])
def test_tiny_truncation_stays_within_limit(limit, expected):
    out = process_code_line("abcdefgh", limit, "a.py")
    assert out == expected
    assert len(out) <= limit


# ---------------------------------------------------------------------------
# prioritize_uncovered_lines()
# ---------------------------------------------------------------------------

def test_prioritize_keeps_new_line_first():
    lines = _lines({10: False, 11: False, 12: True, 50: False})
    out = prioritize_uncovered_lines(lines, 2)
    assert len(out) == 2
    assert out[0].line == 12
    assert out[1].line in (10, 11, 50)


def test_prioritize_keeps_all_new_lines_beyond_budget():
    lines = _lines({1: True, 2: True, 3: True, 4: False})
    assert [line.line for line in prioritize_uncovered_lines(lines, 2)] == [1, 2, 3]


def test_prioritize_within_budget_unchanged():
    lines = _lines({5: False, 6: True})
    assert prioritize_uncovered_lines(lines, 5) == lines


@pytest.mark.parametrize("budget", range(0, 8))
def test_prioritize_budget_bounds(budget):
    lines = _lines({1: False, 2: True, 3: False, 4: False, 5: True, 6: False, 7: False})
    out = prioritize_uncovered_lines(lines, budget)

    new_in = [line for line in lines if line.is_new]
    assert all(line in out for line in new_in)
    old_out = [line for line in out if not line.is_new]
    assert len(old_out) <= max(0, budget - len(new_in))


# ---------------------------------------------------------------------------
# Line detail
# ---------------------------------------------------------------------------

def test_uncovered_lines_collected(requests_mock):
    _setup(requests_mock, [_file("src/a.py", 50, 3, 1)], {"src/a.py": [
        _src(1, "import os", hits=None),
        _src(2, "x = 1", hits=4),
        _src(3, "y = 2", hits=0),
        _src(4, "<b>z</b> = 3", hits=0, is_new=True),
    ]})
    data = get_coverage_data(_client(), PR, FilterOptions())

    details = data.coverage_details[0]
    assert [(l.line, l.code, l.is_new) for l in details.uncovered_lines] == [
        (3, "y = 2", False),
        (4, "z = 3", True),
    ]
    assert details.new_uncovered    == 1
    assert details.total_uncovered  == 3
    assert details.coverage_percent == 50
    assert data.uncovered_lines     == details.uncovered_lines


def test_sources_request_params(requests_mock):
    sources = _setup(requests_mock, [_file("src/a.py", 50, 1)], {"src/a.py": []})
    get_coverage_data(_client(), PR, FilterOptions())

    qs = sources.last_request.qs
    assert qs["key"]         == [f"{PROJECT}:src/a.py".lower()]
    assert qs["pullrequest"] == ["42"]


def test_new_lines_only_drops_old_lines(requests_mock):
    _setup(requests_mock, [_file("src/a.py", 50, 3, 1)], {"src/a.py": [
        _src(1), _src(2, is_new=True), _src(3),
    ]})
    data = get_coverage_data(_client(), PR, FilterOptions(new_lines_only=True))
    assert [l.line for l in data.coverage_details[0].uncovered_lines] == [2]


def test_lines_per_file_applied(requests_mock):
    _setup(requests_mock, [_file("src/a.py", 50, 6)], {"src/a.py": [_src(n) for n in range(1, 7)]})
    data = get_coverage_data(_client(), PR, FilterOptions(lines_per_file=2))
    assert len(data.coverage_details[0].uncovered_lines) == 2


def test_show_all_lines_ignores_lines_per_file(requests_mock):
    _setup(requests_mock, [_file("src/a.py", 50, 6)], {"src/a.py": [_src(n) for n in range(1, 7)]})
    data = get_coverage_data(_client(), PR, FilterOptions(lines_per_file=2, show_all_lines=True))
    assert len(data.coverage_details[0].uncovered_lines) == 6


def test_no_line_details_skips_sources(requests_mock):
    sources = _setup(requests_mock, [_file("src/a.py", 50, 3)], {"src/a.py": [_src(1)]})
    data = get_coverage_data(_client(), PR, FilterOptions(no_line_details=True))

    assert sources.call_count    == 0
    assert data.coverage_details == ()
    assert len(data.files)       == 1


def test_failed_file_dropped(requests_mock):
    files = [_file("src/a.py", 50, 1), _file("src/b.py", 50, 1), _file("src/c.py", 50, 1)]
    _setup(requests_mock, files, {"src/a.py": [_src(1)], "src/b.py": None, "src/c.py": [_src(2)]})
    data = get_coverage_data(_client(), PR, FilterOptions())

    assert data.available
    assert [d.file_path for d in data.coverage_details] == ["src/a.py", "src/c.py"]


def test_failed_file_logged_in_debug_mode(requests_mock, caplog):
    _setup(requests_mock, [_file("src/b.py", 50, 1)], {"src/b.py": None})
    with caplog.at_level(logging.DEBUG, logger="sonarcloud_report.reports.coverage"):
        get_coverage_data(_client(), PR, FilterOptions(debug=True))
    assert any("Error getting lines for src/b.py" in r.getMessage() for r in caplog.records)


def test_failed_file_quiet_without_debug(requests_mock, caplog):
    _setup(requests_mock, [_file("src/b.py", 50, 1)], {"src/b.py": None})
    with caplog.at_level(logging.DEBUG, logger="sonarcloud_report.reports.coverage"):
        get_coverage_data(_client(), PR, FilterOptions())
    assert not any("src/b.py" in r.getMessage() for r in caplog.records)


def test_details_follow_file_order(requests_mock):
    files = [_file(f"src/m{i}.py", 50, 1) for i in range(4)]
    _setup(
        requests_mock, files,
        {f"src/m{i}.py": [_src(i + 1)] for i in range(4)},
        delays={"src/m0.py": 0.2, "src/m1.py": 0.1},
    )
    data = get_coverage_data(_client(), PR, FilterOptions())

    assert [d.file_path for d in data.coverage_details] == [f"src/m{i}.py" for i in range(4)]
    assert [l.line for l in data.uncovered_lines]       == [1, 2, 3, 4]


def test_at_most_five_fetches_in_flight(requests_mock):
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}

    def track(key):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        time.sleep(0.05)
        with lock:
            active["now"] -= 1

    files = [_file(f"src/f{i}.py", 50, 1) for i in range(12)]
    sources = _setup(requests_mock, files, {f"src/f{i}.py": [_src(1)] for i in range(12)}, on_call=track)
    data = get_coverage_data(_client(), PR, FilterOptions())

    assert sources.call_count         == 12
    assert len(data.coverage_details) == 12
    assert 1 <= active["peak"] <= coverage.BATCH_SIZE


def test_cancellation_raises(requests_mock):
    cancel = CancellationToken()
    files = [_file(f"src/f{i}.py", 50, 1) for i in range(8)]
    _setup(
        requests_mock, files,
        {f"src/f{i}.py": [_src(1)] for i in range(8)},
        on_call=lambda key: cancel.cancel(),
    )
    with pytest.raises(ReportCancelled):
        get_coverage_data(_client(), PR, FilterOptions(), cancel=cancel)


def test_interrupt_cancels_in_flight_fetches(requests_mock, monkeypatch):
    cancel = CancellationToken()
    stopped = []

    def fake_details(client, file, query, filters, token):
        if file.path == "src/f0.py":
            raise KeyboardInterrupt
        try:
            token.sleep(5)
        except ReportCancelled:
            stopped.append(file.path)
            raise

    monkeypatch.setattr(coverage, "_get_file_details", fake_details)
    files = [_file(f"src/f{i}.py", 50, 1) for i in range(8)]
    _setup(requests_mock, files, {})

    started = time.monotonic()
    with pytest.raises(KeyboardInterrupt):
        get_coverage_data(_client(), PR, FilterOptions(), cancel=cancel)

    assert cancel.cancelled
    assert time.monotonic() - started < 4
    assert sorted(stopped) == [f"src/f{i}.py" for i in range(1, 5)]


def test_unexpected_worker_error_cancels_later_batches(requests_mock):
    cancel = CancellationToken()

    def crash(key):
        if key.endswith("f0.py"):
            raise RuntimeError("worker crashed")

    files = [_file(f"src/f{i}.py", 50, 1) for i in range(8)]
    sources = _setup(requests_mock, files, {f"src/f{i}.py": [_src(1)] for i in range(8)}, on_call=crash)
    with pytest.raises(RuntimeError, match="worker crashed"):
        get_coverage_data(_client(), PR, FilterOptions(), cancel=cancel)

    assert cancel.cancelled
    assert sources.call_count <= coverage.BATCH_SIZE
