"""Coverage section of the change report.

Functions:
    get_coverage_data(client, query, filters, cancel=None)   -> CoverageData
    fetch_source_lines(client, component_key, query, cancel=None)

The section is built in four steps:

1. project-level coverage from ``/measures/component``;
2. per-file coverage from ``/measures/component_tree``;
3. the eligible files (see :func:`is_eligible`) get their source lines from
   ``/sources/lines``, five files at a time;
4. each file's uncovered lines are cleaned and, unless ``show_all_lines`` is
   set, trimmed to ``lines_per_file`` while keeping every new-code line.

A failure in step 1 or 2 fails the section. A failure fetching one file's
lines only drops that file from ``coverage_details``.
"""

import fnmatch
import logging
import posixpath
import re
from concurrent.futures import ThreadPoolExecutor

from sonarcloud_report.cancellation import CancellationToken
from sonarcloud_report.client import SonarClientError
from sonarcloud_report.models import (
    CoverageData,
    CoverageDetails,
    CoverageFile,
    FilterOptions,
    UncoveredLine,
)
from sonarcloud_report.query import QueryContext
from sonarcloud_report.responses import (
    measure_float,
    measure_int,
    parse_component_measures,
    parse_component_tree,
    parse_source_lines,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 5
BATCH_DELAY_SECONDS = 0.2
MAX_UNCOVERED_LINES = 500

_FILE_METRICS = "coverage,uncovered_lines,new_coverage,new_uncovered_lines"

_GENERATED_MARKERS = (
    "node_modules/", "__pycache__/", ".git/",
    "_pb2.py", ".pb.go", "generated/",
    "vendor/", "build/", "dist/",
    ".min.js", ".min.css",
)

# Tags are part of the source in these languages
_MARKUP_EXTENSIONS = (".html", ".htm", ".tsx", ".jsx", ".vue", ".svelte")

_HTML_TAG_RE = re.compile(r"<[^>]*>")


# --------------------------------------------------------------------------- #
# Public API
# --------------------------------------------------------------------------- #

def get_coverage_data(
    client,
    query: QueryContext,
    filters: FilterOptions,
    cancel: CancellationToken | None = None,
) -> CoverageData:
    """Build the coverage section for the change described by *query*."""
    cancel = cancel or CancellationToken()

    project = _get_project_coverage(client, query, cancel)
    files = _get_file_coverage(client, query, filters, cancel)

    details: list[CoverageDetails] = []
    if not filters.no_line_details:
        eligible = [f for f in files if is_eligible(f, filters)]
        _debug(filters, "Eligible files for line details: %d", len(eligible))
        details = _get_details_for_files(client, eligible, query, filters, cancel)

    uncovered = tuple(line for d in details for line in d.uncovered_lines)
    _debug(filters, "Coverage details: %d files, %d uncovered lines", len(details), len(uncovered))

    return CoverageData(
        available=True,
        overall_coverage=project["coverage"],
        new_code_coverage=project["new_coverage"],
        uncovered_lines_total=project["uncovered_lines"],
        new_uncovered_lines_total=project["new_uncovered_lines"],
        files=tuple(files),
        coverage_details=tuple(details),
        uncovered_lines=uncovered,
    )


def fetch_source_lines(client, component_key: str, query: QueryContext, cancel=None):
    """Return the parsed ``/sources/lines`` of one file in the change."""
    params = {**query.scope_params, "key": component_key}
    data = client.get("/sources/lines", params=params, cancel=cancel)
    return parse_source_lines(data)


# --------------------------------------------------------------------------- #
# Project and file coverage
# --------------------------------------------------------------------------- #

def _get_project_coverage(client, query: QueryContext, cancel) -> dict:
    metrics = ["coverage", "uncovered_lines"]
    if query.is_pull_request:
        metrics += ["new_coverage", "new_uncovered_lines"]
    params = query.with_params(metricKeys=",".join(metrics))

    data = client.get("/measures/component", params=params, cancel=cancel)
    measures = parse_component_measures(data).measures
    return {
        "coverage": measure_float(measures, "coverage"),
        "uncovered_lines": measure_int(measures, "uncovered_lines"),
        "new_coverage": measure_float(measures, "new_coverage"),
        "new_uncovered_lines": measure_int(measures, "new_uncovered_lines"),
    }


def _get_file_coverage(client, query: QueryContext, filters: FilterOptions, cancel) -> list[CoverageFile]:
    params = query.with_params(
        qualifiers="FIL",
        metricKeys=_FILE_METRICS,
        ps=str(filters.page_size),
    )
    if filters.show_worst_first:
        params.update({"s": "metric", "metricSort": "coverage", "asc": "true"})

    data = client.get("/measures/component_tree", params=params, cancel=cancel)
    tree = parse_component_tree(data)

    files: list[CoverageFile] = []
    seen: set[str] = set()
    for comp in tree.components:
        if comp.key in seen:
            continue
        seen.add(comp.key)
        file = CoverageFile(
            path=comp.path,
            name=comp.name,
            language=comp.language,
            component_key=comp.key,
            coverage=measure_float(comp.measures, "coverage"),
            uncovered_lines=measure_int(comp.measures, "uncovered_lines"),
            new_coverage=measure_float(comp.measures, "new_coverage"),
            new_uncovered_lines=measure_int(comp.measures, "new_uncovered_lines"),
        )
        if filters.coverage_threshold > 0 and file.coverage >= filters.coverage_threshold:
            continue
        files.append(file)
    return files


# --------------------------------------------------------------------------- #
# Eligibility
# --------------------------------------------------------------------------- #

def is_generated_file(path: str) -> bool:
    return any(marker in path for marker in _GENERATED_MARKERS)


def matches_file_pattern(path: str, pattern: str) -> bool:
    """True when *pattern* is empty or matches the full path or the basename."""
    if not pattern:
        return True
    return fnmatch.fnmatchcase(path, pattern) or fnmatch.fnmatchcase(posixpath.basename(path), pattern)


def _has_new_uncovered(file: CoverageFile, filters: FilterOptions) -> bool:
    return not filters.new_lines_only or file.new_uncovered_lines > 0


def _within_uncovered_bounds(file: CoverageFile, filters: FilterOptions) -> bool:
    if filters.min_uncovered_lines > 0 and file.uncovered_lines < filters.min_uncovered_lines:
        return False
    if filters.max_uncovered_lines > 0 and file.uncovered_lines > filters.max_uncovered_lines:
        return False
    return True


def _small_enough(file: CoverageFile, filters: FilterOptions) -> bool:
    return file.uncovered_lines <= MAX_UNCOVERED_LINES


def _not_fully_covered(file: CoverageFile, filters: FilterOptions) -> bool:
    return file.coverage < 100.0


def _not_generated(file: CoverageFile, filters: FilterOptions) -> bool:
    return not is_generated_file(file.path)


def _matches_pattern(file: CoverageFile, filters: FilterOptions) -> bool:
    return matches_file_pattern(file.path, filters.file_pattern)


# Checked in order; each depends only on the file and the options
ELIGIBILITY_CHECKS = (
    _has_new_uncovered,
    _within_uncovered_bounds,
    _small_enough,
    _not_fully_covered,
    _not_generated,
    _matches_pattern,
)


def is_eligible(file: CoverageFile, filters: FilterOptions) -> bool:
    """Whether *file* is worth fetching line-level detail for."""
    return all(check(file, filters) for check in ELIGIBILITY_CHECKS)


# --------------------------------------------------------------------------- #
# Line detail
# --------------------------------------------------------------------------- #

def _get_details_for_files(
    client,
    files: list[CoverageFile],
    query: QueryContext,
    filters: FilterOptions,
    cancel: CancellationToken,
) -> list[CoverageDetails]:
    """Fetch line detail for *files* in batches of :data:`BATCH_SIZE`.

    Results are kept by file index and returned in the order of *files*,
    whatever order the fetches complete in.
    """
    results: dict[int, CoverageDetails] = {}

    with ThreadPoolExecutor(max_workers=BATCH_SIZE, thread_name_prefix="coverage-lines") as pool:
        try:
            for start in range(0, len(files), BATCH_SIZE):
                if start:
                    cancel.sleep(BATCH_DELAY_SECONDS)
                cancel.raise_if_cancelled()

                futures = {
                    start + offset: pool.submit(_get_file_details, client, file, query, filters, cancel)
                    for offset, file in enumerate(files[start:start + BATCH_SIZE])
                }
                for index, future in futures.items():
                    try:
                        details = future.result()
                    except SonarClientError as exc:
                        _debug(filters, "Error getting lines for %s: %s", files[index].path, exc)
                        continue
                    results[index] = details

                cancel.raise_if_cancelled()
        except BaseException:
            # in-flight workers must stop before the pool waits on them
            cancel.cancel()
            raise

    return [results[i] for i in sorted(results)]


def _get_file_details(
    client,
    file: CoverageFile,
    query: QueryContext,
    filters: FilterOptions,
    cancel: CancellationToken,
) -> CoverageDetails:
    _debug(filters, "Getting lines for file: %s (key: %s)", file.path, file.component_key)
    sources = fetch_source_lines(client, file.component_key, query, cancel=cancel)

    lines: list[UncoveredLine] = []
    new_uncovered = 0
    for src in sources:
        if src.hits != 0:
            continue
        if filters.new_lines_only and not src.is_new:
            continue
        lines.append(UncoveredLine(
            file=file.path,
            line=src.line,
            code=process_code_line(src.code, filters.truncate_lines, file.path),
            is_new=src.is_new,
        ))
        if src.is_new:
            new_uncovered += 1

    if not filters.show_all_lines:
        lines = prioritize_uncovered_lines(lines, filters.lines_per_file)

    return CoverageDetails(
        file_path=file.path,
        file_name=file.name,
        language=file.language,
        coverage_percent=file.coverage,
        total_uncovered=file.uncovered_lines,
        new_uncovered=new_uncovered,
        uncovered_lines=tuple(lines),
    )


def process_code_line(code: str, truncate: int, path: str) -> str:
    """Trim, de-highlight and truncate one line of source for display."""
    code = code.strip()
    if not path.lower().endswith(_MARKUP_EXTENSIONS):
        code = _strip_html(code)
    if truncate > 0 and len(code) > truncate:
        # no room for an ellipsis below four characters
        return code[:truncate] if truncate <= 3 else code[:truncate - 3] + "..."
    return code


def prioritize_uncovered_lines(lines: list[UncoveredLine], budget: int) -> list[UncoveredLine]:
    """Trim *lines* to *budget*, never dropping a new-code line.

    When everything fits, the lines are returned unchanged. Otherwise the
    result is every new line followed by as many old lines as are left in
    the budget, so a file with more new lines than the budget shows all of
    them.
    """
    if len(lines) <= max(budget, 0):
        return list(lines)

    new = [line for line in lines if line.is_new]
    old = [line for line in lines if not line.is_new]
    remaining = max(budget - len(new), 0)
    return new + old[:remaining]


# --------------------------------------------------------------------------- #
# Private helpers
# --------------------------------------------------------------------------- #

def _strip_html(text: str) -> str:
    """Remove HTML tags injected by SonarCloud syntax highlighting."""
    return _HTML_TAG_RE.sub("", text).replace("  ", " ").strip()


def _debug(filters: FilterOptions, msg: str, *args) -> None:
    if filters.debug:
        logger.debug(msg, *args)
