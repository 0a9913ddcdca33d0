"""Issues section of the change report.

Functions:
    get_issues_data(client, query, filters, cancel=None)   -> IssuesData

One page of ``/issues/search`` is fetched, most severe first. The counters
cover that page only; ``total_issues`` is the server-side total.
"""

from sonarcloud_report.client import SonarClient
from sonarcloud_report.models import (
    ISSUE_TYPES,
    SEVERITIES,
    FilterOptions,
    IssuesData,
    ProcessedIssue,
    frozen_map,
)
from sonarcloud_report.query import QueryContext
from sonarcloud_report.responses import RawIssue, parse_issue_search

# Issue type -> IssuesData counter
_TYPE_COUNTERS = {
    "BUG":              "bugs",
    "VULNERABILITY":    "vulnerabilities",
    "CODE_SMELL":       "code_smells",
    "SECURITY_HOTSPOT": "security_hotspots",
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_issues_data(
    client: SonarClient,
    query: QueryContext,
    filters: FilterOptions,
    cancel=None,
) -> IssuesData:
    """Return the bugs, vulnerabilities and code smells of the change."""
    severities = [s.upper() for s in filters.severity_filter] or list(SEVERITIES)
    params = query.with_params(
        componentKeys=query.project_key,
        types=",".join(ISSUE_TYPES),
        severities=",".join(severities),
        s="SEVERITY",
        asc="false",
        ps=str(filters.page_size),
    )
    # pull request issues are new code already
    if filters.new_code_only and not query.is_pull_request:
        params["inNewCodePeriod"] = "true"
    search = parse_issue_search(client.get("/issues/search", params=params, cancel=cancel))

    issues = [_process_issue(raw, search.rule_names) for raw in search.issues]
    counters = {name: 0 for name in _TYPE_COUNTERS.values()}
    for issue in issues:
        counter = _TYPE_COUNTERS.get(issue.type)
        if counter:
            counters[counter] += 1

    summary = _build_summary(issues)
    return IssuesData(
        available=True,
        total_issues=search.total,
        issues=tuple(issues),
        by_severity=frozen_map(summary["by_severity"]),
        by_type=frozen_map(summary["by_type"]),
        **counters,
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def file_from_component(component: str) -> str:
    """``"project:src/app.py"`` -> ``"src/app.py"``."""
    _, sep, path = component.partition(":")
    return path if sep else component


def _process_issue(raw: RawIssue, rule_names: dict[str, str]) -> ProcessedIssue:
    return ProcessedIssue(
        key=raw.key,
        type=raw.type,
        severity=raw.severity,
        rule=raw.rule,
        rule_name=rule_names.get(raw.rule, ""),
        component=raw.component,
        file=file_from_component(raw.component),
        line=raw.line,
        message=raw.message,
        effort=raw.effort,
        technical_debt=raw.debt,
        created_at=raw.creation_date,
    )


def _build_summary(issues: list[ProcessedIssue]) -> dict:
    by_severity = {s: 0 for s in SEVERITIES}
    by_type     = {t: 0 for t in ISSUE_TYPES}

    for issue in issues:
        if issue.severity in by_severity:
            by_severity[issue.severity] += 1
        if issue.type in by_type:
            by_type[issue.type] += 1

    return {
        "by_severity": by_severity,
        "by_type":     by_type,
    }
