"""Report assembly.

Usage:
    report = generate_report(client, PullRequestRef("acme", "api", 42), FilterOptions())
    json.dumps(report.to_dict())

The project key and query context are required: failing to get either raises
:class:`ReportError`. The quality gate, coverage, issues and metrics sections
are optional: when one of them fails, the report carries a placeholder for
it and a line in ``warnings``. Cancellation always raises.
"""

import logging
from datetime import datetime, timezone

from sonarcloud_report.cancellation import CancellationToken
from sonarcloud_report.client import SonarClientError
from sonarcloud_report.discovery import DiscoveryError, ProjectKeyDiscovery
from sonarcloud_report.models import (
    CoverageData,
    FilterOptions,
    IssuesData,
    MetricsData,
    QualityGateInfo,
    Report,
)
from sonarcloud_report.query import PipelineRef, PullRequestRef, QueryContextError, build_query_context
from sonarcloud_report.reports.coverage import get_coverage_data
from sonarcloud_report.reports.issues import get_issues_data
from sonarcloud_report.reports.metrics import get_metrics_data
from sonarcloud_report.reports.quality_gate import get_quality_gate

logger = logging.getLogger(__name__)


class ReportError(Exception):
    """Raised when a report cannot be produced at all."""


def generate_report(
    client,
    change: PullRequestRef | PipelineRef,
    filters: FilterOptions | None = None,
    *,
    discovery: ProjectKeyDiscovery | None = None,
    cancel: CancellationToken | None = None,
) -> Report:
    """Build the quality report for *change*.

    Raises:
        ReportError:     the project key or query context could not be built.
        ReportCancelled: *cancel* was triggered before the report was complete.
    """
    filters = filters or FilterOptions()
    discovery = discovery or ProjectKeyDiscovery()
    cancel = cancel or CancellationToken()

    try:
        found = discovery.discover(change.workspace, change.repo, change.commit_hash)
    except DiscoveryError as exc:
        raise ReportError(f"failed to discover SonarCloud project key: {exc}") from exc

    try:
        query = build_query_context(change, found.project_key)
    except QueryContextError as exc:
        raise ReportError(f"failed to build query context: {exc}") from exc

    if filters.debug:
        logger.debug(
            "Project key: %s, pull request: %s, branch: %s",
            query.project_key, query.pull_request_id, query.branch,
        )

    warnings: list[str] = []

    def section(name, fetch, placeholder):
        cancel.raise_if_cancelled()
        try:
            return fetch()
        except SonarClientError as exc:
            logger.warning("%s unavailable: %s", name, exc)
            warnings.append(f"{name}: {exc}")
            return placeholder(str(exc))

    quality_gate = section(
        "quality gate",
        lambda: get_quality_gate(client, query, cancel=cancel),
        QualityGateInfo.unavailable,
    )

    coverage = None
    if filters.include_coverage:
        coverage = section(
            "coverage",
            lambda: get_coverage_data(client, query, filters, cancel=cancel),
            CoverageData.unavailable,
        )

    issues = None
    if filters.include_issues:
        issues = section(
            "issues",
            lambda: get_issues_data(client, query, filters, cancel=cancel),
            IssuesData.unavailable,
        )

    metrics = section(
        "metrics",
        lambda: get_metrics_data(client, query, cancel=cancel),
        MetricsData.unavailable,
    )

    cancel.raise_if_cancelled()
    return Report(
        project_key=query.project_key,
        timestamp=datetime.now(timezone.utc),
        pull_request_id=query.pull_request_id,
        branch=query.branch,
        quality_gate=quality_gate,
        coverage=coverage,
        issues=issues,
        metrics=metrics,
        warnings=tuple(warnings),
    )
