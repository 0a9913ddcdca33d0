"""Quality gate evaluation.

Functions:
    get_quality_gate(client, query, cancel=None)   -> QualityGateInfo
"""

from sonarcloud_report.models import Condition, QualityGateInfo
from sonarcloud_report.query import QueryContext
from sonarcloud_report.responses import parse_project_status

_DISPLAY_NAMES = {
    "new_coverage": "Coverage on New Code",
    "coverage": "Coverage",
    "new_bugs": "Bugs on New Code",
    "bugs": "Bugs",
    "new_vulnerabilities": "Vulnerabilities on New Code",
    "vulnerabilities": "Vulnerabilities",
    "new_code_smells": "Code Smells on New Code",
    "code_smells": "Code Smells",
    "new_security_hotspots": "Security Hotspots on New Code",
    "security_hotspots": "Security Hotspots",
    "duplicated_lines_density": "Duplicated Lines",
    "new_duplicated_lines_density": "Duplicated Lines on New Code",
    "sqale_rating": "Maintainability Rating",
    "reliability_rating": "Reliability Rating",
    "security_rating": "Security Rating",
}


def metric_display_name(metric_key: str) -> str:
    return _DISPLAY_NAMES.get(metric_key, metric_key)


def get_quality_gate(client, query: QueryContext, cancel=None) -> QualityGateInfo:
    """Fetch the quality gate status of the change.

    A condition has failed when SonarCloud reports it as ``ERROR``; it applies
    to new code when it carries a non-zero period index.
    """
    params = {"projectKey": query.project_key, **query.scope_params}
    data = client.get("/qualitygates/project_status", params=params, cancel=cancel)
    status = parse_project_status(data)

    conditions = tuple(
        Condition(
            metric_key=c.metric_key,
            display_name=metric_display_name(c.metric_key),
            comparator=c.comparator,
            threshold=c.error_threshold,
            actual_value=c.actual_value,
            status=c.status,
            failed=c.status == "ERROR",
            on_new_code=c.period_index > 0,
        )
        for c in status.conditions
    )
    return QualityGateInfo(
        status=status.status,
        passed=status.status == "OK",
        conditions=conditions,
        failed_conditions=tuple(c for c in conditions if c.failed),
    )
