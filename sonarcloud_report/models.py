"""Data models for SonarCloud change reports.

Contains frozen dataclasses used to structure and serialize the output:
    - FilterOptions
    - Condition, QualityGateInfo
    - CoverageFile, UncoveredLine, CoverageDetails, CoverageData
    - ProcessedIssue, IssuesData
    - MetricsData
    - Report

Report values are immutable once built: collections are tuples and mappings
are read-only. ``to_dict()`` returns plain JSON/YAML-safe structures.
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping

SEVERITIES = ("BLOCKER", "CRITICAL", "MAJOR", "MINOR", "INFO")
ISSUE_TYPES = ("BUG", "VULNERABILITY", "CODE_SMELL")

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 500


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _to_plain(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_plain(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_plain(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class _Serializable:
    def to_dict(self) -> dict:
        return _to_plain(self)


def frozen_map(values: Mapping | None = None) -> Mapping:
    return MappingProxyType(dict(values or {}))


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FilterOptions(_Serializable):
    include_coverage: bool = True
    include_issues: bool = True
    coverage_threshold: float = 0.0
    limit: int = 0
    new_code_only: bool = False
    severity_filter: tuple[str, ...] = ()
    show_worst_first: bool = False
    show_all_lines: bool = False
    lines_per_file: int = 5
    new_lines_only: bool = False
    min_uncovered_lines: int = 0
    max_uncovered_lines: int = 0
    file_pattern: str = ""
    no_line_details: bool = False
    truncate_lines: int = 80
    debug: bool = False

    @property
    def page_size(self) -> int:
        """Page size for list endpoints: 100 unless ``limit`` is set, capped at 500."""
        if self.limit <= 0:
            return DEFAULT_PAGE_SIZE
        return min(self.limit, MAX_PAGE_SIZE)


# ---------------------------------------------------------------------------
# Quality gate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Condition(_Serializable):
    metric_key: str
    display_name: str
    comparator: str
    threshold: str
    actual_value: str
    status: str
    failed: bool
    on_new_code: bool


@dataclass(frozen=True)
class QualityGateInfo(_Serializable):
    status: str
    passed: bool
    conditions: tuple[Condition, ...] = ()
    failed_conditions: tuple[Condition, ...] = ()
    error: str | None = None

    @property
    def available(self) -> bool:
        return self.error is None

    @classmethod
    def unavailable(cls, error: str) -> "QualityGateInfo":
        return cls(status="UNKNOWN", passed=False, error=error)


# ---------------------------------------------------------------------------
# Coverage
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CoverageFile(_Serializable):
    path: str
    name: str
    language: str
    component_key: str
    coverage: float = 0.0
    uncovered_lines: int = 0
    new_coverage: float = 0.0
    new_uncovered_lines: int = 0


@dataclass(frozen=True)
class UncoveredLine(_Serializable):
    file: str
    line: int
    code: str
    is_new: bool = False


@dataclass(frozen=True)
class CoverageDetails(_Serializable):
    file_path: str
    file_name: str
    language: str
    coverage_percent: float
    total_uncovered: int
    new_uncovered: int
    uncovered_lines: tuple[UncoveredLine, ...] = ()


@dataclass(frozen=True)
class CoverageData(_Serializable):
    available: bool = True
    overall_coverage: float = 0.0
    new_code_coverage: float = 0.0
    uncovered_lines_total: int = 0
    new_uncovered_lines_total: int = 0
    files: tuple[CoverageFile, ...] = ()
    coverage_details: tuple[CoverageDetails, ...] = ()
    uncovered_lines: tuple[UncoveredLine, ...] = ()
    error: str | None = None

    @classmethod
    def unavailable(cls, error: str) -> "CoverageData":
        return cls(available=False, error=error)


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessedIssue(_Serializable):
    key: str
    type: str
    severity: str
    rule: str
    rule_name: str
    component: str
    file: str
    line: int | None
    message: str
    effort: str | None = None
    technical_debt: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class IssuesData(_Serializable):
    available: bool = True
    total_issues: int = 0
    bugs: int = 0
    vulnerabilities: int = 0
    code_smells: int = 0
    security_hotspots: int = 0
    issues: tuple[ProcessedIssue, ...] = ()
    by_severity: Mapping[str, int] = field(default_factory=frozen_map)
    by_type: Mapping[str, int] = field(default_factory=frozen_map)
    error: str | None = None

    @classmethod
    def unavailable(cls, error: str) -> "IssuesData":
        return cls(available=False, error=error)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MetricsData(_Serializable):
    available: bool = True
    duplication: float = 0.0
    ratings: Mapping[str, str] = field(default_factory=frozen_map)
    metrics: Mapping[str, str] = field(default_factory=frozen_map)
    error: str | None = None

    @classmethod
    def unavailable(cls, error: str) -> "MetricsData":
        return cls(available=False, error=error)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Report(_Serializable):
    project_key: str
    timestamp: datetime
    quality_gate: QualityGateInfo
    metrics: MetricsData
    coverage: CoverageData | None = None
    issues: IssuesData | None = None
    pull_request_id: int | None = None
    branch: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def report_type(self) -> str:
        return "pr_report" if self.pull_request_id is not None else "branch_report"

    def to_dict(self) -> dict:
        data = {
            "report_type": self.report_type,
            "project_key": self.project_key,
            "generated_at": self.timestamp.isoformat(),
        }
        if self.pull_request_id is not None:
            data["pull_request"] = self.pull_request_id
        if self.branch is not None:
            data["branch"] = self.branch
        data["quality_gate"] = self.quality_gate.to_dict()
        data["quality_gate"]["available"] = self.quality_gate.available
        if self.coverage is not None:
            data["coverage"] = self.coverage.to_dict()
        if self.issues is not None:
            data["issues"] = self.issues.to_dict()
        data["metrics"] = self.metrics.to_dict()
        data["warnings"] = list(self.warnings)
        return data
