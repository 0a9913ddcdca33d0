"""Query context for a change.

A change is either a pull request or a branch pipeline. The query context
fixes the parameters sent with every SonarCloud request for that change and
which metric names apply (``new_*`` metrics for pull requests, whole-project
metrics otherwise).
"""

from dataclasses import dataclass
from typing import Mapping

from sonarcloud_report.models import frozen_map

PULL_REQUEST_TARGET = "pipeline_pullrequest_target"

PULL_REQUEST_METRICS = (
    "new_coverage",
    "new_uncovered_lines",
    "new_bugs",
    "new_vulnerabilities",
    "new_code_smells",
)

BRANCH_METRICS = (
    "coverage",
    "bugs",
    "vulnerabilities",
    "code_smells",
    "security_hotspots",
    "duplicated_lines_density",
)

_SCOPE_KEYS = ("pullRequest", "branch")


class QueryContextError(ValueError):
    """Raised when a change cannot be turned into a query context."""


# ---------------------------------------------------------------------------
# Change references
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PullRequestRef:
    workspace: str
    repo: str
    pr_id: int
    commit_hash: str | None = None


@dataclass(frozen=True)
class PipelineRef:
    workspace: str
    repo: str
    target_type: str = "pipeline_ref_target"
    branch: str | None = None
    commit_hash: str | None = None
    pull_request_id: int | None = None

    @property
    def is_pull_request(self) -> bool:
        return self.target_type == PULL_REQUEST_TARGET


def parse_pr_id(text: str) -> int:
    """Parse a pull request id given as ``123`` or ``#123``."""
    value = str(text).strip().removeprefix("#")
    if not value.isdigit() or int(value) <= 0:
        raise QueryContextError(
            f"Invalid pull request ID '{text}'. Expected a number (e.g. 123 or #123)."
        )
    return int(value)


# ---------------------------------------------------------------------------
# Query context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueryContext:
    project_key: str
    is_pull_request: bool
    base_params: Mapping[str, str]
    preferred_metrics: tuple[str, ...]
    pull_request_id: int | None = None
    branch: str | None = None

    @property
    def scope_params(self) -> dict[str, str]:
        """The pull request / branch selector, without the component."""
        return {k: v for k, v in self.base_params.items() if k in _SCOPE_KEYS}

    def with_params(self, **extra: str) -> dict[str, str]:
        return {**self.base_params, **extra}

    def metric_name(self, name: str) -> str:
        if self.is_pull_request and not name.startswith("new_"):
            return f"new_{name}"
        return name


def build_query_context(change: PullRequestRef | PipelineRef, project_key: str) -> QueryContext:
    """Build the query context for *change* against *project_key*.

    Raises:
        QueryContextError: empty project key or an unusable pull request id.
    """
    if not project_key or not project_key.strip():
        raise QueryContextError("Project key is empty")

    if isinstance(change, PullRequestRef):
        pr_id: int | None = change.pr_id
        branch = None
    elif isinstance(change, PipelineRef):
        pr_id = change.pull_request_id if change.is_pull_request else None
        branch = None if change.is_pull_request else change.branch
        if change.is_pull_request and pr_id is None:
            raise QueryContextError("Pull request pipeline has no pull request id")
    else:
        raise QueryContextError(f"Unsupported change reference: {change!r}")

    params = {"component": project_key}
    if pr_id is not None:
        if pr_id <= 0:
            raise QueryContextError(f"Invalid pull request id: {pr_id}")
        params["pullRequest"] = str(pr_id)
    elif branch:
        params["branch"] = branch

    return QueryContext(
        project_key=project_key,
        is_pull_request=pr_id is not None,
        base_params=frozen_map(params),
        preferred_metrics=PULL_REQUEST_METRICS if pr_id is not None else BRANCH_METRICS,
        pull_request_id=pr_id,
        branch=branch,
    )
