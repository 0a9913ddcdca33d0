"""Typed views of the SonarCloud API responses consumed by the reports.

Each ``parse_*`` function validates a decoded JSON payload against a pydantic
model. A missing required field or a field of the wrong type raises
:class:`~sonarcloud_report.client.ResponseFormatError`. JSON ``null`` counts as
an absent field, so optional fields fall back to their defaults.

Measure *values* are the exception: SonarCloud omits them for files without
coverable lines and for metrics that are not computed on a branch, so
:func:`measure_float` / :func:`measure_int` default to ``0`` instead of
failing.
"""

from typing import Annotated, Any

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)

from sonarcloud_report.client import ResponseFormatError


class _Response(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


def _as_text(value: Any) -> Any:
    # numbers become text; anything else is left for the field type to reject
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


_Text = Annotated[StrictStr, BeforeValidator(_as_text)]


def _validate(model: type[BaseModel], data: Any, where: str) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ResponseFormatError(f"{where}: {problems}") from exc


class Paging(_Response):
    total: StrictInt | None = None


# ---------------------------------------------------------------------------
# Measures
# ---------------------------------------------------------------------------

class Period(_Response):
    index: StrictInt | None = None
    value: _Text | None = None


class Measure(_Response):
    metric: StrictStr
    value: _Text | None = None
    periods: list[Period] = Field(default_factory=list)
    # older servers deliver new-code values under a single "period"
    period: Period | None = None

    @property
    def period_value(self) -> str | None:
        if self.periods and self.periods[0].value is not None:
            return self.periods[0].value
        return self.period.value if self.period else None


def _measure_text(measure: Measure) -> str | None:
    if measure.metric.startswith("new_"):
        return measure.period_value if measure.period_value is not None else measure.value
    return measure.value


def measure_float(measures: dict[str, Measure], metric: str) -> float:
    """Return *metric* as a float, or ``0.0`` when absent or unparsable."""
    measure = measures.get(metric)
    if measure is None:
        return 0.0
    try:
        return float(_measure_text(measure))
    except (TypeError, ValueError):
        return 0.0


def measure_int(measures: dict[str, Measure], metric: str) -> int:
    """Return *metric* as an int, or ``0`` when absent, unparsable or not finite."""
    measure = measures.get(metric)
    if measure is None:
        return 0
    try:
        return int(float(_measure_text(measure)))
    except (TypeError, ValueError, OverflowError):
        return 0


def measure_text(measures: dict[str, Measure], metric: str) -> str | None:
    measure = measures.get(metric)
    return None if measure is None else _measure_text(measure)


class ComponentMeasures(_Response):
    key: StrictStr
    measure_list: list[Measure] = Field(default_factory=list, alias="measures")

    @property
    def measures(self) -> dict[str, Measure]:
        return {m.metric: m for m in self.measure_list}


class _ComponentResponse(_Response):
    component: ComponentMeasures


def parse_component_measures(data: dict) -> ComponentMeasures:
    """Parse a ``measures/component`` response."""
    return _validate(_ComponentResponse, data, "measures/component").component


class TreeComponent(ComponentMeasures):
    name: StrictStr = ""
    path: StrictStr
    language: StrictStr = ""

    @model_validator(mode="before")
    @classmethod
    def _path_defaults_to_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("path") is None and "key" in data:
            return {**data, "path": data["key"]}
        return data


class ComponentTree(_Response):
    components: list[TreeComponent] = Field(default_factory=list)
    paging: Paging = Field(default_factory=Paging)

    @property
    def total(self) -> int:
        if self.paging.total is not None:
            return self.paging.total
        return len(self.components)


def parse_component_tree(data: dict) -> ComponentTree:
    """Parse a ``measures/component_tree`` response."""
    return _validate(ComponentTree, data, "measures/component_tree")


# ---------------------------------------------------------------------------
# Quality gate
# ---------------------------------------------------------------------------

class GateCondition(_Response):
    status: StrictStr
    metric_key: StrictStr = Field(alias="metricKey")
    comparator: StrictStr = ""
    period_index: StrictInt = Field(default=0, alias="periodIndex")
    error_threshold: _Text = Field(default="", alias="errorThreshold")
    actual_value: _Text = Field(default="", alias="actualValue")


class ProjectStatus(_Response):
    status: StrictStr
    conditions: list[GateCondition] = Field(default_factory=list)


class _ProjectStatusResponse(_Response):
    project_status: ProjectStatus = Field(alias="projectStatus")


def parse_project_status(data: dict) -> ProjectStatus:
    """Parse a ``qualitygates/project_status`` response."""
    return _validate(_ProjectStatusResponse, data, "qualitygates/project_status").project_status


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------

class RawIssue(_Response):
    key: StrictStr
    rule: StrictStr
    severity: StrictStr
    type: StrictStr
    component: StrictStr
    line: StrictInt | None = None
    message: StrictStr = ""
    effort: StrictStr | None = None
    debt: StrictStr | None = None
    creation_date: StrictStr | None = Field(default=None, alias="creationDate")


class Rule(_Response):
    key: StrictStr
    name: StrictStr = ""


class IssueSearch(_Response):
    issues: list[RawIssue] = Field(default_factory=list)
    rules: list[Rule] = Field(default_factory=list)
    reported_total: StrictInt | None = Field(default=None, alias="total")
    paging: Paging = Field(default_factory=Paging)

    @property
    def total(self) -> int:
        for total in (self.reported_total, self.paging.total):
            if total is not None:
                return total
        return len(self.issues)

    @property
    def rule_names(self) -> dict[str, str]:
        return {rule.key: rule.name for rule in self.rules}


def parse_issue_search(data: dict) -> IssueSearch:
    """Parse an ``issues/search`` response."""
    return _validate(IssueSearch, data, "issues/search")


# ---------------------------------------------------------------------------
# Source lines
# ---------------------------------------------------------------------------

class SourceLine(_Response):
    line: StrictInt
    code: StrictStr = ""
    line_hits: StrictInt | None = Field(default=None, alias="lineHits")
    ut_line_hits: StrictInt | None = Field(default=None, alias="utLineHits")
    is_new: StrictBool = Field(default=False, alias="isNew")

    @property
    def hits(self) -> int | None:
        """``lineHits`` when present, otherwise ``utLineHits``; ``None`` means not coverable."""
        return self.line_hits if self.line_hits is not None else self.ut_line_hits


class _SourcesResponse(_Response):
    sources: list[SourceLine] = Field(default_factory=list)


def parse_source_lines(data: dict) -> list[SourceLine]:
    """Parse a ``sources/lines`` response."""
    return _validate(_SourcesResponse, data, "sources/lines").sources
