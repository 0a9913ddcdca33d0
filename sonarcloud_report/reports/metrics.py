"""Metrics section: duplication, ratings and the change's headline metrics."""

from sonarcloud_report.models import MetricsData, frozen_map
from sonarcloud_report.query import QueryContext
from sonarcloud_report.responses import measure_float, measure_text, parse_component_measures

RATING_METRICS = ("reliability_rating", "security_rating", "sqale_rating")
DUPLICATION_METRIC = "duplicated_lines_density"


def get_metrics_data(client, query: QueryContext, cancel=None) -> MetricsData:
    keys = [DUPLICATION_METRIC, *RATING_METRICS]
    keys += [m for m in query.preferred_metrics if m not in keys]
    params = query.with_params(metricKeys=",".join(keys))

    data = client.get("/measures/component", params=params, cancel=cancel)
    measures = parse_component_measures(data).measures

    ratings = {}
    metrics = {}
    for key in measures:
        if key == DUPLICATION_METRIC:
            continue
        value = measure_text(measures, key)
        if value is None:
            continue
        if key in RATING_METRICS:
            ratings[key] = value
        else:
            metrics[key] = value

    return MetricsData(
        available=True,
        duplication=measure_float(measures, DUPLICATION_METRIC),
        ratings=frozen_map(ratings),
        metrics=frozen_map(metrics),
    )
