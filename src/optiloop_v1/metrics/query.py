from __future__ import annotations

from typing import Any, Dict

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from ..schemas import MetricQuery, Trial
from ..utils import epoch_seconds

_environment = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


class MetricCaptureError(Exception):
    pass


def query_context(trial: Trial) -> Dict[str, Any]:
    start = trial.status.start_time
    completion = trial.status.completion_time
    start_time = epoch_seconds(start) if start is not None else None
    completion_time = epoch_seconds(completion) if completion is not None else None
    duration = None
    if start_time is not None and completion_time is not None:
        duration = int(completion_time - start_time)
    assignments = trial.assignment_map()
    values = trial.value_map()
    return {
        "trial": {
            "name": trial.metadata.name,
            "namespace": trial.metadata.namespace,
            "labels": dict(trial.metadata.labels),
            "target_namespace": trial.spec.target_namespace,
            "assignments": assignments,
            "values": values,
        },
        "assignments": assignments,
        "values": values,
        "start_time": start_time,
        "completion_time": completion_time,
        "duration": duration,
    }


def render_query(metric: MetricQuery, trial: Trial) -> str:
    try:
        template = _environment.from_string(metric.query)
        return template.render(**query_context(trial))
    except TemplateError as exc:
        raise MetricCaptureError(f"metric {metric.name!r}: bad query template: {exc}") from exc
