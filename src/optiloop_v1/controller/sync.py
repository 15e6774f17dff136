from __future__ import annotations

import logging
import math
from typing import Optional

from ..remote.api import APIError, RemoteAPI
from ..remote.models import (
    PARAMETER_TYPE_INTEGER,
    Bounds,
    Optimization,
    ObservedValue,
    RemoteExperiment,
    RemoteMetric,
    RemoteParameter,
    TrialValues,
)
from ..schemas import Experiment, Trial
from ..utils import parse_number
from .links import RemoteLinks
from .trial_status import is_trial_failed

logger = logging.getLogger(__name__)


def copy_experiment_to_remote(experiment: Experiment) -> RemoteExperiment:
    parallel_trials = experiment.spec.parallelism
    if parallel_trials is None:
        parallel_trials = experiment.get_replicas()

    # Parameters are integer ranges for now
    return RemoteExperiment(
        optimization=Optimization(parallel_trials=parallel_trials),
        parameters=[
            RemoteParameter(
                type=PARAMETER_TYPE_INTEGER,
                name=parameter.name,
                bounds=Bounds(min=parameter.min, max=parameter.max),
            )
            for parameter in experiment.spec.parameters
        ],
        metrics=[
            RemoteMetric(name=metric.name, minimize=metric.minimize)
            for metric in experiment.spec.metrics
        ],
    )


def sync_with_server(api: RemoteAPI, experiment: Experiment) -> bool:
    """Refresh the cached remote links; True means the experiment must be persisted.

    Creation and fetch failures propagate. A failed remote delete during
    teardown is only logged so local cleanup can proceed.
    """
    links = RemoteLinks.of(experiment.metadata)

    if experiment.get_replicas() > 0:
        if not links.experiment_url:
            name = experiment.metadata.name
            logger.info("Creating remote experiment %s", name)
            links.experiment_url = api.create_experiment(name, copy_experiment_to_remote(experiment))
            links.apply(experiment.metadata)
            return True

        if not links.next_trial_url:
            remote = api.get_experiment(links.experiment_url)

            # Clamp in memory; only persisted alongside a new suggestion link
            max_parallel = remote.optimization.parallel_trials
            if 0 < max_parallel < experiment.get_replicas():
                experiment.set_replicas(max_parallel)

            # No generate link means the server has nothing to offer right now
            if remote.generate_ref:
                links.next_trial_url = remote.generate_ref
                links.apply(experiment.metadata)
                return True

    if experiment.metadata.deletion_requested and links.experiment_url:
        try:
            api.delete_experiment(links.experiment_url)
        except APIError:
            logger.exception("Failed to delete remote experiment %s", links.experiment_url)
        links.experiment_url = ""
        links.next_trial_url = ""
        links.apply(experiment.metadata)
        experiment.set_replicas(0)
        return True

    return False


def _finite_number(text: str) -> Optional[float]:
    value = parse_number(text)
    if value is None or not math.isfinite(value):
        return None
    return value


def trial_observation(trial: Trial) -> TrialValues:
    observation = TrialValues(failed=is_trial_failed(trial))
    for item in trial.spec.values:
        value = _finite_number(item.value)
        if value is None:
            continue
        observation.values.append(
            ObservedValue(metric_name=item.name, value=value, error=_finite_number(item.error))
        )
    return observation
