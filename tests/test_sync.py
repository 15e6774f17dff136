from typing import Callable

import pytest

from optiloop_v1.controller.links import (
    ANNOTATION_EXPERIMENT_URL,
    ANNOTATION_NEXT_TRIAL_URL,
    RemoteLinks,
)
from optiloop_v1.controller.sync import (
    copy_experiment_to_remote,
    sync_with_server,
    trial_observation,
)
from optiloop_v1.remote.api import APIError, StaticRemoteAPI
from optiloop_v1.schemas import (
    Condition,
    Experiment,
    MetricQuery,
    Trial,
    TrialSpec,
    TrialStatus,
    Value,
)
from optiloop_v1.utils import utcnow


def test_remote_representation(make_experiment: Callable[..., Experiment]) -> None:
    experiment = make_experiment(replicas=3)
    experiment.spec.metrics.append(MetricQuery(name="throughput", minimize=False))
    remote = copy_experiment_to_remote(experiment)
    payload = remote.to_payload()
    assert payload["optimization"] == {"parallelTrials": 3}
    assert payload["parameters"] == [
        {"type": "int", "name": "x", "bounds": {"min": 1, "max": 5}}
    ]
    assert payload["metrics"] == [
        {"name": "latency", "minimize": True},
        {"name": "throughput", "minimize": False},
    ]

    experiment.spec.parallelism = 7
    assert copy_experiment_to_remote(experiment).optimization.parallel_trials == 7


def test_sync_creates_then_links(
    api: StaticRemoteAPI, make_experiment: Callable[..., Experiment]
) -> None:
    experiment = make_experiment()
    assert sync_with_server(api, experiment)
    url = experiment.metadata.annotations[ANNOTATION_EXPERIMENT_URL]
    assert url == "http://optimizer.test/api/experiments/tune"
    assert ANNOTATION_NEXT_TRIAL_URL not in experiment.metadata.annotations

    assert sync_with_server(api, experiment)
    assert experiment.metadata.annotations[ANNOTATION_NEXT_TRIAL_URL] == url + "/next"

    # Fully linked: nothing further to do
    assert not sync_with_server(api, experiment)
    assert api.call_count("create_experiment") == 1


def test_sync_create_failure_propagates(
    api: StaticRemoteAPI, make_experiment: Callable[..., Experiment]
) -> None:
    api.fail_creates = True
    experiment = make_experiment()
    with pytest.raises(APIError):
        sync_with_server(api, experiment)
    assert RemoteLinks.of(experiment.metadata).experiment_url == ""


def test_sync_clamps_replicas(make_experiment: Callable[..., Experiment]) -> None:
    api = StaticRemoteAPI(max_parallel_trials=2)
    experiment = make_experiment(replicas=5)
    sync_with_server(api, experiment)
    assert sync_with_server(api, experiment)
    assert experiment.get_replicas() == 2


def test_sync_without_generate_link_leaves_experiment(
    api: StaticRemoteAPI, make_experiment: Callable[..., Experiment]
) -> None:
    api.offer_suggestions = False
    experiment = make_experiment()
    sync_with_server(api, experiment)
    assert not sync_with_server(api, experiment)
    assert RemoteLinks.of(experiment.metadata).next_trial_url == ""


def test_sync_deletion_swallows_remote_failure(
    api: StaticRemoteAPI, make_experiment: Callable[..., Experiment]
) -> None:
    experiment = make_experiment()
    sync_with_server(api, experiment)
    sync_with_server(api, experiment)
    api.fail_deletes = True
    experiment.metadata.deletion_timestamp = utcnow()
    experiment.set_replicas(0)

    assert sync_with_server(api, experiment)
    assert api.call_count("delete_experiment") == 1
    assert experiment.metadata.annotations == {}
    assert experiment.get_replicas() == 0
    assert not sync_with_server(api, experiment)


def test_observation_from_trial() -> None:
    trial = Trial(
        spec=TrialSpec(
            values=[
                Value(name="latency", value="42.5", error="0.5"),
                Value(name="broken", value="n/a"),
                Value(name="padded", value=" 1"),
                Value(name="nan", value="NaN"),
            ]
        ),
        status=TrialStatus(conditions=[Condition(type="Complete")]),
    )
    observation = trial_observation(trial)
    assert not observation.failed
    assert observation.to_payload() == {
        "values": [{"metricName": "latency", "value": 42.5, "error": 0.5}],
        "failed": False,
    }

    trial.status.conditions.append(Condition(type="Failed"))
    assert trial_observation(trial).failed
