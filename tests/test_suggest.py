from typing import Callable

import pytest

from optiloop_v1.controller.experiment import request_for
from optiloop_v1.remote.api import StaticRemoteAPI
from optiloop_v1.remote.models import Bounds, RemoteExperiment, RemoteParameter
from optiloop_v1.schemas import Experiment
from optiloop_v1.store.memory import InMemoryStore, NotFoundError
from optiloop_v1.suggest import (
    FALLBACK_MAX,
    FALLBACK_MIN,
    FALLBACK_RANDOM,
    MappingSuggestionSource,
    SuggestionError,
    create_in_cluster_suggestion,
    create_remote_suggestion,
    parse_assignments,
)


def test_parse_assignments() -> None:
    assert parse_assignments(["x = 3", "y=0.5"]) == {"x": "3", "y": "0.5"}
    with pytest.raises(SuggestionError):
        parse_assignments(["x"])
    with pytest.raises(SuggestionError):
        parse_assignments(["=3"])


def test_mapping_source_bounds_and_fallbacks() -> None:
    source = MappingSuggestionSource({"x": "3"})
    assert source.assign_int("x", 1, 5) == 3
    assert source.assign_int("y", 1, 5, default=2) == 2
    with pytest.raises(SuggestionError):
        source.assign_int("y", 1, 5)
    with pytest.raises(SuggestionError):
        source.assign_int("x", 4, 5)
    with pytest.raises(SuggestionError):
        MappingSuggestionSource({"x": "1.5"}).assign_int("x", 1, 5)

    assert MappingSuggestionSource({}, FALLBACK_MIN).assign_int("x", 1, 5) == 1
    assert MappingSuggestionSource({}, FALLBACK_MAX).assign_double("x", 0.0, 2.5) == 2.5
    first = MappingSuggestionSource({}, FALLBACK_RANDOM, seed=7).assign_int("x", 1, 100)
    again = MappingSuggestionSource({}, FALLBACK_RANDOM, seed=7).assign_int("x", 1, 100)
    assert first == again
    assert 1 <= first <= 100

    with pytest.raises(SuggestionError):
        MappingSuggestionSource({}, "median")


def test_in_cluster_suggestion(
    store: InMemoryStore, make_experiment: Callable[..., Experiment]
) -> None:
    make_experiment()
    trial = create_in_cluster_suggestion(
        store, "default", "tune", MappingSuggestionSource({"x": "4"})
    )

    assert trial.assignment_map() == {"x": 4}
    assert trial.metadata.finalizers == []
    assert trial.metadata.name.startswith("tune-")
    assert request_for(trial) == ("default", "tune")
    assert store.get("Trial", "default", trial.metadata.name).assignment_map() == {"x": 4}


def test_in_cluster_suggestion_drops_template_finalizers(
    store: InMemoryStore, make_experiment: Callable[..., Experiment]
) -> None:
    experiment = make_experiment()
    experiment.spec.template.metadata.finalizers = ["cleanup.example.com"]
    store.update(experiment)

    trial = create_in_cluster_suggestion(
        store, "default", "tune", MappingSuggestionSource({"x": "1"})
    )
    assert trial.metadata.finalizers == []


def test_in_cluster_suggestion_requires_experiment(store: InMemoryStore) -> None:
    with pytest.raises(NotFoundError):
        create_in_cluster_suggestion(store, "default", "absent", MappingSuggestionSource({}))


def test_in_cluster_suggestion_rejects_out_of_bounds(
    store: InMemoryStore, make_experiment: Callable[..., Experiment]
) -> None:
    make_experiment()
    with pytest.raises(SuggestionError):
        create_in_cluster_suggestion(store, "default", "tune", MappingSuggestionSource({"x": "9"}))
    assert store.list("Trial") == []


def test_remote_suggestion(api: StaticRemoteAPI) -> None:
    api.create_experiment(
        "tune",
        RemoteExperiment(
            parameters=[
                RemoteParameter(name="x", bounds=Bounds(min=1, max=5)),
                RemoteParameter(type="double", name="rate", bounds=Bounds(min=0.0, max=1.0)),
                RemoteParameter(type="categorical", name="mode", bounds=Bounds(min=0, max=0)),
            ]
        ),
    )
    location = create_remote_suggestion(
        api, "tune", MappingSuggestionSource({"x": "2", "rate": "0.25"})
    )

    assert location == "http://optimizer.test/api/experiments/tune/trials/1"
    url, assignments = api.created_trials[0]
    assert url == "http://optimizer.test/api/experiments/tune/trials"
    assert assignments.as_mapping() == {"x": 2, "rate": 0.25}
