import os
from typing import Any, Callable, Dict, Optional

import pytest

from optiloop_v1.remote.api import StaticRemoteAPI
from optiloop_v1.schemas import (
    Experiment,
    ExperimentSpec,
    LabelSelector,
    MetricQuery,
    Namespace,
    ObjectMeta,
    Parameter,
)
from optiloop_v1.store.memory import InMemoryStore


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    _ = config
    run_slow = os.getenv("RUN_SLOW_TESTS", "") or os.getenv("OPTILOOP_RUN_SLOW", "")
    if str(run_slow).strip().lower() in {"1", "true", "yes"}:
        return
    skip_slow = pytest.mark.skip(reason="set OPTILOOP_RUN_SLOW=1 to run slow tests")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def api() -> StaticRemoteAPI:
    return StaticRemoteAPI()


def build_experiment(
    name: str = "tune",
    namespace: str = "default",
    replicas: Optional[int] = 1,
    parallelism: Optional[int] = None,
    namespace_selector: Optional[Dict[str, str]] = None,
    **spec: Any,
) -> Experiment:
    return Experiment(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=ExperimentSpec(
            replicas=replicas,
            parallelism=parallelism,
            parameters=[Parameter(name="x", min=1, max=5)],
            metrics=[MetricQuery(name="latency", minimize=True)],
            namespace_selector=(
                LabelSelector(match_labels=namespace_selector)
                if namespace_selector is not None
                else None
            ),
            **spec,
        ),
    )


@pytest.fixture
def make_experiment(store: InMemoryStore) -> Callable[..., Experiment]:
    def _make(**kwargs: Any) -> Experiment:
        created = store.create(build_experiment(**kwargs))
        assert isinstance(created, Experiment)
        return created

    return _make


@pytest.fixture
def make_namespace(store: InMemoryStore) -> Callable[..., Namespace]:
    def _make(name: str, **labels: str) -> Namespace:
        created = store.create(Namespace(metadata=ObjectMeta(name=name, labels=labels)))
        assert isinstance(created, Namespace)
        return created

    return _make
