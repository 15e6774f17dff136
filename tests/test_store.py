from pathlib import Path

import pytest

from optiloop_v1.schemas import (
    Experiment,
    LabelSelector,
    LabelSelectorRequirement,
    Lifecycle,
    Namespace,
    ObjectMeta,
    Trial,
)
from optiloop_v1.selectors import SelectorError, matches
from optiloop_v1.store.memory import (
    AlreadyExistsError,
    ConflictError,
    InMemoryStore,
    NotFoundError,
    StoreError,
)


def _trial(name: str = "", generate_name: str = "", namespace: str = "default") -> Trial:
    return Trial(metadata=ObjectMeta(name=name, generate_name=generate_name, namespace=namespace))


def test_store_rejects_stale_update(store: InMemoryStore) -> None:
    created = store.create(_trial("t1"))
    first = store.get("Trial", "default", "t1")
    second = store.get("Trial", "default", "t1")
    first.metadata.labels["a"] = "1"
    store.update(first)
    second.metadata.labels["a"] = "2"
    with pytest.raises(ConflictError):
        store.update(second)
    assert store.get("Trial", "default", "t1").metadata.labels == {"a": "1"}
    assert created.metadata.uid


def test_store_create_and_get_errors(store: InMemoryStore) -> None:
    store.create(_trial("t1"))
    with pytest.raises(AlreadyExistsError):
        store.create(_trial("t1"))
    with pytest.raises(NotFoundError):
        store.get("Trial", "default", "missing")
    with pytest.raises(StoreError):
        store.create(_trial())
    with pytest.raises(StoreError):
        store.create(_trial("t2", namespace=""))


def test_typed_getters(store: InMemoryStore) -> None:
    store.create(_trial("t1"))
    trial = store.get_trial("default", "t1")
    assert isinstance(trial, Trial)
    assert trial.metadata.name == "t1"
    with pytest.raises(NotFoundError):
        store.get_trial("default", "missing")
    with pytest.raises(NotFoundError):
        store.get_experiment("default", "t1")


def test_store_generate_name_is_unique(store: InMemoryStore) -> None:
    first = store.create(_trial(generate_name="tune-"))
    second = store.create(_trial(generate_name="tune-"))
    assert first.metadata.name.startswith("tune-")
    assert second.metadata.name.startswith("tune-")
    assert first.metadata.name != second.metadata.name


def test_store_reads_are_copies(store: InMemoryStore) -> None:
    store.create(_trial("t1"))
    trial = store.get("Trial", "default", "t1")
    trial.metadata.labels["mutated"] = "yes"
    assert store.get("Trial", "default", "t1").metadata.labels == {}


def test_two_phase_delete_waits_for_finalizers(store: InMemoryStore) -> None:
    trial = _trial("t1")
    trial.metadata.finalizers = ["keep"]
    store.create(trial)
    store.delete(store.get("Trial", "default", "t1"))

    pending = store.get("Trial", "default", "t1")
    assert pending.metadata.lifecycle() == Lifecycle.PENDING_DELETION
    assert pending.metadata.deletion_blockers() == ["keep"]

    pending.metadata.remove_finalizer("keep")
    store.update(pending)
    with pytest.raises(NotFoundError):
        store.get("Trial", "default", "t1")


def test_update_cannot_clear_deletion_marker(store: InMemoryStore) -> None:
    trial = _trial("t1")
    trial.metadata.finalizers = ["keep"]
    store.create(trial)
    store.delete(store.get("Trial", "default", "t1"))
    pending = store.get("Trial", "default", "t1")
    pending.metadata.deletion_timestamp = None
    store.update(pending)
    assert store.get("Trial", "default", "t1").metadata.deletion_requested


def test_owner_removed_after_last_dependent(store: InMemoryStore) -> None:
    experiment = store.create(Experiment(metadata=ObjectMeta(name="exp", namespace="default")))
    assert isinstance(experiment, Experiment)
    trial = _trial("t1")
    trial.metadata.owner_references.append(experiment.owner_reference())
    trial.metadata.finalizers = ["keep"]
    store.create(trial)

    store.delete(experiment)
    assert store.get("Experiment", "default", "exp").metadata.deletion_requested

    store.delete(store.get("Trial", "default", "t1"))
    pending = store.get("Trial", "default", "t1")
    pending.metadata.finalizers = []
    store.update(pending)

    with pytest.raises(NotFoundError):
        store.get("Experiment", "default", "exp")


def test_snapshot_survives_save_and_load(store: InMemoryStore, tmp_path: Path) -> None:
    experiment = store.create(Experiment(metadata=ObjectMeta(name="exp", namespace="default")))
    store.create(Namespace(metadata=ObjectMeta(name="ns-a", labels={"pool": "a"})))
    path = tmp_path / "state.json"
    store.save(path)

    loaded = InMemoryStore.load(path)
    reloaded = loaded.get_experiment("default", "exp")
    assert reloaded.metadata.uid == experiment.metadata.uid
    assert [ns.metadata.name for ns in loaded.list("Namespace")] == ["ns-a"]
    created = loaded.create(_trial(generate_name="exp-"))
    assert created.metadata.resource_version != experiment.metadata.resource_version


def test_load_missing_state_is_empty(tmp_path: Path) -> None:
    assert InMemoryStore.load(tmp_path / "absent.json").list("Experiment") == []


def test_selector_expressions() -> None:
    selector = LabelSelector(
        match_labels={"app": "web"},
        match_expressions=[
            LabelSelectorRequirement(key="tier", operator="In", values=["a", "b"]),
            LabelSelectorRequirement(key="skip", operator="DoesNotExist"),
        ],
    )
    assert matches(selector, {"app": "web", "tier": "a"})
    assert not matches(selector, {"app": "web", "tier": "c"})
    assert not matches(selector, {"app": "web", "tier": "a", "skip": "1"})
    assert matches(None, {})


def test_malformed_selector_is_rejected(store: InMemoryStore) -> None:
    selector = LabelSelector(
        match_expressions=[LabelSelectorRequirement(key="tier", operator="Near")]
    )
    with pytest.raises(SelectorError):
        store.list("Trial", selector=selector)
    selector = LabelSelector(
        match_expressions=[LabelSelectorRequirement(key="tier", operator="In")]
    )
    with pytest.raises(SelectorError):
        store.list("Trial", selector=selector)
