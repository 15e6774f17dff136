from __future__ import annotations

from typing import List, Set

from ..schemas import Experiment, Trial
from ..store.base import ObjectStore


def occupied_namespaces(trials: List[Trial]) -> Set[str]:
    return {trial.metadata.namespace for trial in trials}


def find_available_namespace(store: ObjectStore, experiment: Experiment, trials: List[Trial]) -> str:
    """Return a namespace with no trial in it, or "" when there is no capacity."""
    in_use = occupied_namespaces(trials)

    if experiment.spec.namespace_selector is not None:
        # First free namespace in listing order
        for namespace in store.list("Namespace", selector=experiment.spec.namespace_selector):
            if namespace.metadata.name not in in_use:
                return namespace.metadata.name
        return ""

    if experiment.metadata.namespace in in_use:
        return ""
    return experiment.metadata.namespace
