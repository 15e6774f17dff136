from __future__ import annotations

import logging
import random
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, cast

from .controller.template import populate_trial_from_template, set_controller_reference
from .remote.api import RemoteAPI
from .remote.models import (
    PARAMETER_TYPE_DOUBLE,
    PARAMETER_TYPE_INTEGER,
    RemoteAssignment,
    TrialAssignments,
)
from .schemas import Assignment, Trial
from .store.base import ObjectStore

logger = logging.getLogger(__name__)

FALLBACK_NONE = "none"
FALLBACK_MIN = "min"
FALLBACK_MAX = "max"
FALLBACK_RANDOM = "random"
FALLBACKS = (FALLBACK_NONE, FALLBACK_MIN, FALLBACK_MAX, FALLBACK_RANDOM)


class SuggestionError(ValueError):
    pass


class SuggestionSource(Protocol):
    def assign_int(
        self, name: str, minimum: int, maximum: int, default: Optional[int] = None
    ) -> int:
        ...

    def assign_double(
        self, name: str, minimum: float, maximum: float, default: Optional[float] = None
    ) -> float:
        ...


def parse_assignments(items: Sequence[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise SuggestionError(f"assignment must look like name=value: {item!r}")
        values[name.strip()] = value.strip()
    return values


class MappingSuggestionSource:
    def __init__(
        self, values: Mapping[str, str], fallback: str = FALLBACK_NONE, seed: int = 0
    ) -> None:
        if fallback not in FALLBACKS:
            raise SuggestionError(f"unknown fallback {fallback!r}, expected one of {FALLBACKS}")
        self.values = dict(values)
        self.fallback = fallback
        self.rng = random.Random(seed)

    def _check(self, name: str, value: float, minimum: float, maximum: float) -> None:
        if value < minimum or value > maximum:
            raise SuggestionError(
                f"assignment {name}={value} is outside of [{minimum}, {maximum}]"
            )

    def _missing(self, name: str) -> SuggestionError:
        return SuggestionError(f"no assignment given for parameter {name!r}")

    def assign_int(
        self, name: str, minimum: int, maximum: int, default: Optional[int] = None
    ) -> int:
        if name in self.values:
            try:
                value = int(self.values[name])
            except ValueError as exc:
                raise SuggestionError(f"assignment {name!r} is not an integer") from exc
        elif default is not None:
            value = default
        elif self.fallback == FALLBACK_MIN:
            value = minimum
        elif self.fallback == FALLBACK_MAX:
            value = maximum
        elif self.fallback == FALLBACK_RANDOM:
            value = self.rng.randint(minimum, maximum)
        else:
            raise self._missing(name)
        self._check(name, value, minimum, maximum)
        return value

    def assign_double(
        self, name: str, minimum: float, maximum: float, default: Optional[float] = None
    ) -> float:
        if name in self.values:
            try:
                value = float(self.values[name])
            except ValueError as exc:
                raise SuggestionError(f"assignment {name!r} is not a number") from exc
        elif default is not None:
            value = default
        elif self.fallback == FALLBACK_MIN:
            value = minimum
        elif self.fallback == FALLBACK_MAX:
            value = maximum
        elif self.fallback == FALLBACK_RANDOM:
            value = self.rng.uniform(minimum, maximum)
        else:
            raise self._missing(name)
        self._check(name, value, minimum, maximum)
        return value


def create_in_cluster_suggestion(
    store: ObjectStore, namespace: str, name: str, source: SuggestionSource
) -> Trial:
    """Create a trial directly in the store; it is never reported upstream."""
    experiment = store.get_experiment(namespace, name)

    trial = populate_trial_from_template(experiment, namespace, with_finalizer=False)
    set_controller_reference(experiment, trial)
    for parameter in experiment.spec.parameters:
        value = source.assign_int(parameter.name, parameter.min, parameter.max)
        trial.spec.assignments.append(Assignment(name=parameter.name, value=value))

    created = cast(Trial, store.create(trial))
    logger.info("Created suggested trial %s/%s", created.metadata.namespace, created.metadata.name)
    return created


def create_remote_suggestion(api: RemoteAPI, name: str, source: SuggestionSource) -> str:
    experiment = api.get_experiment_by_name(name)

    assignments: List[RemoteAssignment] = []
    for parameter in experiment.parameters:
        if parameter.type == PARAMETER_TYPE_INTEGER:
            value: float = source.assign_int(
                parameter.name, int(parameter.bounds.min), int(parameter.bounds.max)
            )
        elif parameter.type == PARAMETER_TYPE_DOUBLE:
            value = source.assign_double(
                parameter.name, float(parameter.bounds.min), float(parameter.bounds.max)
            )
        else:
            logger.warning("Skipping parameter %s of type %s", parameter.name, parameter.type)
            continue
        assignments.append(RemoteAssignment(parameter_name=parameter.name, value=value))

    if not experiment.trials_ref:
        raise SuggestionError(f"remote experiment {name!r} does not accept trials")
    return api.create_trial(experiment.trials_ref, TrialAssignments(assignments=assignments))
