from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from ..remote.api import APIError, ExperimentStopped, RemoteAPI, TrialUnavailable
from ..schemas import Assignment, Experiment, LabelSelector, Record, Trial
from ..store.base import ObjectStore
from ..store.memory import NotFoundError
from .links import FINALIZER, RemoteLinks
from .namespaces import find_available_namespace
from .sync import sync_with_server, trial_observation
from .template import populate_trial_from_template, set_controller_reference
from .trial_status import is_trial_finished

logger = logging.getLogger(__name__)

ACTION_NONE = "none"
ACTION_ADD_FINALIZER = "add-finalizer"
ACTION_SYNC = "sync"
ACTION_STOPPED = "stopped"
ACTION_UNAVAILABLE = "unavailable"
ACTION_CREATE_TRIAL = "create-trial"
ACTION_DELETE_TRIAL = "delete-trial"
ACTION_REPORT_TRIAL = "report-trial"
ACTION_ABANDON_TRIAL = "abandon-trial"
ACTION_REMOVE_FINALIZER = "remove-finalizer"


@dataclass(frozen=True)
class ReconcileResult:
    action: str = ACTION_NONE
    requeue: bool = False
    requeue_after: Optional[float] = None

    @property
    def mutated(self) -> bool:
        return self.action not in (ACTION_NONE, ACTION_UNAVAILABLE)


def request_for(record: Record) -> Optional[Tuple[str, str]]:
    """Map a changed record to the experiment that should be reconciled."""
    if isinstance(record, Experiment):
        return record.metadata.namespace, record.metadata.name
    if isinstance(record, Trial):
        owner = record.metadata.controller_ref()
        if owner is None or owner.kind != "Experiment":
            return None
        ref = record.spec.experiment_ref
        if ref is not None and ref.name == owner.name and ref.namespace:
            return ref.namespace, owner.name
        return record.metadata.namespace, owner.name
    return None


def trial_selector(experiment: Experiment) -> LabelSelector:
    if experiment.spec.selector is not None:
        return experiment.spec.selector
    labels = dict(experiment.spec.template.metadata.labels)
    if not labels:
        labels = experiment.default_labels()
    return LabelSelector(match_labels=labels)


class ExperimentReconciler:
    """Level-triggered reconciliation of one experiment and its trials.

    Each call performs at most one write and then returns; the caller
    re-invokes until the result reports no action.
    """

    def __init__(self, store: ObjectStore, api: RemoteAPI) -> None:
        self.store = store
        self.api = api

    def list_trials(self, experiment: Experiment) -> List[Trial]:
        records = self.store.list("Trial", selector=trial_selector(experiment))
        return [record for record in records if isinstance(record, Trial)]

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            experiment = self.store.get_experiment(namespace, name)
        except NotFoundError:
            return ReconcileResult()

        meta = experiment.metadata
        if not meta.deletion_requested and meta.add_finalizer(FINALIZER):
            self.store.update(experiment)
            return ReconcileResult(action=ACTION_ADD_FINALIZER)

        if sync_with_server(self.api, experiment):
            self.store.update(experiment)
            return ReconcileResult(action=ACTION_SYNC)

        trials = self.list_trials(experiment)

        next_trial_url = RemoteLinks.of(meta).next_trial_url
        if next_trial_url and experiment.get_replicas() > len(trials):
            target = find_available_namespace(self.store, experiment, trials)
            if target:
                return self._create_trial(experiment, target, next_trial_url)

        for trial in trials:
            result = self._reconcile_trial(experiment, trial)
            if result is not None:
                return result

        if meta.deletion_requested and meta.remove_finalizer(FINALIZER):
            self.store.update(experiment)
            return ReconcileResult(action=ACTION_REMOVE_FINALIZER)

        return ReconcileResult()

    def _create_trial(
        self, experiment: Experiment, namespace: str, next_trial_url: str
    ) -> ReconcileResult:
        trial = populate_trial_from_template(experiment, namespace)
        set_controller_reference(experiment, trial)

        try:
            suggestion, report_trial_url = self.api.next_trial(next_trial_url)
        except ExperimentStopped:
            # The suggestion link is gone for good
            experiment.set_replicas(0)
            links = RemoteLinks.of(experiment.metadata)
            links.next_trial_url = ""
            links.apply(experiment.metadata)
            self.store.update(experiment)
            return ReconcileResult(action=ACTION_STOPPED)
        except TrialUnavailable as exc:
            return ReconcileResult(
                action=ACTION_UNAVAILABLE, requeue=True, requeue_after=exc.retry_after
            )

        RemoteLinks(report_trial_url=report_trial_url).apply(trial.metadata)
        for name, value in suggestion.as_mapping().items():
            trial.spec.assignments.append(Assignment(name=name, value=value))

        logger.info(
            "Creating new trial in %s (report %s) with %s",
            trial.metadata.namespace,
            report_trial_url,
            trial.assignment_map(),
        )
        self.store.create(trial)
        return ReconcileResult(action=ACTION_CREATE_TRIAL)

    def _reconcile_trial(self, experiment: Experiment, trial: Trial) -> Optional[ReconcileResult]:
        meta = trial.metadata

        if is_trial_finished(trial):
            if not meta.deletion_requested:
                # Deleting a finished trial drives it through finalization
                self.store.delete(trial)
                return ReconcileResult(action=ACTION_DELETE_TRIAL)
            if not meta.has_finalizer(FINALIZER):
                return None
            self._report_trial(experiment, trial)
            meta.remove_finalizer(FINALIZER)
            self.store.update(trial)
            return ReconcileResult(action=ACTION_REPORT_TRIAL)

        if meta.deletion_requested:
            # Abandoned before finishing: no observation is sent
            if meta.remove_finalizer(FINALIZER):
                self.store.update(trial)
                return ReconcileResult(action=ACTION_ABANDON_TRIAL)
            return None

        if experiment.metadata.deletion_requested:
            self.store.delete(trial)
            return ReconcileResult(action=ACTION_DELETE_TRIAL)

        return None

    def _report_trial(self, experiment: Experiment, trial: Trial) -> None:
        observation = trial_observation(trial)
        report_trial_url = RemoteLinks.of(trial.metadata).report_trial_url
        logger.info(
            "Reporting trial %s/%s to %s: %s",
            trial.metadata.namespace,
            trial.metadata.name,
            report_trial_url,
            {value.metric_name: value.value for value in observation.values},
        )
        try:
            if not report_trial_url:
                raise APIError(f"trial {trial.metadata.name} has no report URL")
            self.api.report_trial(report_trial_url, observation)
        except APIError:
            # Experiment deletion takes precedence over a lost observation
            if not experiment.metadata.deletion_requested:
                raise
            logger.warning(
                "Dropping observation for trial %s/%s during experiment deletion",
                trial.metadata.namespace,
                trial.metadata.name,
                exc_info=True,
            )


def run_until_idle(
    reconciler: ExperimentReconciler,
    namespace: str,
    name: str,
    max_steps: int = 50,
    on_step: Optional[Callable[[ReconcileResult], None]] = None,
) -> List[ReconcileResult]:
    """Re-invoke the loop until it takes no action or asks for a delayed retry.

    ``on_step`` runs after every invocation, before the next one starts.
    """
    results: List[ReconcileResult] = []
    for _ in range(max_steps):
        result = reconciler.reconcile(namespace, name)
        results.append(result)
        if on_step is not None:
            on_step(result)
        if not result.mutated or result.requeue:
            break
    return results
