from __future__ import annotations

from ..schemas import Experiment, Trial
from .links import FINALIZER


class OwnershipError(ValueError):
    pass


def set_controller_reference(experiment: Experiment, trial: Trial) -> None:
    owner = experiment.owner_reference()
    existing = trial.metadata.controller_ref()
    if existing is not None:
        if existing.uid == owner.uid:
            return
        raise OwnershipError(
            f"trial is already controlled by {existing.kind} {existing.name!r}"
        )
    trial.metadata.owner_references.append(owner)


def populate_trial_from_template(
    experiment: Experiment, namespace: str, with_finalizer: bool = True
) -> Trial:
    template = experiment.spec.template
    trial = Trial(
        metadata=template.metadata.model_copy(deep=True),
        spec=template.spec.model_copy(deep=True),
    )
    meta = trial.metadata

    # Only a single trial in the experiment's own namespace keeps the template target
    if (
        experiment.get_replicas() > 1
        or experiment.spec.namespace_selector is not None
        or template.metadata.namespace
    ):
        trial.spec.target_namespace = namespace

    if with_finalizer:
        meta.add_finalizer(FINALIZER)
    else:
        meta.finalizers = []

    if not meta.namespace:
        meta.namespace = namespace

    if not meta.name:
        if meta.namespace != experiment.metadata.namespace:
            meta.name = experiment.metadata.name
        elif not meta.generate_name:
            meta.generate_name = experiment.metadata.name + "-"

    if not meta.labels:
        meta.labels = experiment.default_labels()

    if meta.annotations is None:
        meta.annotations = {}

    if trial.spec.experiment_ref is None:
        trial.spec.experiment_ref = experiment.self_reference()

    return trial
