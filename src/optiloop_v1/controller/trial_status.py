from __future__ import annotations

from ..schemas import CONDITION_TRUE, TRIAL_COMPLETE, TRIAL_FAILED, Trial


def _condition_true(trial: Trial, condition_type: str) -> bool:
    condition = trial.condition(condition_type)
    return condition is not None and condition.status == CONDITION_TRUE


def is_trial_failed(trial: Trial) -> bool:
    return _condition_true(trial, TRIAL_FAILED)


def is_trial_finished(trial: Trial) -> bool:
    return _condition_true(trial, TRIAL_COMPLETE) or is_trial_failed(trial)
