from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from ..schemas import MetricQuery, Trial, Value
from .capture import Captured, MetricCapture


@dataclass
class CollectionResult:
    captured: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    retry_after: Optional[float] = None

    @property
    def complete(self) -> bool:
        return not self.pending


def capture_trial_values(
    trial: Trial, metrics: Sequence[MetricQuery], capture: MetricCapture
) -> CollectionResult:
    """Record every metric the trial is still missing; errors propagate."""
    result = CollectionResult()
    recorded = trial.value_map()
    for metric in metrics:
        if metric.name in recorded:
            continue
        outcome = capture.capture(metric, trial)
        if isinstance(outcome, Captured):
            trial.spec.values.append(
                Value(
                    name=metric.name,
                    value=str(outcome.value),
                    error="" if outcome.error is None else str(outcome.error),
                )
            )
            result.captured.append(metric.name)
            continue
        result.pending.append(metric.name)
        if outcome.delay is not None:
            if result.retry_after is None or outcome.delay < result.retry_after:
                result.retry_after = outcome.delay
    return result
