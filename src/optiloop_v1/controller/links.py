from __future__ import annotations

from dataclasses import dataclass

from ..schemas import ObjectMeta

ANNOTATION_PREFIX = "optiloop.dev/"

ANNOTATION_EXPERIMENT_URL = ANNOTATION_PREFIX + "experiment-url"
ANNOTATION_NEXT_TRIAL_URL = ANNOTATION_PREFIX + "next-trial-url"
ANNOTATION_REPORT_TRIAL_URL = ANNOTATION_PREFIX + "report-trial-url"

FINALIZER = "finalizer.optiloop.dev"

_FIELDS = (
    ("experiment_url", ANNOTATION_EXPERIMENT_URL),
    ("next_trial_url", ANNOTATION_NEXT_TRIAL_URL),
    ("report_trial_url", ANNOTATION_REPORT_TRIAL_URL),
)


@dataclass
class RemoteLinks:
    """Typed view of the remote linkage cached in a record's annotations."""

    experiment_url: str = ""
    next_trial_url: str = ""
    report_trial_url: str = ""

    @classmethod
    def of(cls, metadata: ObjectMeta) -> "RemoteLinks":
        annotations = metadata.annotations or {}
        return cls(**{field: annotations.get(key, "") for field, key in _FIELDS})

    def apply(self, metadata: ObjectMeta) -> bool:
        """Write the links back; an empty link removes its annotation."""
        if metadata.annotations is None:
            metadata.annotations = {}
        annotations = metadata.annotations
        changed = False
        for field, key in _FIELDS:
            value = getattr(self, field)
            if value:
                if annotations.get(key) != value:
                    annotations[key] = value
                    changed = True
            elif key in annotations:
                del annotations[key]
                changed = True
        return changed
