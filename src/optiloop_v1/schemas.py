from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

EXPERIMENT_LABEL = "optiloop.dev/experiment"

TRIAL_COMPLETE = "Complete"
TRIAL_FAILED = "Failed"
CONDITION_TRUE = "True"

METRIC_LOCAL = "local"
METRIC_PROMETHEUS = "prometheus"
METRIC_JSONPATH = "jsonpath"


class Lifecycle(str, Enum):
    ACTIVE = "Active"
    PENDING_DELETION = "PendingDeletion"
    FINALIZED = "Finalized"


class OwnerReference(BaseModel):
    kind: str
    name: str
    uid: str
    controller: bool = True


class ObjectReference(BaseModel):
    kind: str
    namespace: str = ""
    name: str


class ObjectMeta(BaseModel):
    name: str = ""
    generate_name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Optional[Dict[str, str]] = None
    finalizers: List[str] = Field(default_factory=list)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None

    def lifecycle(self) -> Lifecycle:
        if self.deletion_timestamp is None:
            return Lifecycle.ACTIVE
        if self.finalizers:
            return Lifecycle.PENDING_DELETION
        return Lifecycle.FINALIZED

    def deletion_blockers(self) -> List[str]:
        return list(self.finalizers)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [item for item in self.finalizers if item != finalizer]
        return True

    def controller_ref(self) -> Optional[OwnerReference]:
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None


class LabelSelectorRequirement(BaseModel):
    key: str
    operator: str
    values: List[str] = Field(default_factory=list)


class LabelSelector(BaseModel):
    match_labels: Dict[str, str] = Field(default_factory=dict)
    match_expressions: List[LabelSelectorRequirement] = Field(default_factory=list)


class Parameter(BaseModel):
    name: str
    min: int
    max: int


class MetricQuery(BaseModel):
    name: str
    minimize: bool = True
    type: str = METRIC_LOCAL
    query: str = ""
    url: str = ""


class Assignment(BaseModel):
    name: str
    value: Union[int, float]


class Value(BaseModel):
    name: str
    value: str
    error: str = ""


class Condition(BaseModel):
    type: str
    status: str = CONDITION_TRUE
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None


class TrialSpec(BaseModel):
    experiment_ref: Optional[ObjectReference] = None
    target_namespace: str = ""
    assignments: List[Assignment] = Field(default_factory=list)
    values: List[Value] = Field(default_factory=list)


class TrialStatus(BaseModel):
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    conditions: List[Condition] = Field(default_factory=list)


class Trial(BaseModel):
    kind: Literal["Trial"] = "Trial"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: TrialSpec = Field(default_factory=TrialSpec)
    status: TrialStatus = Field(default_factory=TrialStatus)

    def assignment_map(self) -> Dict[str, Union[int, float]]:
        return {item.name: item.value for item in self.spec.assignments}

    def value_map(self) -> Dict[str, str]:
        return {item.name: item.value for item in self.spec.values}

    def condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.status.conditions:
            if condition.type == condition_type:
                return condition
        return None


class TrialTemplate(BaseModel):
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: TrialSpec = Field(default_factory=TrialSpec)


class ExperimentSpec(BaseModel):
    replicas: Optional[int] = None
    parallelism: Optional[int] = None
    parameters: List[Parameter] = Field(default_factory=list)
    metrics: List[MetricQuery] = Field(default_factory=list)
    namespace_selector: Optional[LabelSelector] = None
    selector: Optional[LabelSelector] = None
    template: TrialTemplate = Field(default_factory=TrialTemplate)


class Experiment(BaseModel):
    kind: Literal["Experiment"] = "Experiment"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: ExperimentSpec = Field(default_factory=ExperimentSpec)

    def get_replicas(self) -> int:
        if self.spec.replicas is None:
            return 1
        return self.spec.replicas

    def set_replicas(self, replicas: int) -> None:
        self.spec.replicas = replicas

    def default_labels(self) -> Dict[str, str]:
        return {EXPERIMENT_LABEL: self.metadata.name}

    def self_reference(self) -> ObjectReference:
        return ObjectReference(
            kind=self.kind, namespace=self.metadata.namespace, name=self.metadata.name
        )

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(kind=self.kind, name=self.metadata.name, uid=self.metadata.uid)


class Namespace(BaseModel):
    kind: Literal["Namespace"] = "Namespace"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)


Record = Union[Experiment, Trial, Namespace]
