from __future__ import annotations

from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

PARAMETER_TYPE_INTEGER = "int"
PARAMETER_TYPE_DOUBLE = "double"


class RemoteModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Optimization(RemoteModel):
    parallel_trials: int = Field(default=0, alias="parallelTrials")


class Bounds(RemoteModel):
    min: Union[int, float]
    max: Union[int, float]


class RemoteParameter(RemoteModel):
    type: str = PARAMETER_TYPE_INTEGER
    name: str
    bounds: Bounds


class RemoteMetric(RemoteModel):
    name: str
    minimize: bool = True


class RemoteExperiment(RemoteModel):
    optimization: Optimization = Field(default_factory=Optimization)
    parameters: List[RemoteParameter] = Field(default_factory=list)
    metrics: List[RemoteMetric] = Field(default_factory=list)
    # Populated from response links, never sent.
    self_ref: str = Field(default="", exclude=True)
    generate_ref: str = Field(default="", exclude=True)
    trials_ref: str = Field(default="", exclude=True)


class RemoteAssignment(RemoteModel):
    parameter_name: str = Field(alias="parameterName")
    value: Union[int, float]


class TrialAssignments(RemoteModel):
    assignments: List[RemoteAssignment] = Field(default_factory=list)

    def as_mapping(self) -> dict:
        return {item.parameter_name: item.value for item in self.assignments}


class ObservedValue(RemoteModel):
    metric_name: str = Field(alias="metricName")
    value: float
    error: Optional[float] = None


class TrialValues(RemoteModel):
    values: List[ObservedValue] = Field(default_factory=list)
    failed: bool = False
