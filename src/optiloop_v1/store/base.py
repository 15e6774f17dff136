from __future__ import annotations

from typing import List, Optional, Protocol

from ..schemas import Experiment, LabelSelector, Record, Trial


class ObjectStore(Protocol):
    def get(self, kind: str, namespace: str, name: str) -> Record:
        ...

    def get_experiment(self, namespace: str, name: str) -> Experiment:
        ...

    def get_trial(self, namespace: str, name: str) -> Trial:
        ...

    def list(
        self,
        kind: str,
        selector: Optional[LabelSelector] = None,
        namespace: Optional[str] = None,
    ) -> List[Record]:
        ...

    def create(self, record: Record) -> Record:
        ...

    def update(self, record: Record) -> Record:
        ...

    def delete(self, record: Record) -> None:
        ...
