from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type

from ..schemas import Experiment, LabelSelector, Namespace, Record, Trial
from ..selectors import matches, validate_selector
from ..utils import read_json, short_hash, utcnow, write_json

logger = logging.getLogger(__name__)

STORE_SCHEMA_VERSION = "v1"

KIND_MODELS: Dict[str, Type[Record]] = {
    "Experiment": Experiment,
    "Trial": Trial,
    "Namespace": Namespace,
}

Key = Tuple[str, str, str]


class StoreError(Exception):
    pass


class NotFoundError(StoreError):
    pass


class AlreadyExistsError(StoreError):
    pass


class ConflictError(StoreError):
    pass


def _key(record: Record) -> Key:
    namespace = "" if record.kind == "Namespace" else record.metadata.namespace
    return (record.kind, namespace, record.metadata.name)


class InMemoryStore:
    """Record store with optimistic concurrency and finalizer-gated deletion.

    Reads hand out deep copies; writes must carry the resource version they
    were read at. A record marked for deletion is physically removed only when
    its finalizers are gone and no other record names it as an owner.
    """

    def __init__(self) -> None:
        self._records: Dict[Key, Record] = {}
        self._sequence = 0

    def _bump(self) -> str:
        self._sequence += 1
        return str(self._sequence)

    def get(self, kind: str, namespace: str, name: str) -> Record:
        key = (kind, "" if kind == "Namespace" else namespace, name)
        record = self._records.get(key)
        if record is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")
        return record.model_copy(deep=True)

    def get_experiment(self, namespace: str, name: str) -> Experiment:
        record = self.get("Experiment", namespace, name)
        if not isinstance(record, Experiment):
            raise StoreError(f"Experiment {namespace}/{name} holds a {record.kind}")
        return record

    def get_trial(self, namespace: str, name: str) -> Trial:
        record = self.get("Trial", namespace, name)
        if not isinstance(record, Trial):
            raise StoreError(f"Trial {namespace}/{name} holds a {record.kind}")
        return record

    def list(
        self,
        kind: str,
        selector: Optional[LabelSelector] = None,
        namespace: Optional[str] = None,
    ) -> List[Record]:
        if selector is not None:
            validate_selector(selector)
        items: List[Record] = []
        for (record_kind, record_namespace, _), record in self._records.items():
            if record_kind != kind:
                continue
            if namespace is not None and record_namespace != namespace:
                continue
            if not matches(selector, record.metadata.labels):
                continue
            items.append(record.model_copy(deep=True))
        return items

    def create(self, record: Record) -> Record:
        record = record.model_copy(deep=True)
        meta = record.metadata
        if record.kind == "Namespace":
            meta.namespace = ""
        elif not meta.namespace:
            raise StoreError(f"{record.kind} requires a namespace")
        if not meta.name:
            if not meta.generate_name:
                raise StoreError(f"{record.kind} requires a name or generate_name")
            meta.name = meta.generate_name + short_hash(
                {"generate_name": meta.generate_name, "seq": self._sequence}
            )
        key = _key(record)
        if key in self._records:
            raise AlreadyExistsError(f"{record.kind} {meta.namespace}/{meta.name} already exists")
        meta.uid = short_hash({"key": list(key), "seq": self._sequence}, 16)
        meta.resource_version = self._bump()
        meta.creation_timestamp = utcnow()
        meta.deletion_timestamp = None
        self._records[key] = record
        return record.model_copy(deep=True)

    def update(self, record: Record) -> Record:
        key = _key(record)
        current = self._records.get(key)
        if current is None:
            raise NotFoundError(f"{record.kind} {key[1]}/{key[2]} not found")
        if record.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(
                f"{record.kind} {key[1]}/{key[2]} was modified "
                f"(have {record.metadata.resource_version}, "
                f"current {current.metadata.resource_version})"
            )
        updated = record.model_copy(deep=True)
        updated.metadata.uid = current.metadata.uid
        updated.metadata.creation_timestamp = current.metadata.creation_timestamp
        updated.metadata.deletion_timestamp = current.metadata.deletion_timestamp
        updated.metadata.resource_version = self._bump()
        self._records[key] = updated
        self._collect(key)
        return updated.model_copy(deep=True)

    def delete(self, record: Record) -> None:
        key = _key(record)
        current = self._records.get(key)
        if current is None:
            raise NotFoundError(f"{record.kind} {key[1]}/{key[2]} not found")
        if current.metadata.deletion_timestamp is None:
            current.metadata.deletion_timestamp = utcnow()
            current.metadata.resource_version = self._bump()
        self._collect(key)

    def _has_dependents(self, uid: str) -> bool:
        for record in self._records.values():
            if any(ref.uid == uid for ref in record.metadata.owner_references):
                return True
        return False

    def _collect(self, key: Key) -> None:
        record = self._records.get(key)
        if record is None or record.metadata.deletion_timestamp is None:
            return
        if record.metadata.deletion_blockers() or self._has_dependents(record.metadata.uid):
            return
        del self._records[key]
        logger.debug("removed %s %s/%s", key[0], key[1], key[2])
        for ref in record.metadata.owner_references:
            for owner_key, owner in list(self._records.items()):
                if owner.metadata.uid == ref.uid:
                    self._collect(owner_key)

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "schema_version": STORE_SCHEMA_VERSION,
            "sequence": self._sequence,
            "records": [record.model_dump(mode="json") for record in self._records.values()],
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "InMemoryStore":
        store = cls()
        store._sequence = int(data.get("sequence", 0))
        for item in data.get("records", []):
            kind = item.get("kind")
            model = KIND_MODELS.get(kind)
            if model is None:
                raise StoreError(f"unknown record kind in snapshot: {kind!r}")
            record = model.model_validate(item)
            store._records[_key(record)] = record
        return store

    def save(self, path: Path) -> None:
        write_json(path, self.to_snapshot())

    @classmethod
    def load(cls, path: Path) -> "InMemoryStore":
        if not path.exists():
            return cls()
        data = read_json(path)
        if not isinstance(data, dict):
            raise StoreError(f"state file {path} is not a JSON object")
        return cls.from_snapshot(data)
