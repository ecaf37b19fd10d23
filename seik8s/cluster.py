"""An in-memory object store with the semantics the reconcilers rely on."""

from __future__ import annotations

import copy
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .meta import object_kind, object_meta


class ApiError(Exception):
    """Base error raised by the cluster."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ApiError):
    """An object with that name already exists."""


class NoKindMatchError(ApiError):
    """The kind is not served by the cluster (its CRD is not installed)."""


@dataclass(frozen=True)
class Result:
    """Outcome of a reconcile: seconds until the next poll, 0 for none."""

    requeue_after: float = 0.0


@dataclass(frozen=True)
class Event:
    object_name: str
    type: str
    reason: str
    message: str


@dataclass
class EventRecorder:
    """Collects events emitted against objects."""

    events: list[Event] = field(default_factory=list)

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        self.events.append(Event(object_meta(obj).name, event_type, reason, message))

    def reasons(self) -> list[str]:
        return [e.reason for e in self.events]


class Cluster:
    """Stores objects by kind, namespace and name."""

    def __init__(self, missing_kinds: Iterable[str] = ()) -> None:
        self._missing = frozenset(missing_kinds)
        self._objects: dict[tuple[str, str, str], Any] = {}
        self._version = 0

    def _check_kind(self, kind: str) -> None:
        if kind in self._missing:
            raise NoKindMatchError(f"no matches for kind {kind!r}")

    def _key(self, obj: Any) -> tuple[str, str, str]:
        kind = object_kind(obj)
        self._check_kind(kind)
        meta = object_meta(obj)
        return kind, meta.namespace, meta.name

    def _bump(self, obj: Any) -> None:
        self._version += 1
        object_meta(obj).resource_version = self._version

    def _stored(self, key: tuple[str, str, str]) -> Any:
        try:
            return self._objects[key]
        except KeyError:
            raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found") from None

    def get(self, kind: str, namespace: str, name: str) -> Any:
        self._check_kind(kind)
        return copy.deepcopy(self._stored((kind, namespace, name)))

    def create(self, obj: Any) -> None:
        key = self._key(obj)
        if key in self._objects:
            raise AlreadyExistsError(f"{key[0]} {key[1]}/{key[2]} already exists")
        meta = object_meta(obj)
        if not meta.uid:
            meta.uid = uuid.uuid4().hex
        if meta.generation == 0:
            meta.generation = 1
        self._bump(obj)
        self._objects[key] = copy.deepcopy(obj)

    def update(self, obj: Any) -> None:
        """Replace an object, keeping its stored status."""
        key = self._key(obj)
        stored = self._stored(key)
        new = copy.deepcopy(obj)
        if hasattr(stored, "status"):
            new.status = copy.deepcopy(stored.status)
        new_meta = object_meta(new)
        stored_meta = object_meta(stored)
        new_meta.uid = stored_meta.uid
        new_meta.deletion_timestamp = stored_meta.deletion_timestamp
        self._bump(obj)
        new_meta.resource_version = object_meta(obj).resource_version
        if new_meta.deletion_timestamp is not None and not new_meta.finalizers:
            del self._objects[key]
            return
        self._objects[key] = new

    def update_status(self, obj: Any) -> None:
        """Replace only the status of a stored object."""
        key = self._key(obj)
        stored = self._stored(key)
        stored.status = copy.deepcopy(obj.status)
        self._bump(stored)
        object_meta(obj).resource_version = object_meta(stored).resource_version

    def apply(self, obj: Any) -> None:
        """Create or wholly replace an object, keeping its identity."""
        key = self._key(obj)
        if key not in self._objects:
            self.create(obj)
            return
        stored_meta = object_meta(self._objects[key])
        new = copy.deepcopy(obj)
        new_meta = object_meta(new)
        new_meta.uid = stored_meta.uid
        new_meta.generation = stored_meta.generation
        self._bump(new)
        self._objects[key] = new

    def delete(self, obj: Any) -> None:
        key = self._key(obj)
        self._delete_key(key)

    def delete_named(self, kind: str, namespace: str, name: str) -> None:
        self._check_kind(kind)
        self._delete_key((kind, namespace, name))

    def _delete_key(self, key: tuple[str, str, str]) -> None:
        stored = self._stored(key)
        meta = object_meta(stored)
        if meta.finalizers:
            if meta.deletion_timestamp is None:
                meta.deletion_timestamp = datetime.now(timezone.utc)
                self._bump(stored)
            return
        del self._objects[key]

    def list(
        self, kind: str, namespace: str, labels: Mapping[str, str] | None = None
    ) -> list[Any]:
        """Objects of a kind in a namespace whose labels include ``labels``."""
        self._check_kind(kind)
        wanted = dict(labels or {})
        found = [
            copy.deepcopy(obj)
            for (k, ns, _), obj in self._objects.items()
            if k == kind
            and ns == namespace
            and all(object_meta(obj).labels.get(lk) == lv for lk, lv in wanted.items())
        ]
        return sorted(found, key=lambda o: object_meta(o).name)