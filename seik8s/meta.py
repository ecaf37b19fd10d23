"""Object metadata, status conditions and ownership helpers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class ConditionStatus(str, enum.Enum):
    """Status value of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """One entry of an object's status conditions."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: datetime | None = None


@dataclass
class OwnerReference:
    """Reference from a dependent object to its owner."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False


@dataclass
class ObjectMeta:
    """Metadata shared by every stored object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    generation: int = 0
    resource_version: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] | None = None
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    deletion_timestamp: datetime | None = None

    def contains_finalizer(self, name: str) -> bool:
        return name in self.finalizers

    def add_finalizer(self, name: str) -> bool:
        """Add a finalizer; return True if the list changed."""
        if name in self.finalizers:
            return False
        self.finalizers.append(name)
        return True

    def remove_finalizer(self, name: str) -> bool:
        """Remove a finalizer; return True if the list changed."""
        if name not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != name]
        return True


@dataclass
class Unstructured:
    """A free-form object held as a nested dictionary."""

    object: dict[str, Any]
    _meta: ObjectMeta = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        md = self.object.setdefault("metadata", {})
        labels = md.setdefault("labels", {})
        annotations = md.setdefault("annotations", {})
        self._meta = ObjectMeta(
            name=md.get("name", ""),
            namespace=md.get("namespace", ""),
            labels=labels,
            annotations=annotations,
        )

    def kind(self) -> str:
        return self.object.get("kind", "")

    def metadata(self) -> ObjectMeta:
        return self._meta


def object_kind(obj: Any) -> str:
    """Kind of a typed or unstructured object."""
    if isinstance(obj, Unstructured):
        return obj.kind()
    return obj.kind


def object_meta(obj: Any) -> ObjectMeta:
    """Metadata of a typed or unstructured object."""
    if isinstance(obj, Unstructured):
        return obj.metadata()
    return obj.metadata


def _api_version(obj: Any) -> str:
    if isinstance(obj, Unstructured):
        return obj.object.get("apiVersion", "")
    return getattr(obj, "api_version", "")


def find_condition(conditions: list[Condition], cond_type: str) -> Condition | None:
    return next((c for c in conditions if c.type == cond_type), None)


def set_condition(conditions: list[Condition], condition: Condition) -> bool:
    """Insert or update a condition in place; return True if anything changed."""
    existing = find_condition(conditions, condition.type)
    if existing is None:
        if condition.last_transition_time is None:
            condition.last_transition_time = datetime.now(timezone.utc)
        conditions.append(condition)
        return True
    changed = False
    if existing.status != condition.status:
        existing.status = condition.status
        existing.last_transition_time = condition.last_transition_time or datetime.now(
            timezone.utc
        )
        changed = True
    for attr in ("reason", "message", "observed_generation"):
        value = getattr(condition, attr)
        if getattr(existing, attr) != value:
            setattr(existing, attr, value)
            changed = True
    return changed


def remove_condition(conditions: list[Condition], cond_type: str) -> bool:
    """Remove a condition by type; return True if one was removed."""
    kept = [c for c in conditions if c.type != cond_type]
    removed = len(kept) != len(conditions)
    conditions[:] = kept
    return removed


def has_condition_reason(conditions: list[Condition], cond_type: str, reason: str) -> bool:
    found = find_condition(conditions, cond_type)
    return found is not None and found.reason == reason


def set_controller_reference(owner: Any, obj: Any) -> None:
    """Make ``owner`` the controlling owner of ``obj``.

    Raises ValueError if another object already controls ``obj`` or if the
    two live in different namespaces.
    """
    owner_meta = object_meta(owner)
    obj_meta = object_meta(obj)
    if owner_meta.namespace and owner_meta.namespace != obj_meta.namespace:
        raise ValueError(
            f"cross-namespace owner references are disallowed: owner "
            f"{owner_meta.namespace}/{owner_meta.name}, object "
            f"{obj_meta.namespace}/{obj_meta.name}"
        )
    ref = OwnerReference(
        api_version=_api_version(owner),
        kind=object_kind(owner),
        name=owner_meta.name,
        uid=owner_meta.uid,
        controller=True,
        block_owner_deletion=True,
    )
    for current in obj_meta.owner_references:
        if current.controller and current.uid != ref.uid:
            raise ValueError(
                f"object {obj_meta.name} is already owned by {current.kind} {current.name}"
            )
    obj_meta.owner_references = [
        r for r in obj_meta.owner_references if r.uid != ref.uid
    ] + [ref]


def is_controlled_by(obj: Any, owner: Any) -> bool:
    uid = object_meta(owner).uid
    return any(r.controller and r.uid == uid for r in object_meta(obj).owner_references)