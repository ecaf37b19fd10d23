"""Reconciliation of SeiNodePool objects against a cluster."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from .api import NodeStatus, SeiNode, SeiNodePhase, SeiNodePool
from .cluster import Cluster, NotFoundError, Result
from .meta import ConditionStatus, object_meta, set_controller_reference
from .pool_resources import (
    CONDITION_TYPE_READY,
    REASON_GENESIS_JOB_FAILED,
    REASON_PREP_JOB_FAILED,
    apply_status_conditions,
    generate_data_pvc,
    generate_genesis_job,
    generate_genesis_pvc,
    generate_genesis_script_config_map,
    generate_network_policy,
    generate_prep_job,
    generate_sei_node,
    genesis_job_name,
    is_job_complete,
    is_job_failed,
    job_failure_message,
    node_ordinal,
    nodepool_phase,
    resource_labels,
    set_pool_condition,
)

FINALIZER_NAME = "sei.io/seinodepool-finalizer"
GRACEFUL_SHUTDOWN_TIMEOUT = timedelta(seconds=60)
STATUS_POLL_INTERVAL = 30.0
GENESIS_JOB_POLL_INTERVAL = 10.0
DELETION_POLL_INTERVAL = 5.0

POOL_KIND = "SeiNodePool"
NODE_KIND = "SeiNode"
PVC_KIND = "PersistentVolumeClaim"
JOB_KIND = "Job"


class PoolFailedError(Exception):
    """A preparation job failed; the pool has been marked Failed."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(f"{reason}: {message}")
        self.reason = reason
        self.message = message


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SeiNodePoolReconciler:
    """Drives a SeiNodePool towards its desired set of child objects."""

    def __init__(
        self,
        cluster: Cluster,
        genesis_script: str,
        prep_script: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cluster = cluster
        self._genesis_script = genesis_script
        self._prep_script = prep_script
        self._clock = clock or _utc_now

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run one reconciliation pass for the named pool."""
        try:
            pool = self._cluster.get(POOL_KIND, namespace, name)
        except NotFoundError:
            return Result()

        if pool.metadata.deletion_timestamp is not None:
            return self._handle_deletion(pool)

        self._ensure_finalizer(pool)

        if not self._reconcile_data_preparation(pool):
            return Result(requeue_after=GENESIS_JOB_POLL_INTERVAL)

        self._reconcile_network_policy(pool)
        self._reconcile_sei_nodes(pool)
        self.update_status(pool)
        return Result(requeue_after=STATUS_POLL_INTERVAL)

    # --- finalizer and deletion ---

    def _ensure_finalizer(self, pool: SeiNodePool) -> None:
        if pool.metadata.add_finalizer(FINALIZER_NAME):
            self._cluster.update(pool)

    def _handle_deletion(self, pool: SeiNodePool) -> Result:
        if not pool.metadata.contains_finalizer(FINALIZER_NAME):
            return Result()

        pool.status.phase = SeiNodePhase.TERMINATING.value
        set_pool_condition(
            pool, CONDITION_TYPE_READY, ConditionStatus.FALSE,
            "Terminating", "SeiNodePool is being deleted",
        )
        self._cluster.update_status(pool)

        if not self._all_sei_nodes_gone(pool):
            age = self._clock() - pool.metadata.deletion_timestamp
            if age < GRACEFUL_SHUTDOWN_TIMEOUT:
                return Result(requeue_after=DELETION_POLL_INTERVAL)

        if not pool.spec.storage.retain_on_delete:
            self._delete_owned_pvcs(pool)

        pool.metadata.remove_finalizer(FINALIZER_NAME)
        self._cluster.update(pool)
        return Result()

    def _all_sei_nodes_gone(self, pool: SeiNodePool) -> bool:
        return not self._cluster.list(
            NODE_KIND, pool.metadata.namespace, resource_labels(pool)
        )

    def _delete_owned_pvcs(self, pool: SeiNodePool) -> None:
        for pvc in self._cluster.list(
            PVC_KIND, pool.metadata.namespace, resource_labels(pool)
        ):
            try:
                self._cluster.delete(pvc)
            except NotFoundError:
                pass

    # --- child objects ---

    def _create_if_missing(self, pool: SeiNodePool, desired: Any) -> Any | None:
        """Return the stored object, or create ``desired`` and return None."""
        set_controller_reference(pool, desired)
        meta = object_meta(desired)
        try:
            return self._cluster.get(desired.kind, meta.namespace, meta.name)
        except NotFoundError:
            self._cluster.create(desired)
            return None

    def _reconcile_data_preparation(self, pool: SeiNodePool) -> bool:
        node_count = pool.spec.node_configuration.node_count

        for ordinal in range(node_count):
            self._create_if_missing(pool, generate_data_pvc(pool, ordinal))
        self._create_if_missing(pool, generate_genesis_pvc(pool))
        self._ensure_genesis_script_config_map(pool)
        self._create_if_missing(pool, generate_genesis_job(pool))

        if not self._check_genesis_job_status(pool):
            return False

        prep_ready = [self._ensure_prep_job(pool, ordinal) for ordinal in range(node_count)]
        return all(prep_ready)

    def _ensure_genesis_script_config_map(self, pool: SeiNodePool) -> None:
        desired = generate_genesis_script_config_map(pool, self._genesis_script)
        existing = self._create_if_missing(pool, desired)
        if existing is None:
            return
        existing.data = desired.data
        existing.metadata.labels = desired.metadata.labels
        self._cluster.update(existing)

    def _check_genesis_job_status(self, pool: SeiNodePool) -> bool:
        job = self._cluster.get(JOB_KIND, pool.metadata.namespace, genesis_job_name(pool))
        if is_job_failed(job):
            detail = job_failure_message(job)
            message = f"Genesis Job failed: {detail}" if detail is not None else "Genesis Job failed"
            self._set_failed_status(pool, REASON_GENESIS_JOB_FAILED, message)
        return is_job_complete(job)

    def _ensure_prep_job(self, pool: SeiNodePool, ordinal: int) -> bool:
        desired = generate_prep_job(pool, ordinal, self._prep_script)
        existing = self._create_if_missing(pool, desired)
        if existing is None:
            return False
        if is_job_failed(existing):
            name = existing.metadata.name
            detail = job_failure_message(existing)
            message = (
                f"prep Job {name} failed: {detail}" if detail is not None
                else f"prep Job {name} failed"
            )
            self._set_failed_status(pool, REASON_PREP_JOB_FAILED, message)
        return is_job_complete(existing)

    def _set_failed_status(self, pool: SeiNodePool, reason: str, message: str) -> None:
        pool.status.phase = SeiNodePhase.FAILED.value
        set_pool_condition(pool, CONDITION_TYPE_READY, ConditionStatus.FALSE, reason, message)
        self._cluster.update_status(pool)
        raise PoolFailedError(reason, message)

    def _reconcile_network_policy(self, pool: SeiNodePool) -> None:
        desired = generate_network_policy(pool)
        existing = self._create_if_missing(pool, desired)
        if existing is None:
            return
        existing.spec = desired.spec
        existing.metadata.labels = desired.metadata.labels
        self._cluster.update(existing)

    def _reconcile_sei_nodes(self, pool: SeiNodePool) -> None:
        for ordinal in range(pool.spec.node_configuration.node_count):
            self._ensure_sei_node(pool, ordinal)
        self.scale_down(pool)

    def _ensure_sei_node(self, pool: SeiNodePool, ordinal: int) -> None:
        desired = generate_sei_node(pool, ordinal)
        existing = self._create_if_missing(pool, desired)
        if existing is None:
            return

        updated = False
        if existing.spec.image != desired.spec.image:
            existing.spec.image = desired.spec.image
            updated = True
        wanted = desired.spec.entrypoint
        current = existing.spec.entrypoint
        if wanted is not None and (
            current is None
            or current.command != wanted.command
            or current.args != wanted.args
        ):
            existing.spec.entrypoint = wanted
            updated = True
        if updated:
            self._cluster.update(existing)

    def scale_down(self, pool: SeiNodePool) -> None:
        """Delete child SeiNodes whose ordinal is at or above the node count."""
        desired = pool.spec.node_configuration.node_count
        nodes: list[SeiNode] = self._cluster.list(
            NODE_KIND, pool.metadata.namespace, resource_labels(pool)
        )
        for node in nodes:
            ordinal = node_ordinal(pool, node)
            if ordinal is None or ordinal < desired:
                continue
            try:
                self._cluster.delete(node)
            except NotFoundError:
                pass

    def update_status(self, pool: SeiNodePool) -> None:
        """Aggregate child SeiNode phases into the pool's status."""
        nodes: list[SeiNode] = self._cluster.list(
            NODE_KIND, pool.metadata.namespace, resource_labels(pool)
        )
        total = pool.spec.node_configuration.node_count
        statuses = [
            NodeStatus(name=n.metadata.name, ready=n.status.phase == SeiNodePhase.RUNNING)
            for n in nodes
        ]
        ready = sum(s.ready for s in statuses)

        pool.status.total_nodes = total
        pool.status.ready_nodes = ready
        pool.status.node_statuses = statuses
        pool.status.phase = nodepool_phase(ready, total, nodes)
        apply_status_conditions(pool, ready, total)
        self._cluster.update_status(pool)