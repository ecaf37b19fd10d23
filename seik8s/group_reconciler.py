"""Reconciliation of SeiNodeGroup objects against a cluster."""

from __future__ import annotations

import logging
import re
from typing import Any

from .api import (
    DeletionPolicy,
    GroupNodeStatus,
    SeiNode,
    SeiNodeGroup,
    SeiNodeGroupPhase,
    SeiNodePhase,
)
from .cluster import ApiError, Cluster, EventRecorder, NoKindMatchError, NotFoundError, Result
from .group_resources import (
    AUTHORIZATION_POLICY_KIND,
    CONDITION_EXTERNAL_SERVICE_READY,
    CONDITION_ISOLATION_READY,
    CONDITION_ROUTE_READY,
    CONDITION_SERVICE_MONITOR_READY,
    GROUP_ORDINAL_LABEL,
    HTTP_ROUTE_KIND,
    SERVICE_KIND,
    SERVICE_MONITOR_KIND,
    build_networking_status,
    compute_group_phase,
    external_service_name,
    generate_authorization_policy,
    generate_external_service,
    generate_http_route,
    generate_sei_node,
    generate_service_monitor,
    group_selector,
    set_external_service_condition,
    set_group_condition,
    set_nodes_ready_condition,
)
from .meta import (
    ConditionStatus,
    has_condition_reason,
    is_controlled_by,
    object_meta,
    remove_condition,
    set_controller_reference,
)

GROUP_FINALIZER_NAME = "sei.io/seinodegroup-finalizer"
STATUS_POLL_INTERVAL = 30.0

GROUP_KIND = "SeiNodeGroup"
NODE_KIND = "SeiNode"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

_UNSTRUCTURED_KINDS = (HTTP_ROUTE_KIND, AUTHORIZATION_POLICY_KIND, SERVICE_MONITOR_KIND)
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")

_log = logging.getLogger(__name__)


def _parse_ordinal(value: str) -> int | None:
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else None


def _same_map(a: dict[str, str] | None, b: dict[str, str] | None) -> bool:
    return (a or {}) == (b or {})


class SeiNodeGroupReconciler:
    """Drives a SeiNodeGroup towards its child SeiNodes, networking and monitoring."""

    def __init__(
        self,
        cluster: Cluster,
        recorder: EventRecorder | None = None,
        controller_sa: str = "",
    ) -> None:
        self._cluster = cluster
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.controller_sa = controller_sa

    def reconcile(self, namespace: str, name: str) -> Result:
        """Run one reconciliation pass for the named group."""
        try:
            group = self._cluster.get(GROUP_KIND, namespace, name)
        except NotFoundError:
            return Result()

        if group.metadata.deletion_timestamp is not None:
            return self._handle_deletion(group)

        self._ensure_finalizer(group)

        try:
            self._reconcile_sei_nodes(group)
        except Exception:
            _log.exception("reconciling SeiNodes")
            raise
        try:
            self._reconcile_networking(group)
        except Exception:
            _log.exception("reconciling networking")
            raise
        try:
            self._reconcile_monitoring(group)
        except Exception:
            _log.exception("reconciling monitoring")
            raise

        self.update_status(group)
        return Result(requeue_after=STATUS_POLL_INTERVAL)

    # --- finalizer and deletion ---

    def _ensure_finalizer(self, group: SeiNodeGroup) -> None:
        if group.metadata.add_finalizer(GROUP_FINALIZER_NAME):
            self._cluster.update(group)

    def _handle_deletion(self, group: SeiNodeGroup) -> Result:
        if not group.metadata.contains_finalizer(GROUP_FINALIZER_NAME):
            return Result()

        group.status.phase = SeiNodeGroupPhase.TERMINATING.value
        self._cluster.update_status(group)

        policy = group.spec.deletion_policy or DeletionPolicy.DELETE
        if policy == DeletionPolicy.RETAIN:
            self.recorder.event(
                group, EVENT_NORMAL, "RetainResources",
                "Orphaning child SeiNodes and networking resources",
            )
            self._orphan_child_sei_nodes(group)
            self._orphan_networking_resources(group)
        else:
            try:
                self._delete_networking_resources(group)
            except ApiError as err:
                self.recorder.event(
                    group, EVENT_WARNING, "DeleteFailed",
                    f"Failed to clean up networking resources: {err}",
                )
                raise

        group.metadata.remove_finalizer(GROUP_FINALIZER_NAME)
        self._cluster.update(group)
        return Result()

    # --- child SeiNodes ---

    def _reconcile_sei_nodes(self, group: SeiNodeGroup) -> None:
        for ordinal in range(group.spec.replicas):
            self._ensure_sei_node(group, ordinal)
        self._scale_down(group)

    def _ensure_sei_node(self, group: SeiNodeGroup, ordinal: int) -> None:
        desired = generate_sei_node(group, ordinal)
        set_controller_reference(group, desired)
        meta = desired.metadata
        try:
            existing: SeiNode = self._cluster.get(NODE_KIND, meta.namespace, meta.name)
        except NotFoundError:
            self._cluster.create(desired)
            self.recorder.event(group, EVENT_NORMAL, "SeiNodeCreated", f"Created SeiNode {meta.name}")
            return

        updated = False
        if not _same_map(existing.metadata.labels, desired.metadata.labels):
            existing.metadata.labels = desired.metadata.labels
            updated = True
        if not _same_map(existing.metadata.annotations, desired.metadata.annotations):
            existing.metadata.annotations = desired.metadata.annotations
            updated = True

        spec, want = existing.spec, desired.spec
        if spec.image != want.image:
            spec.image = want.image
            updated = True

        if want.entrypoint is None:
            if spec.entrypoint is not None:
                spec.entrypoint = None
                updated = True
        elif (
            spec.entrypoint is None
            or spec.entrypoint.command != want.entrypoint.command
            or spec.entrypoint.args != want.entrypoint.args
        ):
            spec.entrypoint = want.entrypoint
            updated = True

        if want.sidecar is None:
            if spec.sidecar is not None:
                spec.sidecar = None
                updated = True
        elif (
            spec.sidecar is None
            or spec.sidecar.image != want.sidecar.image
            or spec.sidecar.port != want.sidecar.port
        ):
            spec.sidecar = want.sidecar
            updated = True

        if not _same_map(spec.pod_labels, want.pod_labels):
            spec.pod_labels = want.pod_labels
            updated = True

        if updated:
            self._cluster.update(existing)

    def _scale_down(self, group: SeiNodeGroup) -> None:
        """Delete controlled SeiNodes whose ordinal is at or above the replica count."""
        replicas = group.spec.replicas
        if replicas <= 0:
            _log.info("refusing scale-down: desired replicas is zero or negative")
            return

        nodes: list[SeiNode] = self._cluster.list(
            NODE_KIND, group.metadata.namespace, group_selector(group)
        )
        for node in nodes:
            if not is_controlled_by(node, group):
                continue
            label = node.metadata.labels.get(GROUP_ORDINAL_LABEL, "")
            if not label:
                continue
            ordinal = _parse_ordinal(label)
            if ordinal is None or ordinal < replicas:
                continue
            try:
                self._cluster.delete(node)
            except NotFoundError:
                pass
            self.recorder.event(
                group, EVENT_NORMAL, "SeiNodeDeleted", f"Scaled down SeiNode {node.metadata.name}"
            )

    def list_child_sei_nodes(self, group: SeiNodeGroup) -> list[SeiNode]:
        """SeiNodes carrying the group's label and controlled by it."""
        nodes: list[SeiNode] = self._cluster.list(
            NODE_KIND, group.metadata.namespace, group_selector(group)
        )
        return [n for n in nodes if is_controlled_by(n, group)]

    def _orphan_child_sei_nodes(self, group: SeiNodeGroup) -> None:
        for node in self.list_child_sei_nodes(group):
            self._remove_owner_ref(node, group)

    def _remove_owner_ref(self, obj: Any, owner: SeiNodeGroup) -> None:
        meta = object_meta(obj)
        kept = [r for r in meta.owner_references if r.uid != owner.metadata.uid]
        if len(kept) == len(meta.owner_references):
            return
        meta.owner_references = kept
        self._cluster.update(obj)

    # --- networking ---

    def _reconcile_networking(self, group: SeiNodeGroup) -> None:
        if group.spec.networking is None:
            for cond_type in (
                CONDITION_EXTERNAL_SERVICE_READY,
                CONDITION_ROUTE_READY,
                CONDITION_ISOLATION_READY,
            ):
                remove_condition(group.status.conditions, cond_type)
            self._delete_networking_resources(group)
            return
        self._reconcile_external_service(group)
        self._reconcile_route(group)
        self._reconcile_isolation(group)

    def _reconcile_external_service(self, group: SeiNodeGroup) -> None:
        if group.spec.networking.service is None:
            remove_condition(group.status.conditions, CONDITION_EXTERNAL_SERVICE_READY)
            self._delete_external_service(group)
            return
        desired = generate_external_service(group)
        set_controller_reference(group, desired)
        self._cluster.apply(desired)

    def _apply_optional(
        self,
        group: SeiNodeGroup,
        desired: Any,
        cond_type: str,
        missing_message: str,
    ) -> bool:
        """Apply an object whose CRD may be absent; return False if it is absent."""
        set_controller_reference(group, desired)
        try:
            self._cluster.apply(desired)
        except NoKindMatchError:
            if not has_condition_reason(group.status.conditions, cond_type, "CRDNotInstalled"):
                self.recorder.event(group, EVENT_WARNING, "CRDNotInstalled", missing_message[0])
            set_group_condition(
                group, cond_type, ConditionStatus.FALSE, "CRDNotInstalled", missing_message[1]
            )
            return False
        return True

    def _mark_ready(self, group: SeiNodeGroup, cond_type: str, reason: str, message: str) -> None:
        if not has_condition_reason(group.status.conditions, cond_type, reason):
            self.recorder.event(group, EVENT_NORMAL, reason, message)
        set_group_condition(group, cond_type, ConditionStatus.TRUE, reason, message)

    def _reconcile_route(self, group: SeiNodeGroup) -> None:
        if group.spec.networking.gateway is None:
            remove_condition(group.status.conditions, CONDITION_ROUTE_READY)
            self._delete_unstructured(group, HTTP_ROUTE_KIND)
            return
        applied = self._apply_optional(
            group,
            generate_http_route(group),
            CONDITION_ROUTE_READY,
            (
                "Gateway API CRD (HTTPRoute) is not installed; HTTPRoute will not be created",
                "Gateway API CRD (HTTPRoute) is not installed",
            ),
        )
        if applied:
            self._mark_ready(
                group, CONDITION_ROUTE_READY, "HTTPRouteReady", "HTTPRoute reconciled successfully"
            )

    def _reconcile_isolation(self, group: SeiNodeGroup) -> None:
        isolation = group.spec.networking.isolation
        if isolation is None or isolation.authorization_policy is None:
            remove_condition(group.status.conditions, CONDITION_ISOLATION_READY)
            self._delete_unstructured(group, AUTHORIZATION_POLICY_KIND)
            return

        if not self.controller_sa:
            if not has_condition_reason(
                group.status.conditions, CONDITION_ISOLATION_READY, "ControllerSAMissing"
            ):
                self.recorder.event(
                    group, EVENT_WARNING, "ControllerSAMissing",
                    "SEI_CONTROLLER_SA_PRINCIPAL is not set; AuthorizationPolicy will not "
                    "include controller SA, sidecar communication may be blocked",
                )
            set_group_condition(
                group, CONDITION_ISOLATION_READY, ConditionStatus.FALSE, "ControllerSAMissing",
                "SEI_CONTROLLER_SA_PRINCIPAL env var is not set; controller SA will not be "
                "injected into AuthorizationPolicy",
            )

        applied = self._apply_optional(
            group,
            generate_authorization_policy(group, self.controller_sa),
            CONDITION_ISOLATION_READY,
            (
                "Istio CRD (AuthorizationPolicy) is not installed; isolation will not be enforced",
                "Istio CRD (AuthorizationPolicy) is not installed",
            ),
        )
        if applied and self.controller_sa:
            self._mark_ready(
                group, CONDITION_ISOLATION_READY, "AuthorizationPolicyReady",
                "AuthorizationPolicy reconciled successfully",
            )

    # --- monitoring ---

    def _reconcile_monitoring(self, group: SeiNodeGroup) -> None:
        monitoring = group.spec.monitoring
        if monitoring is None or monitoring.service_monitor is None:
            remove_condition(group.status.conditions, CONDITION_SERVICE_MONITOR_READY)
            self._delete_unstructured(group, SERVICE_MONITOR_KIND)
            return
        applied = self._apply_optional(
            group,
            generate_service_monitor(group),
            CONDITION_SERVICE_MONITOR_READY,
            (
                "Prometheus Operator CRD (ServiceMonitor) is not installed; "
                "monitoring will not be configured",
                "Prometheus Operator CRD (ServiceMonitor) is not installed",
            ),
        )
        if applied:
            self._mark_ready(
                group, CONDITION_SERVICE_MONITOR_READY, "ServiceMonitorReady",
                "ServiceMonitor reconciled successfully",
            )

    # --- cleanup helpers ---

    def _delete_external_service(self, group: SeiNodeGroup) -> None:
        try:
            svc = self._cluster.get(
                SERVICE_KIND, group.metadata.namespace, external_service_name(group)
            )
        except NotFoundError:
            return
        try:
            self._cluster.delete(svc)
        except NotFoundError:
            pass

    def _delete_unstructured(self, group: SeiNodeGroup, kind: str) -> None:
        try:
            self._cluster.delete_named(kind, group.metadata.namespace, group.metadata.name)
        except (NotFoundError, NoKindMatchError):
            pass

    def _delete_networking_resources(self, group: SeiNodeGroup) -> None:
        self._delete_external_service(group)
        for kind in _UNSTRUCTURED_KINDS:
            self._delete_unstructured(group, kind)

    def _orphan_networking_resources(self, group: SeiNodeGroup) -> None:
        namespace = group.metadata.namespace
        try:
            svc = self._cluster.get(SERVICE_KIND, namespace, external_service_name(group))
        except NotFoundError:
            pass
        else:
            self._remove_owner_ref(svc, group)

        for kind in _UNSTRUCTURED_KINDS:
            try:
                obj = self._cluster.get(kind, namespace, group.metadata.name)
            except (NotFoundError, NoKindMatchError):
                continue
            self._remove_owner_ref(obj, group)

    # --- status ---

    def _fetch_external_service(self, group: SeiNodeGroup) -> tuple[Any, ApiError | None]:
        networking = group.spec.networking
        if networking is None or networking.service is None:
            return None, None
        try:
            svc = self._cluster.get(
                SERVICE_KIND, group.metadata.namespace, external_service_name(group)
            )
        except NotFoundError:
            return None, None
        except ApiError as err:
            _log.error("fetching external Service for status: %s", err)
            return None, err
        return svc, None

    def update_status(self, group: SeiNodeGroup) -> None:
        """Aggregate child SeiNodes and networking into the group's status."""
        nodes = self.list_child_sei_nodes(group)
        ready = sum(1 for n in nodes if n.status.phase == SeiNodePhase.RUNNING)
        desired = group.spec.replicas

        status = group.status
        status.observed_generation = group.metadata.generation
        status.replicas = desired
        status.ready_replicas = ready
        status.nodes = [GroupNodeStatus(name=n.metadata.name, phase=n.status.phase) for n in nodes]
        status.phase = compute_group_phase(ready, desired, nodes).value

        svc, fetch_error = self._fetch_external_service(group)
        status.networking_status = build_networking_status(group, svc)

        set_nodes_ready_condition(group, ready, desired, nodes)
        set_external_service_condition(group, svc, fetch_error)

        self._cluster.update_status(group)