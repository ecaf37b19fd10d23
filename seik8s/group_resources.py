"""Names, labels, generated child objects and status helpers for a SeiNodeGroup."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .api import (
    NetworkingStatus,
    SeiNode,
    SeiNodeGroup,
    SeiNodeGroupPhase,
    SeiNodePhase,
)
from .meta import Condition, ConditionStatus, ObjectMeta, Unstructured, set_condition

GROUP_LABEL = "sei.io/group"
GROUP_ORDINAL_LABEL = "sei.io/group-ordinal"
NODE_LABEL = "sei.io/node"
MANAGED_BY_ANNOTATION = "sei.io/managed-by"
CONTROLLER_NAME = "seinodegroup"

CONDITION_NODES_READY = "NodesReady"
CONDITION_EXTERNAL_SERVICE_READY = "ExternalServiceReady"
CONDITION_ROUTE_READY = "RouteReady"
CONDITION_ISOLATION_READY = "IsolationReady"
CONDITION_SERVICE_MONITOR_READY = "ServiceMonitorReady"

SERVICE_KIND = "Service"
HTTP_ROUTE_KIND = "HTTPRoute"
AUTHORIZATION_POLICY_KIND = "AuthorizationPolicy"
SERVICE_MONITOR_KIND = "ServiceMonitor"

SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"
DEFAULT_SCRAPE_INTERVAL = "30s"
PORT_RPC = 26657

# Named ports every node exposes, in the order they are published.
NODE_PORTS: tuple[tuple[str, int], ...] = (
    ("p2p", 26656),
    ("rpc", PORT_RPC),
    ("metrics", 26660),
    ("evm-rpc", 8545),
    ("evm-ws", 8546),
    ("grpc", 9090),
)

_INITIALIZING_PHASES = frozenset(
    {SeiNodePhase.PENDING, SeiNodePhase.PRE_INITIALIZING, SeiNodePhase.INITIALIZING}
)


@dataclass
class _ServiceStatus:
    load_balancer_ingress: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class _Service:
    """A core Service whose spec is a plain manifest dictionary."""

    metadata: ObjectMeta
    spec: dict[str, Any] = field(default_factory=dict)
    status: _ServiceStatus = field(default_factory=_ServiceStatus)
    kind: str = SERVICE_KIND
    api_version: str = "v1"


# --- names and labels ---


def sei_node_name(group: SeiNodeGroup, ordinal: int) -> str:
    return f"{group.metadata.name}-{ordinal}"


def external_service_name(group: SeiNodeGroup) -> str:
    return f"{group.metadata.name}-external"


def group_selector(group: SeiNodeGroup) -> dict[str, str]:
    """Selector that targets every pod of the group."""
    return {GROUP_LABEL: group.metadata.name}


def sei_node_labels(group: SeiNodeGroup, ordinal: int) -> dict[str, str]:
    """Template labels first, then system labels that always win."""
    template_meta = group.spec.template.metadata
    labels = dict(template_meta.labels) if template_meta is not None else {}
    labels[GROUP_LABEL] = group.metadata.name
    labels[GROUP_ORDINAL_LABEL] = str(ordinal)
    return labels


def sei_node_annotations(group: SeiNodeGroup) -> dict[str, str] | None:
    template_meta = group.spec.template.metadata
    if template_meta is None or not template_meta.annotations:
        return None
    return dict(template_meta.annotations)


def resource_labels(group: SeiNodeGroup) -> dict[str, str]:
    return {GROUP_LABEL: group.metadata.name}


def managed_by_annotations() -> dict[str, str]:
    return {MANAGED_BY_ANNOTATION: CONTROLLER_NAME}


# --- child SeiNodes ---


def generate_sei_node(group: SeiNodeGroup, ordinal: int) -> SeiNode:
    spec = group.spec.template.spec.copy()
    if spec.pod_labels is None:
        spec.pod_labels = {}
    spec.pod_labels[GROUP_LABEL] = group.metadata.name
    return SeiNode(
        metadata=ObjectMeta(
            name=sei_node_name(group, ordinal),
            namespace=group.metadata.namespace,
            labels=sei_node_labels(group, ordinal),
            annotations=sei_node_annotations(group),
        ),
        spec=spec,
    )


# --- external Service ---


def external_service_ports(port_names: Sequence[str]) -> list[dict[str, Any]]:
    """Service ports for the named node ports, or for all of them if none are named."""
    wanted = set(port_names)
    return [
        {"name": name, "port": port, "targetPort": port, "protocol": "TCP"}
        for name, port in NODE_PORTS
        if not wanted or name in wanted
    ]


def generate_external_service(group: SeiNodeGroup) -> _Service:
    svc_config = group.spec.networking.service
    annotations = dict(svc_config.annotations) if svc_config.annotations else None
    return _Service(
        metadata=ObjectMeta(
            name=external_service_name(group),
            namespace=group.metadata.namespace,
            labels=resource_labels(group),
            annotations=annotations,
        ),
        spec={
            "type": svc_config.type,
            "selector": group_selector(group),
            "ports": external_service_ports(svc_config.ports),
        },
    )


# --- unstructured resources ---


def _unstructured_metadata(group: SeiNodeGroup, labels: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": group.metadata.name,
        "namespace": group.metadata.namespace,
        "labels": labels,
        "annotations": dict(managed_by_annotations()),
    }


def generate_http_route(group: SeiNodeGroup) -> Unstructured:
    cfg = group.spec.networking.gateway
    parent_ref: dict[str, Any] = {
        "name": cfg.parent_ref.name,
        "namespace": cfg.parent_ref.namespace,
    }
    if cfg.parent_ref.section_name is not None:
        parent_ref["sectionName"] = cfg.parent_ref.section_name

    metadata = _unstructured_metadata(group, dict(resource_labels(group)))
    metadata["annotations"].update(cfg.annotations)

    return Unstructured(
        {
            "apiVersion": "gateway.networking.k8s.io/v1",
            "kind": HTTP_ROUTE_KIND,
            "metadata": metadata,
            "spec": {
                "parentRefs": [parent_ref],
                "hostnames": list(cfg.hostnames),
                "rules": [
                    {
                        "backendRefs": [
                            {"name": external_service_name(group), "port": PORT_RPC}
                        ]
                    }
                ],
            },
        }
    )


def generate_authorization_policy(group: SeiNodeGroup, controller_sa: str) -> Unstructured:
    cfg = group.spec.networking.isolation.authorization_policy

    rules: list[dict[str, Any]] = []
    for src in cfg.allowed_sources:
        source: dict[str, Any] = {}
        if src.principals:
            source["principals"] = list(src.principals)
        if src.namespaces:
            source["namespaces"] = list(src.namespaces)
        rules.append({"from": [{"source": source}]})

    # The controller's own identity is always allowed so the sidecar stays reachable.
    if controller_sa:
        rules.append({"from": [{"source": {"principals": [controller_sa]}}]})

    return Unstructured(
        {
            "apiVersion": "security.istio.io/v1",
            "kind": AUTHORIZATION_POLICY_KIND,
            "metadata": _unstructured_metadata(group, dict(resource_labels(group))),
            "spec": {
                "selector": {"matchLabels": dict(group_selector(group))},
                "action": "ALLOW",
                "rules": rules,
            },
        }
    )


def generate_service_monitor(group: SeiNodeGroup) -> Unstructured:
    cfg = group.spec.monitoring.service_monitor
    interval = cfg.interval or DEFAULT_SCRAPE_INTERVAL
    labels: dict[str, Any] = {**cfg.labels, **resource_labels(group)}
    return Unstructured(
        {
            "apiVersion": "monitoring.coreos.com/v1",
            "kind": SERVICE_MONITOR_KIND,
            "metadata": _unstructured_metadata(group, labels),
            "spec": {
                "selector": {"matchLabels": dict(group_selector(group))},
                "endpoints": [{"port": "metrics", "interval": interval}],
            },
        }
    )


# --- status ---


def compute_group_phase(
    ready: int, desired: int, nodes: Sequence[SeiNode] | None
) -> SeiNodeGroupPhase:
    nodes = nodes or []
    if not nodes:
        return SeiNodeGroupPhase.PENDING
    if ready == desired:
        return SeiNodeGroupPhase.READY
    failed = sum(1 for n in nodes if n.status.phase == SeiNodePhase.FAILED)
    if failed > 0:
        if failed == len(nodes):
            return SeiNodeGroupPhase.FAILED
        if ready > 0:
            return SeiNodeGroupPhase.DEGRADED
    return SeiNodeGroupPhase.INITIALIZING


def _service_configured(group: SeiNodeGroup) -> bool:
    return group.spec.networking is not None and group.spec.networking.service is not None


def build_networking_status(
    group: SeiNodeGroup, svc: _Service | None
) -> NetworkingStatus | None:
    if not _service_configured(group):
        return None
    status = NetworkingStatus(external_service_name=external_service_name(group))
    if svc is not None and svc.status.load_balancer_ingress:
        status.load_balancer_ingress = list(svc.status.load_balancer_ingress)
    return status


def set_group_condition(
    group: SeiNodeGroup,
    cond_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
) -> None:
    set_condition(
        group.status.conditions,
        Condition(
            type=cond_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=group.metadata.generation,
        ),
    )


def set_nodes_ready_condition(
    group: SeiNodeGroup, ready: int, desired: int, nodes: Iterable[SeiNode]
) -> None:
    status = ConditionStatus.TRUE
    reason = "AllNodesReady"
    message = f"{ready}/{desired} nodes ready"

    if ready < desired:
        status = ConditionStatus.FALSE
        phases = [n.status.phase for n in nodes]
        failed = sum(1 for p in phases if p == SeiNodePhase.FAILED)
        initializing = sum(1 for p in phases if p in _INITIALIZING_PHASES)
        if failed > 0:
            reason = "NodesFailed"
            message = (
                f"{ready}/{desired} nodes ready "
                f"({failed} failed, {initializing} initializing)"
            )
        else:
            reason = "NodesInitializing"
            message = f"{ready}/{desired} nodes ready ({initializing} initializing)"

    set_group_condition(group, CONDITION_NODES_READY, status, reason, message)


def set_external_service_condition(
    group: SeiNodeGroup, svc: _Service | None, fetch_error: BaseException | None
) -> None:
    if not _service_configured(group):
        return
    if fetch_error is not None:
        set_group_condition(
            group, CONDITION_EXTERNAL_SERVICE_READY, ConditionStatus.FALSE,
            "FetchError", f"Unable to fetch external Service: {fetch_error}",
        )
        return
    if svc is None:
        set_group_condition(
            group, CONDITION_EXTERNAL_SERVICE_READY, ConditionStatus.FALSE,
            "ServiceNotFound", "External Service not yet created",
        )
        return
    if (
        svc.spec.get("type") == SERVICE_TYPE_LOAD_BALANCER
        and not svc.status.load_balancer_ingress
    ):
        set_group_condition(
            group, CONDITION_EXTERNAL_SERVICE_READY, ConditionStatus.FALSE,
            "LoadBalancerPending", "Waiting for load balancer provisioning",
        )
        return
    set_group_condition(
        group, CONDITION_EXTERNAL_SERVICE_READY, ConditionStatus.TRUE,
        "ServiceReady", f"External Service {svc.metadata.name} is ready",
    )