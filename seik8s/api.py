"""Custom resource types: SeiNode, SeiNodeGroup and SeiNodePool."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .meta import Condition, ObjectMeta

API_VERSION = "sei.io/v1alpha1"


class SeiNodePhase(str, enum.Enum):
    PENDING = "Pending"
    PRE_INITIALIZING = "PreInitializing"
    INITIALIZING = "Initializing"
    RUNNING = "Running"
    FAILED = "Failed"
    TERMINATING = "Terminating"


@dataclass
class EntrypointConfig:
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)


@dataclass
class SidecarConfig:
    image: str = ""
    port: int = 0


@dataclass
class GenesisPVCSource:
    data_pvc: str = ""


@dataclass
class GenesisConfiguration:
    pvc: GenesisPVCSource | None = None


@dataclass
class SeiNodeStorageConfig:
    retain_on_delete: bool = False


@dataclass
class SeiNodeSpec:
    chain_id: str = ""
    image: str = ""
    entrypoint: EntrypointConfig | None = None
    sidecar: SidecarConfig | None = None
    genesis: GenesisConfiguration = field(default_factory=GenesisConfiguration)
    storage: SeiNodeStorageConfig = field(default_factory=SeiNodeStorageConfig)
    pod_labels: dict[str, str] | None = None
    overrides: dict[str, str] | None = None
    full_node: Any = None

    def copy(self) -> SeiNodeSpec:
        """Return an independent deep copy."""
        return copy.deepcopy(self)


@dataclass
class SeiNodeStatus:
    phase: str = ""


@dataclass
class SeiNode:
    kind: ClassVar[str] = "SeiNode"
    api_version: ClassVar[str] = API_VERSION

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SeiNodeSpec = field(default_factory=SeiNodeSpec)
    status: SeiNodeStatus = field(default_factory=SeiNodeStatus)


@dataclass
class SeiNodeTemplateMeta:
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class SeiNodeTemplate:
    metadata: SeiNodeTemplateMeta | None = None
    spec: SeiNodeSpec = field(default_factory=SeiNodeSpec)


@dataclass
class ExternalServiceConfig:
    type: str = ""
    ports: list[str] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class GatewayParentRef:
    name: str = ""
    namespace: str = ""
    section_name: str | None = None


@dataclass
class GatewayRouteConfig:
    parent_ref: GatewayParentRef = field(default_factory=GatewayParentRef)
    hostnames: list[str] = field(default_factory=list)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class TrafficSource:
    principals: list[str] = field(default_factory=list)
    namespaces: list[str] = field(default_factory=list)


@dataclass
class AuthorizationPolicyConfig:
    allowed_sources: list[TrafficSource] = field(default_factory=list)


@dataclass
class NetworkIsolationConfig:
    authorization_policy: AuthorizationPolicyConfig | None = None


@dataclass
class NetworkingConfig:
    service: ExternalServiceConfig | None = None
    gateway: GatewayRouteConfig | None = None
    isolation: NetworkIsolationConfig | None = None


@dataclass
class ServiceMonitorConfig:
    interval: str = ""
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class MonitoringConfig:
    service_monitor: ServiceMonitorConfig | None = None


class DeletionPolicy(str, enum.Enum):
    DELETE = "Delete"
    RETAIN = "Retain"


class SeiNodeGroupPhase(str, enum.Enum):
    PENDING = "Pending"
    INITIALIZING = "Initializing"
    READY = "Ready"
    DEGRADED = "Degraded"
    FAILED = "Failed"
    TERMINATING = "Terminating"


@dataclass
class GroupNodeStatus:
    name: str
    phase: str = ""


@dataclass
class NetworkingStatus:
    external_service_name: str = ""
    load_balancer_ingress: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class SeiNodeGroupSpec:
    replicas: int = 0
    template: SeiNodeTemplate = field(default_factory=SeiNodeTemplate)
    networking: NetworkingConfig | None = None
    monitoring: MonitoringConfig | None = None
    deletion_policy: DeletionPolicy | None = None


@dataclass
class SeiNodeGroupStatus:
    observed_generation: int = 0
    replicas: int = 0
    ready_replicas: int = 0
    nodes: list[GroupNodeStatus] = field(default_factory=list)
    phase: str = ""
    networking_status: NetworkingStatus | None = None
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class SeiNodeGroup:
    kind: ClassVar[str] = "SeiNodeGroup"
    api_version: ClassVar[str] = API_VERSION

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SeiNodeGroupSpec = field(default_factory=SeiNodeGroupSpec)
    status: SeiNodeGroupStatus = field(default_factory=SeiNodeGroupStatus)


@dataclass
class NodeConfiguration:
    node_count: int = 0
    image: str = ""
    entrypoint: EntrypointConfig = field(default_factory=EntrypointConfig)


@dataclass
class SeiNodePoolStorage:
    retain_on_delete: bool = False


@dataclass
class SeiNodePoolSpec:
    chain_id: str = ""
    node_configuration: NodeConfiguration = field(default_factory=NodeConfiguration)
    storage: SeiNodePoolStorage = field(default_factory=SeiNodePoolStorage)


@dataclass
class NodeStatus:
    name: str
    ready: bool = False


@dataclass
class SeiNodePoolStatus:
    total_nodes: int = 0
    ready_nodes: int = 0
    node_statuses: list[NodeStatus] = field(default_factory=list)
    phase: str = ""
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class SeiNodePool:
    kind: ClassVar[str] = "SeiNodePool"
    api_version: ClassVar[str] = API_VERSION

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: SeiNodePoolSpec = field(default_factory=SeiNodePoolSpec)
    status: SeiNodePoolStatus = field(default_factory=SeiNodePoolStatus)