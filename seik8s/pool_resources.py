"""Names, labels and generated child objects for a SeiNodePool."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from .api import (
    GenesisConfiguration,
    GenesisPVCSource,
    SeiNode,
    SeiNodePhase,
    SeiNodePool,
    SeiNodeSpec,
    SeiNodeStorageConfig,
)
from .meta import Condition, ConditionStatus, ObjectMeta, set_condition

NODEPOOL_LABEL = "sei.io/nodepool"
DATA_DIR = "/sei"
GENESIS_DIR = "/genesis"
EFS_STORAGE_CLASS = "efs-sc"
NODE_SERVICE_ACCOUNT = "seid-node"
DEFAULT_STORAGE_SIZE = "1000Gi"
DEFAULT_STORAGE_CLASS = ""
GENESIS_SCRIPT_KEY = "generate.sh"
JOB_BACKOFF_LIMIT = 3
SCRIPT_FILE_MODE = 0o755
NETWORK_POLICY_PORTS = (8545, 8546, 26656, 26657, 26660)

CONDITION_TYPE_READY = "Ready"
CONDITION_TYPE_DEGRADED = "Degraded"
CONDITION_TYPE_PROGRESSING = "Progressing"

REASON_RECONCILE_SUCCEEDED = "ReconcileSucceeded"
REASON_RECONCILE_FAILED = "ReconcileFailed"
REASON_PODS_NOT_READY = "PodsNotReady"
REASON_ALL_PODS_READY = "AllPodsReady"
REASON_GENESIS_JOB_FAILED = "GenesisJobFailed"
REASON_PREP_JOB_FAILED = "PrepJobFailed"

JOB_COMPLETE = "Complete"
JOB_FAILED = "Failed"

_LEADING_INT = re.compile(r"[+-]?\d+")


@dataclass
class _ResourceStatus:
    conditions: list[Condition] = field(default_factory=list)


@dataclass
class _Resource:
    """A built-in cluster object whose body is a plain manifest dictionary."""

    kind: str
    api_version: str
    metadata: ObjectMeta
    spec: dict[str, Any] = field(default_factory=dict)
    data: dict[str, str] | None = None
    status: _ResourceStatus = field(default_factory=_ResourceStatus)


def _meta(pool: SeiNodePool, name: str) -> ObjectMeta:
    return ObjectMeta(
        name=name, namespace=pool.metadata.namespace, labels=resource_labels(pool)
    )


def resource_labels(pool: SeiNodePool) -> dict[str, str]:
    return {NODEPOOL_LABEL: pool.metadata.name}


def data_pvc_name(pool: SeiNodePool, ordinal: int) -> str:
    return f"data-{pool.metadata.name}-{ordinal}"


def sei_node_name(pool: SeiNodePool, ordinal: int) -> str:
    return f"{pool.metadata.name}-{ordinal}"


def prep_job_name(pool: SeiNodePool, ordinal: int) -> str:
    return f"{pool.metadata.name}-prep-{ordinal}"


def genesis_pvc_name(pool: SeiNodePool) -> str:
    return f"{pool.metadata.name}-genesis-data"


def genesis_job_name(pool: SeiNodePool) -> str:
    return f"{pool.metadata.name}-genesis"


def genesis_nodes_dir(pool: SeiNodePool) -> str:
    return f"/genesis/{pool.metadata.name}/nodes"


def genesis_script_config_map_name(pool: SeiNodePool) -> str:
    return f"{pool.metadata.name}-genesis-script"


def generate_genesis_script_config_map(pool: SeiNodePool, script: str) -> _Resource:
    return _Resource(
        kind="ConfigMap",
        api_version="v1",
        metadata=_meta(pool, genesis_script_config_map_name(pool)),
        data={GENESIS_SCRIPT_KEY: script},
    )


def generate_data_pvc(pool: SeiNodePool, ordinal: int) -> _Resource:
    spec: dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": DEFAULT_STORAGE_SIZE}},
    }
    if DEFAULT_STORAGE_CLASS:
        spec["storageClassName"] = DEFAULT_STORAGE_CLASS
    return _Resource(
        kind="PersistentVolumeClaim",
        api_version="v1",
        metadata=_meta(pool, data_pvc_name(pool, ordinal)),
        spec=spec,
    )


def generate_genesis_pvc(pool: SeiNodePool) -> _Resource:
    return _Resource(
        kind="PersistentVolumeClaim",
        api_version="v1",
        metadata=_meta(pool, genesis_pvc_name(pool)),
        spec={
            "accessModes": ["ReadWriteMany"],
            "storageClassName": EFS_STORAGE_CLASS,
            "resources": {"requests": {"storage": DEFAULT_STORAGE_SIZE}},
        },
    )


def generate_genesis_job(pool: SeiNodePool) -> _Resource:
    node_config = pool.spec.node_configuration
    container = {
        "name": "genesis",
        "image": node_config.image,
        "command": ["sh", f"/scripts/{GENESIS_SCRIPT_KEY}"],
        "env": [
            {"name": "NUM_NODES", "value": str(node_config.node_count)},
            {"name": "CHAIN_ID", "value": pool.spec.chain_id},
            {"name": "NODES_DIR", "value": genesis_nodes_dir(pool)},
        ],
        "volumeMounts": [
            {"name": "genesis-data", "mountPath": GENESIS_DIR},
            {"name": "scripts", "mountPath": "/scripts", "readOnly": True},
        ],
    }
    volumes = [
        {
            "name": "genesis-data",
            "persistentVolumeClaim": {"claimName": genesis_pvc_name(pool)},
        },
        {
            "name": "scripts",
            "configMap": {
                "name": genesis_script_config_map_name(pool),
                "defaultMode": SCRIPT_FILE_MODE,
            },
        },
    ]
    return _Resource(
        kind="Job",
        api_version="batch/v1",
        metadata=_meta(pool, genesis_job_name(pool)),
        spec={
            "backoffLimit": JOB_BACKOFF_LIMIT,
            "template": {
                "metadata": {"labels": resource_labels(pool)},
                "spec": {
                    "restartPolicy": "Never",
                    "containers": [container],
                    "volumes": volumes,
                },
            },
        },
    )


def generate_prep_job(pool: SeiNodePool, ordinal: int, script: str) -> _Resource:
    container = {
        "name": "genesis-copy",
        "image": pool.spec.node_configuration.image,
        "command": ["sh", "-c", script],
        "env": [
            {"name": "NODE_INDEX", "value": str(ordinal)},
            {"name": "DATA_DIR", "value": DATA_DIR},
            {"name": "GENESIS_NODES_DIR", "value": genesis_nodes_dir(pool)},
            {"name": "POOL_NAME", "value": pool.metadata.name},
            {"name": "NAMESPACE", "value": pool.metadata.namespace},
        ],
        "volumeMounts": [
            {"name": "data", "mountPath": DATA_DIR},
            {"name": "genesis-data", "mountPath": GENESIS_DIR, "readOnly": True},
        ],
    }
    volumes = [
        {
            "name": "data",
            "persistentVolumeClaim": {"claimName": data_pvc_name(pool, ordinal)},
        },
        {
            "name": "genesis-data",
            "persistentVolumeClaim": {
                "claimName": genesis_pvc_name(pool),
                "readOnly": True,
            },
        },
    ]
    return _Resource(
        kind="Job",
        api_version="batch/v1",
        metadata=_meta(pool, prep_job_name(pool, ordinal)),
        spec={
            "backoffLimit": JOB_BACKOFF_LIMIT,
            "template": {
                "metadata": {"labels": resource_labels(pool)},
                "spec": {
                    "serviceAccountName": NODE_SERVICE_ACCOUNT,
                    "restartPolicy": "Never",
                    "containers": [container],
                    "volumes": volumes,
                },
            },
        },
    )


def network_policy_ports(protocol: str) -> list[dict[str, Any]]:
    return [{"protocol": protocol, "port": port} for port in NETWORK_POLICY_PORTS]


def generate_network_policy(pool: SeiNodePool) -> _Resource:
    return _Resource(
        kind="NetworkPolicy",
        api_version="networking.k8s.io/v1",
        metadata=_meta(pool, pool.metadata.name),
        spec={
            "podSelector": {"matchLabels": resource_labels(pool)},
            "policyTypes": ["Ingress"],
            "ingress": [
                {
                    "from": [{"podSelector": {"matchLabels": resource_labels(pool)}}],
                    "ports": network_policy_ports("TCP"),
                }
            ],
        },
    )


def generate_sei_node(pool: SeiNodePool, ordinal: int) -> SeiNode:
    node_config = pool.spec.node_configuration
    return SeiNode(
        metadata=_meta(pool, sei_node_name(pool, ordinal)),
        spec=SeiNodeSpec(
            chain_id=pool.spec.chain_id,
            image=node_config.image,
            entrypoint=copy.deepcopy(node_config.entrypoint),
            genesis=GenesisConfiguration(
                pvc=GenesisPVCSource(data_pvc=data_pvc_name(pool, ordinal))
            ),
            storage=SeiNodeStorageConfig(
                retain_on_delete=pool.spec.storage.retain_on_delete
            ),
        ),
    )


def node_ordinal(pool: SeiNodePool, node: SeiNode) -> int | None:
    """Ordinal parsed from a node name of the form ``<pool>-<n>``, or None."""
    prefix = pool.metadata.name + "-"
    name = node.metadata.name
    if not name.startswith(prefix):
        return None
    match = _LEADING_INT.match(name[len(prefix):])
    return int(match.group()) if match else None


def _has_true_condition(job: _Resource, cond_type: str) -> bool:
    return any(
        c.type == cond_type and c.status == ConditionStatus.TRUE
        for c in job.status.conditions
    )


def is_job_complete(job: _Resource) -> bool:
    return _has_true_condition(job, JOB_COMPLETE)


def is_job_failed(job: _Resource) -> bool:
    return _has_true_condition(job, JOB_FAILED)


def job_failure_message(job: _Resource) -> str | None:
    """Message of the job's first true Failed condition, or None."""
    return next(
        (
            c.message
            for c in job.status.conditions
            if c.type == JOB_FAILED and c.status == ConditionStatus.TRUE
        ),
        None,
    )


def nodepool_phase(ready: int, total: int, nodes: Iterable[SeiNode]) -> str:
    if total == 0:
        return SeiNodePhase.PENDING.value
    if ready == total:
        return SeiNodePhase.RUNNING.value
    if any(n.status.phase == SeiNodePhase.FAILED for n in nodes):
        return SeiNodePhase.FAILED.value
    return SeiNodePhase.PENDING.value


def set_pool_condition(
    pool: SeiNodePool,
    cond_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
) -> None:
    set_condition(
        pool.status.conditions,
        Condition(
            type=cond_type,
            status=status,
            reason=reason,
            message=message,
            observed_generation=pool.metadata.generation,
        ),
    )


def apply_status_conditions(pool: SeiNodePool, ready: int, total: int) -> None:
    if ready == total and ready > 0:
        set_pool_condition(
            pool, CONDITION_TYPE_READY, ConditionStatus.TRUE,
            REASON_ALL_PODS_READY, "All nodes are ready and healthy",
        )
        set_pool_condition(
            pool, CONDITION_TYPE_PROGRESSING, ConditionStatus.FALSE,
            REASON_RECONCILE_SUCCEEDED, "Reconciliation complete",
        )
    elif ready > 0:
        message = f"{ready}/{total} nodes ready"
        set_pool_condition(
            pool, CONDITION_TYPE_READY, ConditionStatus.FALSE,
            REASON_PODS_NOT_READY, message,
        )
        set_pool_condition(
            pool, CONDITION_TYPE_DEGRADED, ConditionStatus.TRUE,
            REASON_PODS_NOT_READY, message,
        )
    else:
        set_pool_condition(
            pool, CONDITION_TYPE_READY, ConditionStatus.FALSE,
            REASON_PODS_NOT_READY, "No nodes are ready",
        )
        set_pool_condition(
            pool, CONDITION_TYPE_PROGRESSING, ConditionStatus.TRUE,
            REASON_PODS_NOT_READY, "Waiting for nodes to become ready",
        )