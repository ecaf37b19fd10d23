# seik8s

Reconciliation logic for two custom resources that run Sei blockchain nodes
on a Kubernetes-style cluster:

- **SeiNodePool** prepares a test network. It creates data and genesis
  volume claims, a ConfigMap holding the genesis script, a genesis Job and
  one prep Job per node. When those Jobs have completed, it creates a
  NetworkPolicy and one SeiNode per ordinal. It also deletes SeiNodes whose
  ordinal is at or above the desired count.
- **SeiNodeGroup** keeps a set of SeiNodes built from a template. It can also
  manage an external Service, a Gateway API HTTPRoute, an Istio
  AuthorizationPolicy and a Prometheus ServiceMonitor, and it reports a
  status condition for each of them.

The package has no runtime dependencies. Reconcilers work against
`seik8s.cluster.Cluster`, an in-memory object store keyed by kind, namespace
and name.

## Installation

```
pip install seik8s
```

## Modules

| Module | Contents |
| --- | --- |
| `seik8s.meta` | `ObjectMeta`, `Condition`, `ConditionStatus`, `OwnerReference`, `Unstructured`; `set_condition`, `find_condition`, `remove_condition`, `has_condition_reason`, `set_controller_reference`, `is_controlled_by` |
| `seik8s.cluster` | `Cluster`, `EventRecorder`, `Event`, `Result`; errors `ApiError`, `NotFoundError`, `AlreadyExistsError`, `NoKindMatchError` |
| `seik8s.api` | Resource types `SeiNode`, `SeiNodePool`, `SeiNodeGroup`, with their spec, status and enum types |
| `seik8s.pool_resources` | Naming helpers and builders for the objects a node pool owns, plus pool phase and condition helpers |
| `seik8s.pool_reconciler` | `SeiNodePoolReconciler`, `PoolFailedError` |
| `seik8s.group_resources` | Naming helpers and builders for the objects a node group owns, plus group phase and condition helpers |
| `seik8s.group_reconciler` | `SeiNodeGroupReconciler` |

## The object store

`Cluster` supports `get`, `create`, `update`, `update_status`, `apply`,
`delete`, `delete_named` and `list`. `list` filters by labels and returns
objects sorted by name. Every read returns a deep copy.

- `get` and `delete` raise `NotFoundError` for a missing object.
- `create` raises `AlreadyExistsError` when the name is already taken.
- Every operation on a kind given in `Cluster(missing_kinds=...)` raises
  `NoKindMatchError`. This is how the store models a CRD that is not
  installed.
- If a deleted object still has finalizers, `delete` only sets its deletion
  timestamp. The object is removed once an `update` clears its last
  finalizer.
- `update` keeps the stored status. `update_status` replaces only the
  status.

## Reconciling a node pool

```python
from seik8s.api import NodeConfiguration, SeiNodePool, SeiNodePoolSpec
from seik8s.cluster import Cluster
from seik8s.meta import Condition, ConditionStatus, ObjectMeta
from seik8s.pool_reconciler import SeiNodePoolReconciler

cluster = Cluster()
cluster.create(SeiNodePool(
    metadata=ObjectMeta(name="testnet", namespace="default"),
    spec=SeiNodePoolSpec(
        chain_id="sei-test",
        node_configuration=NodeConfiguration(node_count=2, image="seid:latest"),
    ),
))

reconciler = SeiNodePoolReconciler(
    cluster,
    genesis_script="...",   # contents of the genesis shell script
    prep_script="...",      # contents of the per-node prep script
)
result = reconciler.reconcile("default", "testnet")
print(result.requeue_after)   # 10.0 while the Jobs are still running

# Nothing runs the Jobs; mark one complete by hand:
job = cluster.get("Job", "default", "testnet-genesis")
job.status.conditions.append(Condition("Complete", ConditionStatus.TRUE))
cluster.update_status(job)
```

Each call to `reconcile` moves the pool one step along:

1. The finalizer is added. The volume claims, the script ConfigMap and the
   genesis Job are created.
2. When the genesis Job has a true `Complete` condition, the prep Jobs are
   created.
3. When every prep Job is complete, the NetworkPolicy and the SeiNodes are
   created or updated. Excess SeiNodes are deleted, and the pool's status
   (total, ready, per-node readiness, phase, conditions) is filled in. The
   result asks for a requeue after 30 seconds.

If a genesis or prep Job has a true `Failed` condition, the pool's phase is
set to `Failed` with a `GenesisJobFailed` or `PrepJobFailed` reason, and
`reconcile` raises `PoolFailedError`.

When a pool is being deleted, the reconciler waits for its SeiNodes to go.
It waits at most 60 seconds after the deletion timestamp, requeueing every
5 seconds. After that it deletes the pool's volume claims, unless
`spec.storage.retain_on_delete` is set, and removes the finalizer.

## Reconciling a node group

```python
from seik8s.api import SeiNodeGroup, SeiNodeGroupSpec, MonitoringConfig, ServiceMonitorConfig
from seik8s.cluster import Cluster, EventRecorder
from seik8s.group_reconciler import SeiNodeGroupReconciler
from seik8s.meta import ObjectMeta

cluster = Cluster(missing_kinds={"ServiceMonitor"})
cluster.create(SeiNodeGroup(
    metadata=ObjectMeta(name="archive-rpc", namespace="sei"),
    spec=SeiNodeGroupSpec(
        replicas=3,
        monitoring=MonitoringConfig(service_monitor=ServiceMonitorConfig()),
    ),
))

recorder = EventRecorder()
reconciler = SeiNodeGroupReconciler(
    cluster, recorder, controller_sa="cluster.local/ns/sei-system/sa/sei-controller"
)
reconciler.reconcile("sei", "archive-rpc")
print(recorder.reasons())   # SeiNodeCreated x3, then CRDNotInstalled
```

A pass of `reconcile` does the following:

- It creates or updates SeiNodes `<group>-0` to `<group>-<replicas-1>` and
  deletes controlled SeiNodes with a higher ordinal. It never scales down
  when `replicas` is zero or below.
- It applies the external Service, the HTTPRoute, the AuthorizationPolicy
  and the ServiceMonitor when they are configured, and deletes them when
  they are not.
- It fills in the status: replicas, ready replicas, node phases, group
  phase, networking status, and the conditions `NodesReady`,
  `ExternalServiceReady`, `RouteReady`, `IsolationReady` and
  `ServiceMonitorReady`.

If a CRD is missing, its condition reports `CRDNotInstalled` and
reconciliation goes on without that resource. Each event is recorded only
when its condition reason changes.

On deletion, the group's `deletion_policy` decides what happens. Under
`Retain`, the group's owner reference is removed from its SeiNodes and
networking objects. Under `Delete` (the default), the networking objects
are deleted. In both cases the finalizer is then removed.

## What the package does not do

- It does not talk to a real Kubernetes API server. `Cluster` is an
  in-memory store, and `apply` replaces the stored object wholesale rather
  than merging fields.
- It runs no watch loop or manager. Callers invoke `reconcile` themselves
  and honour `Result.requeue_after`.
- Nothing executes Jobs or brings nodes up. Job conditions and SeiNode
  phases change only when a caller writes them.
- It does not ship the genesis and prep shell scripts. Their contents are
  passed to `SeiNodePoolReconciler`.
- It provides no command-line program.

## Running the tests

```
pip install -e ".[test]"
pytest
```