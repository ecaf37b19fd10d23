import pytest

from seik8s.api import (
    AuthorizationPolicyConfig,
    DeletionPolicy,
    ExternalServiceConfig,
    GatewayParentRef,
    GatewayRouteConfig,
    MonitoringConfig,
    NetworkIsolationConfig,
    NetworkingConfig,
    SeiNode,
    SeiNodeGroup,
    SeiNodeGroupSpec,
    SeiNodePhase,
    SeiNodeSpec,
    SeiNodeTemplate,
    ServiceMonitorConfig,
    SidecarConfig,
    TrafficSource,
)
from seik8s.cluster import Cluster, EventRecorder, NotFoundError
from seik8s.group_reconciler import GROUP_FINALIZER_NAME, SeiNodeGroupReconciler
from seik8s.group_resources import GROUP_LABEL, GROUP_ORDINAL_LABEL
from seik8s.meta import ConditionStatus, ObjectMeta, find_condition, is_controlled_by

NS = "sei"
NAME = "archive-rpc"
CONTROLLER_SA = "cluster.local/ns/sei-system/sa/sei-controller"


def make_group(replicas=3, networking=None, monitoring=None, deletion_policy=None):
    return SeiNodeGroup(
        metadata=ObjectMeta(name=NAME, namespace=NS),
        spec=SeiNodeGroupSpec(
            replicas=replicas,
            template=SeiNodeTemplate(
                spec=SeiNodeSpec(
                    chain_id="pacific-1",
                    image="ghcr.io/sei-protocol/seid:v1.0.0",
                    sidecar=SidecarConfig(port=7777),
                )
            ),
            networking=networking,
            monitoring=monitoring,
            deletion_policy=deletion_policy,
        ),
    )


def setup(group=None, missing_kinds=(), controller_sa=""):
    cluster = Cluster(missing_kinds=missing_kinds)
    cluster.create(group or make_group())
    recorder = EventRecorder()
    return SeiNodeGroupReconciler(cluster, recorder, controller_sa), cluster, recorder


def stored_group(cluster):
    return cluster.get("SeiNodeGroup", NS, NAME)


def node_names(cluster):
    return [n.metadata.name for n in cluster.list("SeiNode", NS)]


def set_node_phase(cluster, name, phase):
    node = cluster.get("SeiNode", NS, name)
    node.status.phase = phase
    cluster.update_status(node)


def gateway():
    return GatewayRouteConfig(
        parent_ref=GatewayParentRef(name="istio-gateway", namespace="istio-system"),
        hostnames=["rpc.pacific-1.sei.io"],
    )


def isolation():
    return NetworkIsolationConfig(
        authorization_policy=AuthorizationPolicyConfig(
            allowed_sources=[
                TrafficSource(principals=["cluster.local/ns/istio-system/sa/istio-ingressgateway"])
            ]
        )
    )


def test_missing_group_returns_empty_result():
    reconciler = SeiNodeGroupReconciler(Cluster())
    assert reconciler.reconcile(NS, "does-not-exist").requeue_after == 0


def test_first_reconcile_adds_finalizer_and_creates_nodes():
    reconciler, cluster, recorder = setup()
    result = reconciler.reconcile(NS, NAME)
    assert result.requeue_after == 30.0
    group = stored_group(cluster)
    assert GROUP_FINALIZER_NAME in group.metadata.finalizers
    assert node_names(cluster) == ["archive-rpc-0", "archive-rpc-1", "archive-rpc-2"]
    assert recorder.reasons().count("SeiNodeCreated") == 3
    for node in cluster.list("SeiNode", NS):
        assert is_controlled_by(node, group)
        assert node.spec.pod_labels[GROUP_LABEL] == NAME


def test_second_reconcile_is_idempotent():
    reconciler, cluster, recorder = setup()
    reconciler.reconcile(NS, NAME)
    reconciler.reconcile(NS, NAME)
    assert len(cluster.list("SeiNode", NS)) == 3
    assert recorder.reasons().count("SeiNodeCreated") == 3


def test_status_initializing_when_nodes_not_running():
    reconciler, cluster, _ = setup()
    reconciler.reconcile(NS, NAME)
    status = stored_group(cluster).status
    assert status.phase == "Initializing"
    assert status.replicas == 3
    assert status.ready_replicas == 0
    assert [n.name for n in status.nodes] == node_names(cluster)
    cond = find_condition(status.conditions, "NodesReady")
    assert cond.status == ConditionStatus.FALSE
    assert cond.reason == "NodesInitializing"


def test_status_ready_when_all_nodes_running():
    reconciler, cluster, _ = setup()
    reconciler.reconcile(NS, NAME)
    for name in node_names(cluster):
        set_node_phase(cluster, name, SeiNodePhase.RUNNING.value)
    reconciler.reconcile(NS, NAME)
    status = stored_group(cluster).status
    assert status.phase == "Ready"
    assert status.ready_replicas == 3
    cond = find_condition(status.conditions, "NodesReady")
    assert cond.status == ConditionStatus.TRUE
    assert cond.reason == "AllNodesReady"


def test_status_degraded_with_failed_node():
    reconciler, cluster, _ = setup()
    reconciler.reconcile(NS, NAME)
    names = node_names(cluster)
    set_node_phase(cluster, names[0], SeiNodePhase.RUNNING.value)
    set_node_phase(cluster, names[1], SeiNodePhase.RUNNING.value)
    set_node_phase(cluster, names[2], SeiNodePhase.FAILED.value)
    reconciler.reconcile(NS, NAME)
    status = stored_group(cluster).status
    assert status.phase == "Degraded"
    assert find_condition(status.conditions, "NodesReady").reason == "NodesFailed"


def test_scale_down_removes_excess_nodes():
    reconciler, cluster, recorder = setup()
    reconciler.reconcile(NS, NAME)
    group = stored_group(cluster)
    group.spec.replicas = 1
    cluster.update(group)
    reconciler.reconcile(NS, NAME)
    assert node_names(cluster) == ["archive-rpc-0"]
    assert recorder.reasons().count("SeiNodeDeleted") == 2


def test_scale_down_refused_for_zero_replicas():
    reconciler, cluster, _ = setup()
    reconciler.reconcile(NS, NAME)
    group = stored_group(cluster)
    group.spec.replicas = 0
    cluster.update(group)
    reconciler.reconcile(NS, NAME)
    assert len(cluster.list("SeiNode", NS)) == 3


def test_scale_down_ignores_uncontrolled_nodes():
    reconciler, cluster, _ = setup(make_group(replicas=1))
    stranger = SeiNode(
        metadata=ObjectMeta(
            name="archive-rpc-9",
            namespace=NS,
            labels={GROUP_LABEL: NAME, GROUP_ORDINAL_LABEL: "9"},
        )
    )
    cluster.create(stranger)
    reconciler.reconcile(NS, NAME)
    assert "archive-rpc-9" in node_names(cluster)
    children = reconciler.list_child_sei_nodes(stored_group(cluster))
    assert [n.metadata.name for n in children] == ["archive-rpc-0"]


def test_template_changes_propagate_to_nodes():
    reconciler, cluster, _ = setup()
    reconciler.reconcile(NS, NAME)
    group = stored_group(cluster)
    group.spec.template.spec.image = "ghcr.io/sei-protocol/seid:v2.0.0"
    group.spec.template.spec.sidecar = None
    cluster.update(group)
    reconciler.reconcile(NS, NAME)
    for node in cluster.list("SeiNode", NS):
        assert node.spec.image == "ghcr.io/sei-protocol/seid:v2.0.0"
        assert node.spec.sidecar is None


def test_drifted_labels_are_restored():
    reconciler, cluster, _ = setup(make_group(replicas=1))
    reconciler.reconcile(NS, NAME)
    node = cluster.get("SeiNode", NS, "archive-rpc-0")
    node.metadata.labels = {GROUP_LABEL: NAME}
    cluster.update(node)
    reconciler.reconcile(NS, NAME)
    node = cluster.get("SeiNode", NS, "archive-rpc-0")
    assert node.metadata.labels[GROUP_ORDINAL_LABEL] == "0"


def test_external_service_created_and_ready():
    group = make_group(networking=NetworkingConfig(service=ExternalServiceConfig()))
    reconciler, cluster, _ = setup(group)
    reconciler.reconcile(NS, NAME)
    svc = cluster.get("Service", NS, "archive-rpc-external")
    assert svc.spec["selector"] == {GROUP_LABEL: NAME}
    status = stored_group(cluster).status
    assert status.networking_status.external_service_name == "archive-rpc-external"
    cond = find_condition(status.conditions, "ExternalServiceReady")
    assert cond.status == ConditionStatus.TRUE
    assert cond.reason == "ServiceReady"


def test_load_balancer_pending_without_ingress():
    group = make_group(
        networking=NetworkingConfig(service=ExternalServiceConfig(type="LoadBalancer"))
    )
    reconciler, cluster, _ = setup(group)
    reconciler.reconcile(NS, NAME)
    cond = find_condition(stored_group(cluster).status.conditions, "ExternalServiceReady")
    assert cond.status == ConditionStatus.FALSE
    assert cond.reason == "LoadBalancerPending"


def test_http_route_applied_with_event_once():
    group = make_group(
        networking=NetworkingConfig(service=ExternalServiceConfig(), gateway=gateway())
    )
    reconciler, cluster, recorder = setup(group)
    reconciler.reconcile(NS, NAME)
    reconciler.reconcile(NS, NAME)
    route = cluster.get("HTTPRoute", NS, NAME)
    assert route.object["spec"]["hostnames"] == ["rpc.pacific-1.sei.io"]
    assert is_controlled_by(route, stored_group(cluster))
    cond = find_condition(stored_group(cluster).status.conditions, "RouteReady")
    assert cond.reason == "HTTPRouteReady"
    assert recorder.reasons().count("HTTPRouteReady") == 1


def test_http_route_crd_missing_sets_condition():
    group = make_group(
        networking=NetworkingConfig(service=ExternalServiceConfig(), gateway=gateway())
    )
    reconciler, cluster, recorder = setup(group, missing_kinds=["HTTPRoute"])
    reconciler.reconcile(NS, NAME)
    reconciler.reconcile(NS, NAME)
    cond = find_condition(stored_group(cluster).status.conditions, "RouteReady")
    assert cond.status == ConditionStatus.FALSE
    assert cond.reason == "CRDNotInstalled"
    assert recorder.reasons().count("CRDNotInstalled") == 1


def test_isolation_without_controller_sa():
    group = make_group(networking=NetworkingConfig(isolation=isolation()))
    reconciler, cluster, recorder = setup(group)
    reconciler.reconcile(NS, NAME)
    policy = cluster.get("AuthorizationPolicy", NS, NAME)
    assert len(policy.object["spec"]["rules"]) == 1
    cond = find_condition(stored_group(cluster).status.conditions, "IsolationReady")
    assert cond.status == ConditionStatus.FALSE
    assert cond.reason == "ControllerSAMissing"
    assert "ControllerSAMissing" in recorder.reasons()


def test_isolation_with_controller_sa():
    group = make_group(networking=NetworkingConfig(isolation=isolation()))
    reconciler, cluster, _ = setup(group, controller_sa=CONTROLLER_SA)
    reconciler.reconcile(NS, NAME)
    rules = cluster.get("AuthorizationPolicy", NS, NAME).object["spec"]["rules"]
    assert rules[-1]["from"][0]["source"]["principals"] == [CONTROLLER_SA]
    cond = find_condition(stored_group(cluster).status.conditions, "IsolationReady")
    assert cond.status == ConditionStatus.TRUE
    assert cond.reason == "AuthorizationPolicyReady"


def test_monitoring_created_then_removed():
    group = make_group(
        monitoring=MonitoringConfig(service_monitor=ServiceMonitorConfig(interval="15s"))
    )
    reconciler, cluster, _ = setup(group)
    reconciler.reconcile(NS, NAME)
    sm = cluster.get("ServiceMonitor", NS, NAME)
    assert sm.object["spec"]["endpoints"][0]["interval"] == "15s"
    assert (
        find_condition(stored_group(cluster).status.conditions, "ServiceMonitorReady").reason
        == "ServiceMonitorReady"
    )

    stored = stored_group(cluster)
    stored.spec.monitoring = None
    cluster.update(stored)
    reconciler.reconcile(NS, NAME)
    with pytest.raises(NotFoundError):
        cluster.get("ServiceMonitor", NS, NAME)
    assert find_condition(stored_group(cluster).status.conditions, "ServiceMonitorReady") is None


def test_missing_crds_do_not_break_plain_group():
    reconciler, cluster, _ = setup(
        missing_kinds=["HTTPRoute", "AuthorizationPolicy", "ServiceMonitor"]
    )
    assert reconciler.reconcile(NS, NAME).requeue_after == 30.0
    assert len(cluster.list("SeiNode", NS)) == 3


def test_removing_networking_deletes_resources():
    group = make_group(
        networking=NetworkingConfig(service=ExternalServiceConfig(), gateway=gateway())
    )
    reconciler, cluster, _ = setup(group)
    reconciler.reconcile(NS, NAME)
    stored = stored_group(cluster)
    stored.spec.networking = None
    cluster.update(stored)
    reconciler.reconcile(NS, NAME)
    with pytest.raises(NotFoundError):
        cluster.get("Service", NS, "archive-rpc-external")
    with pytest.raises(NotFoundError):
        cluster.get("HTTPRoute", NS, NAME)
    conditions = stored_group(cluster).status.conditions
    assert find_condition(conditions, "ExternalServiceReady") is None
    assert find_condition(conditions, "RouteReady") is None
    assert stored_group(cluster).status.networking_status is None


def test_deletion_with_delete_policy_cleans_up():
    group = make_group(
        networking=NetworkingConfig(service=ExternalServiceConfig(), gateway=gateway())
    )
    reconciler, cluster, _ = setup(group)
    reconciler.reconcile(NS, NAME)
    cluster.delete_named("SeiNodeGroup", NS, NAME)
    assert reconciler.reconcile(NS, NAME).requeue_after == 0
    with pytest.raises(NotFoundError):
        cluster.get("SeiNodeGroup", NS, NAME)
    with pytest.raises(NotFoundError):
        cluster.get("Service", NS, "archive-rpc-external")
    with pytest.raises(NotFoundError):
        cluster.get("HTTPRoute", NS, NAME)


def test_deletion_with_retain_policy_orphans_children():
    group = make_group(
        networking=NetworkingConfig(service=ExternalServiceConfig(), gateway=gateway()),
        deletion_policy=DeletionPolicy.RETAIN,
    )
    reconciler, cluster, recorder = setup(group)
    reconciler.reconcile(NS, NAME)
    group_uid = stored_group(cluster).metadata.uid
    cluster.delete_named("SeiNodeGroup", NS, NAME)
    reconciler.reconcile(NS, NAME)

    with pytest.raises(NotFoundError):
        cluster.get("SeiNodeGroup", NS, NAME)
    assert "RetainResources" in recorder.reasons()
    nodes = cluster.list("SeiNode", NS)
    assert len(nodes) == 3
    for node in nodes:
        assert all(r.uid != group_uid for r in node.metadata.owner_references)
    svc = cluster.get("Service", NS, "archive-rpc-external")
    assert all(r.uid != group_uid for r in svc.metadata.owner_references)
    route = cluster.get("HTTPRoute", NS, NAME)
    assert all(r.uid != group_uid for r in route.metadata().owner_references)


def test_update_status_direct_call_counts_ready():
    reconciler, cluster, _ = setup()
    reconciler.reconcile(NS, NAME)
    set_node_phase(cluster, "archive-rpc-0", SeiNodePhase.RUNNING.value)
    group = stored_group(cluster)
    reconciler.update_status(group)
    status = stored_group(cluster).status
    assert status.ready_replicas == 1
    assert status.phase == "Initializing"