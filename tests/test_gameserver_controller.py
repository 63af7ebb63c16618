import copy
import threading
import time
from datetime import datetime, timezone

import pytest

from carrier.allocator import RangeFullError
from carrier.gameserver_controller import GameServerController
from carrier.gameserver_util import TO_BE_DELETED_TAINT
from carrier.kube import CarrierClient, KubeClient, NotFoundError
from carrier.model import (
    GAME_SERVER_DYNAMIC_PORT_ALLOCATED,
    GAME_SERVER_POD_LABEL_KEY,
    GAME_SERVER_SET_LABEL_KEY,
    GROUP_NAME,
    NOT_IN_SERVICE,
    Constraint,
    Container,
    ContainerStatus,
    GameServer,
    GameServerPort,
    GameServerSpec,
    GameServerState,
    Node,
    ObjectMeta,
    OwnerReference,
    Pod,
    PodPhase,
    PodSpec,
    PodStatus,
    PortPolicy,
    PortRange,
    RestartPolicy,
    Taint,
)


def pod():
    return Pod(
        metadata=ObjectMeta(
            name="test",
            namespace="default",
            owner_references=[OwnerReference(name="test", uid="123", controller=True)],
        ),
        spec=PodSpec(containers=[Container(name="server")], node_name="test"),
        status=PodStatus(phase=PodPhase.RUNNING),
    )


def pod_running():
    p = pod()
    p.status.container_statuses = [
        ContainerStatus(name="server", running=True, ready=True, container_id="XXX")
    ]
    return p


def pod_recreated():
    p = pod()
    p.status.phase = PodPhase.PENDING
    p.spec.node_name = ""
    return p


def pod_not_running():
    p = pod()
    p.status.container_statuses = [ContainerStatus(name="server", container_id="XXXXX")]
    return p


def pod_exit(policy):
    p = pod()
    p.spec.restart_policy = policy
    p.status.container_statuses = [
        ContainerStatus(name="server", terminated=True, exit_code=0, container_id="XXX")
    ]
    p.status.pod_ip = "test1"
    return p


def node():
    return Node(metadata=ObjectMeta(name="test"))


def node_with_taint():
    return Node(metadata=ObjectMeta(name="test"), taints=[Taint(key=TO_BE_DELETED_TAINT)])


def gs():
    return GameServer(metadata=ObjectMeta(name="test", namespace="default", uid="123"))


def gs_to_delete():
    return GameServer(
        metadata=ObjectMeta(
            name="test",
            namespace="default",
            deletion_timestamp=datetime.now(timezone.utc),
            finalizers=[GROUP_NAME],
        )
    )


def gs_with_temp():
    g = gs()
    g.spec = GameServerSpec(template=pod().spec)
    return g


def gs_with_temp_address_exist():
    g = gs_with_temp()
    g.status.address = "test"
    return g


def gs_with_temp_running():
    g = gs_with_temp()
    g.status.state = GameServerState.RUNNING
    return g


def gs_with_temp_running_address():
    g = gs_with_temp_running()
    g.status.node_name = "test"
    g.status.address = "test1"
    return g


def gs_with_temp_starting():
    g = gs_with_temp()
    g.status.state = GameServerState.STARTING
    return g


def make_controller(pods=None, nodes=(), servers=None, min_port=1000, max_port=1010):
    pods = [pod()] if pods is None else pods
    servers = [gs()] if servers is None else servers
    kube = KubeClient(*pods, *nodes)
    carrier = CarrierClient(*servers)
    return GameServerController(kube, carrier, min_port, max_port)


def test_sync_node_taint_adds_constraint():
    c = make_controller(nodes=[node_with_taint()])
    c.sync_node_taint("test")
    stored = c.carrier_client.game_servers.get("default", "test")
    assert [x.type for x in stored.spec.constraints] == [NOT_IN_SERVICE]
    assert stored.spec.constraints[0].effective is True


def test_sync_node_taint_other_node_untouched():
    c = make_controller()
    c.sync_node_taint("other")
    assert c.carrier_client.game_servers.get("default", "test").spec.constraints == []


@pytest.mark.parametrize(
    "factory, changed",
    [(gs, False), (gs_to_delete, True)],
    ids=["not deleting", "deleting"],
)
def test_sync_deletion_timestamp(factory, changed):
    c = make_controller()
    original = factory()
    result = c.sync_deletion_timestamp(copy.deepcopy(original))
    assert (result != original) == changed


def test_sync_deletion_timestamp_removes_finalizer_and_pod():
    c = make_controller()
    deleting = gs_to_delete()
    deleting.metadata.uid = "123"
    result = c.sync_deletion_timestamp(deleting)
    assert result.metadata.finalizers == []
    with pytest.raises(NotFoundError):
        c.kube_client.pods.get("default", "test")
    assert c.recorder.events[-1][3] == "Deleting Pod test"


@pytest.mark.parametrize(
    "factory, pod_exist, changed, state",
    [
        (gs_with_temp, True, True, GameServerState.STARTING),
        (gs_with_temp, False, False, None),
        (gs_with_temp_address_exist, False, True, GameServerState.FAILED),
        (gs_with_temp_running, True, False, None),
        (gs_to_delete, True, False, None),
    ],
    ids=[
        "pod exist",
        "pod not exist",
        "pod not exist, gs address exist",
        "gs already running",
        "gs delete",
    ],
)
def test_sync_starting_state(factory, pod_exist, changed, state):
    c = make_controller(pods=[pod()] if pod_exist else [])
    original = factory()
    result = c.sync_starting_state(copy.deepcopy(original))
    assert (result != original) == changed
    if changed:
        assert result.status.state == state


def test_sync_starting_state_creates_pod():
    c = make_controller(pods=[])
    c.sync_starting_state(gs_with_temp())
    created = c.kube_client.pods.get("default", "test")
    assert created.metadata.labels[GAME_SERVER_POD_LABEL_KEY] == "test"
    assert created.metadata.owner_references[0].uid == "123"


def test_create_pod_already_exists():
    c = make_controller(pods=[pod()])
    foreign = gs_with_temp()
    foreign.metadata.uid = "999"
    result = c.sync_starting_state(copy.deepcopy(foreign))
    assert result == foreign
    assert c.recorder.events[-1][3] == "Pod already exists"


@pytest.mark.parametrize(
    "factory, node_exist, pod_factory, state",
    [
        (gs_with_temp_starting, True, pod_running, GameServerState.RUNNING),
        (gs_with_temp, False, pod_running, GameServerState.NONE),
        (gs_with_temp_running, False, pod_running, GameServerState.FAILED),
        (gs_with_temp_running_address, True, pod_recreated, GameServerState.FAILED),
        (
            gs_with_temp_running_address,
            True,
            lambda: pod_exit(RestartPolicy.NEVER),
            GameServerState.EXITED,
        ),
        (
            gs_with_temp_running_address,
            True,
            lambda: pod_exit(RestartPolicy.ALWAYS),
            GameServerState.RUNNING,
        ),
        (gs_with_temp_running, True, pod_not_running, GameServerState.RUNNING),
        (gs_to_delete, True, None, GameServerState.NONE),
    ],
    ids=[
        "pod running, node exist, container ready",
        "pod exist, node not exist, gs state previous empty",
        "pod exist, node not exist, gs state previous Running",
        "pod re-created",
        "pod never restart",
        "pod always restart",
        "gs already running, container not ready",
        "gs delete",
    ],
)
def test_sync_running_state(factory, node_exist, pod_factory, state):
    c = make_controller(
        pods=[pod_factory()] if pod_factory else [],
        nodes=[node()] if node_exist else [],
    )
    result = c.sync_running_state(factory())
    assert result.status.state == state


def test_sync_running_state_pod_missing():
    c = make_controller(pods=[])
    with pytest.raises(NotFoundError):
        c.sync_running_state(gs_with_temp())


def test_sync_running_state_not_scheduled():
    c = make_controller(pods=[pod_recreated()], nodes=[node()])
    with pytest.raises(RuntimeError):
        c.sync_running_state(gs_with_temp_starting())


def test_sync_running_state_populates_address():
    p = pod_running()
    p.status.pod_ip = "10.0.0.5"
    c = make_controller(pods=[p], nodes=[node()])
    result = c.sync_running_state(gs_with_temp_starting())
    assert (result.status.address, result.status.node_name) == ("10.0.0.5", "test")
    stored = c.carrier_client.game_servers.get("default", "test")
    assert stored.status.state == GameServerState.RUNNING
    assert "Address and port populated" in [e[3] for e in c.recorder.events]


def test_never_restart_records_warning():
    c = make_controller(pods=[pod_exit(RestartPolicy.NEVER)], nodes=[node()])
    c.sync_running_state(gs_with_temp_running_address())
    assert c.recorder.events[0][1] == "Warning"


def dynamic_gs(labels=None, uid="123", name="test"):
    g = gs_with_temp()
    g.metadata.uid = uid
    g.metadata.name = name
    g.metadata.labels = labels or {}
    g.spec.ports = [GameServerPort(container_port=7777, port_policy=PortPolicy.DYNAMIC)]
    return g


def test_try_allocate_ports_single():
    c = make_controller(servers=[dynamic_gs()])
    result = c.try_allocate_ports(dynamic_gs())
    assert result.spec.ports[0].host_port == 1000
    assert result.metadata.annotations[GAME_SERVER_DYNAMIC_PORT_ALLOCATED] == "true"
    assert c.carrier_client.game_servers.get("default", "test").spec.ports[0].host_port == 1000


def test_try_allocate_ports_shared_by_set():
    labels = {GAME_SERVER_SET_LABEL_KEY: "set1"}
    first = dynamic_gs(labels, uid="a", name="one")
    second = dynamic_gs(labels, uid="b", name="two")
    c = make_controller(servers=[first, second])
    r1 = c.try_allocate_ports(first)
    r2 = c.try_allocate_ports(second)
    assert r1.spec.ports[0].host_port == r2.spec.ports[0].host_port == 1000


def test_try_allocate_port_range():
    g = gs_with_temp()
    g.spec.ports = [
        GameServerPort(container_port_range=PortRange(0, 2), port_policy=PortPolicy.DYNAMIC)
    ]
    c = make_controller(servers=[g])
    result = c.try_allocate_ports(g)
    assert result.spec.ports[0].host_port_range == PortRange(1000, 1002)


def test_try_allocate_ports_range_full():
    g = dynamic_gs()
    g.spec.ports.append(GameServerPort(container_port=7778, port_policy=PortPolicy.DYNAMIC))
    c = make_controller(servers=[g], min_port=1000, max_port=1000)
    with pytest.raises(RangeFullError):
        c.try_allocate_ports(g)


def test_try_allocate_ports_releases_on_write_failure():
    c = make_controller(servers=[])
    with pytest.raises(NotFoundError):
        c.try_allocate_ports(dynamic_gs())
    assert not c.port_allocator.has_owner("123")
    assert not c.port_allocator.is_used(1000)


def test_try_allocate_ports_load_balancer_untouched():
    g = gs_with_temp()
    g.spec.ports = [GameServerPort(container_port=7777, port_policy=PortPolicy.LOAD_BALANCER)]
    c = make_controller(servers=[g])
    assert c.try_allocate_ports(copy.deepcopy(g)) == g


def test_sync_port_allocated():
    g = gs_with_temp()
    g.metadata.labels = {GAME_SERVER_SET_LABEL_KEY: "set1"}
    g.spec.ports = [GameServerPort(host_port=1005, port_policy=PortPolicy.STATIC)]
    c = make_controller(servers=[g])
    c.sync_port_allocated()
    assert c.port_allocator.is_used(1005)
    assert c.port_allocator.has_owner("set1")


def test_sync_game_server_releases_ports_of_deleting():
    g = gs_to_delete()
    g.metadata.uid = "123"
    g.spec.ports = [GameServerPort(host_port=1003, port_policy=PortPolicy.STATIC)]
    c = make_controller(servers=[g])
    c.port_allocator.set_used("123", "123", [1003])
    c.sync_game_server("default/test")
    assert not c.port_allocator.is_used(1003)
    assert c.carrier_client.game_servers.get("default", "test").metadata.finalizers == []


def test_sync_game_server_skips_exited():
    g = gs_with_temp()
    g.status.state = GameServerState.EXITED
    c = make_controller(servers=[g])
    c.sync_game_server("default/test")
    assert c.carrier_client.game_servers.get("default", "test") == g


def test_sync_game_server_missing_and_bad_key():
    c = make_controller(servers=[])
    assert c.sync_game_server("default/none") is None
    assert c.sync_game_server("a/b/c") is None
    assert c.recorder.events == []


def test_remove_constraints():
    g = gs()
    g.spec.constraints = [Constraint(type=NOT_IN_SERVICE, effective=True), Constraint(type="Other")]
    c = make_controller()
    result = c.remove_constraints(g)
    assert [x.type for x in result.spec.constraints] == ["Other"]
    assert [x.type for x in c.carrier_client.game_servers.get("default", "test").spec.constraints] == [
        "Other"
    ]


def test_get_pod_not_controlled():
    c = make_controller()
    other = gs()
    other.metadata.uid = "456"
    with pytest.raises(NotFoundError):
        c.get_pod(other)


def labelled_pod():
    p = pod()
    p.metadata.labels = {GAME_SERVER_POD_LABEL_KEY: "test"}
    return p


def test_on_pod_updated_enqueues_owner():
    c = make_controller()
    old = labelled_pod()
    new = labelled_pod()
    new.spec.node_name = "other"
    c.on_pod_updated(old, new)
    assert c.queue.get(timeout=1.0) == "default/test"


def test_on_pod_updated_without_change():
    c = make_controller()
    c.on_pod_updated(labelled_pod(), labelled_pod())
    assert c.queue.num_requeues("default/test") == 0


def test_on_pod_deleted():
    c = make_controller()
    c.on_pod_deleted("not a pod")
    assert c.queue.num_requeues("default/test") == 0
    c.on_pod_deleted(labelled_pod())
    assert c.queue.num_requeues("default/test") == 1


def test_node_handlers():
    c = make_controller()
    c.on_node_added(node())
    assert c.node_queue.num_requeues("test") == 0
    c.on_node_updated(node_with_taint(), node_with_taint())
    assert c.node_queue.num_requeues("test") == 0
    c.on_node_updated(node(), node_with_taint())
    assert c.node_queue.num_requeues("test") == 1
    c.on_node_deleted(node_with_taint())
    assert c.node_queue.num_requeues("test") == 0


def test_enqueue_and_forget():
    c = make_controller()
    c.enqueue_game_server(gs())
    assert c.queue.num_requeues("default/test") == 1
    c.forget_game_server("default/test")
    assert c.queue.num_requeues("default/test") == 0


def test_process_next():
    c = make_controller(nodes=[node()], servers=[gs_with_temp()])
    c.queue.add("default/test")
    assert c.process_next(timeout=1.0) is True
    stored = c.carrier_client.game_servers.get("default", "test")
    assert stored.status.state == GameServerState.STARTING
    assert stored.status.node_name == "test"
    assert c.process_next(timeout=0.05) is False


def test_run_processes_queue_until_stopped():
    c = make_controller(nodes=[node()], servers=[gs_with_temp()])
    stop = threading.Event()
    runner = threading.Thread(target=c.run, args=(1, stop))
    runner.start()
    try:
        c.enqueue_game_server("default/test")
        deadline = time.monotonic() + 5
        state = None
        while time.monotonic() < deadline:
            state = c.carrier_client.game_servers.get("default", "test").status.state
            if state == GameServerState.STARTING:
                break
            time.sleep(0.02)
    finally:
        stop.set()
        runner.join(timeout=5)
    assert state == GameServerState.STARTING
    assert not runner.is_alive()