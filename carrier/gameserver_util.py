"""Helpers that inspect and shape GameServer resources and their pods."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Optional

from carrier.model import (
    API_VERSION,
    GAME_SERVER_CONTAINER_NAME,
    GAME_SERVER_DYNAMIC_PORT_ALLOCATED,
    GAME_SERVER_HASH,
    GAME_SERVER_IN_PLACE_UPDATING_ANNOTATION,
    GAME_SERVER_LABEL_ROLE_VALUE,
    GAME_SERVER_POD_LABEL_KEY,
    GAME_SERVER_SET_LABEL_KEY,
    GROUP_NAME,
    NOT_IN_SERVICE,
    ROLE_LABEL_KEY,
    SQUAD_NAME_LABEL_KEY,
    VERSION,
    Affinity,
    ConditionStatus,
    Constraint,
    Container,
    ContainerPort,
    GameServer,
    GameServerSpec,
    GameServerState,
    LoadBalancerIngress,
    LoadBalancerPort,
    LoadBalancerStatus,
    Node,
    ObjectMeta,
    Pod,
    PortPolicy,
    PortRange,
    SchedulingStrategy,
    Toleration,
    WeightedPodAffinityTerm,
    new_controller_ref,
)

TO_BE_DELETED_TAINT = "ToBeDeletedByClusterAutoscaler"
TAINT_NODE_NOT_READY = "node.kubernetes.io/not-ready"
TAINT_NODE_UNREACHABLE = "node.kubernetes.io/unreachable"
HOSTNAME_TOPOLOGY_KEY = "kubernetes.io/hostname"

PORT_TYPE = "Port"
PORT_RANGE_TYPE = "PortRange"

NOT_IN_SERVICE_MESSAGE = "Carrier controller mark this game server as not in service"


class ContainerNotFoundError(LookupError):
    """Raised when a pod template has no container with the wanted name."""


def apply_defaults(gs: GameServer) -> None:
    """Fill in the annotation, finalizer, port and scheduling defaults."""
    gs.metadata.annotations[GROUP_NAME] = API_VERSION
    gs.metadata.finalizers.append(GROUP_NAME)
    for port in gs.spec.ports:
        if port.port_policy is None:
            port.port_policy = PortPolicy.LOAD_BALANCER
        if not port.protocol:
            port.protocol = "UDP"
    if gs.spec.scheduling is None:
        gs.spec.scheduling = SchedulingStrategy.MOST_ALLOCATED


def _gates_true(gs: GameServer, gates: list[str]) -> bool:
    conditions = {c.type: c.status for c in gs.status.conditions}
    return all(conditions.get(gate) == ConditionStatus.TRUE for gate in gates)


def _delete_ready(gs: GameServer) -> bool:
    return _gates_true(gs, gs.spec.deletable_gates)


def is_deletable(gs: GameServer) -> bool:
    """Tell whether every deletable gate holds and no in-place update runs."""
    if is_in_place_updating(gs):
        return False
    return _delete_ready(gs)


def is_deletable_with_gates(gs: GameServer) -> bool:
    """Tell whether the server has deletable gates and is deletable."""
    return bool(gs.spec.deletable_gates) and is_deletable(gs)


def is_deletable_exist(gs: GameServer) -> bool:
    """Tell whether the server declares deletable gates."""
    return bool(gs.spec.deletable_gates)


def is_readiness_exist(gs: GameServer) -> bool:
    """Tell whether the server declares readiness gates."""
    return bool(gs.spec.readiness_gates)


def is_being_deleted(gs: GameServer) -> bool:
    """Tell whether the server is deleting, failed or exited."""
    return gs.metadata.deletion_timestamp is not None or is_stopped(gs)


def is_stopped(gs: GameServer) -> bool:
    """Tell whether the server has failed or exited."""
    return gs.status.state in (GameServerState.FAILED, GameServerState.EXITED)


def is_before_running(gs: GameServer) -> bool:
    """Tell whether the server has not reached the running state yet."""
    return gs.status.state in (
        GameServerState.NONE,
        GameServerState.UNKNOWN,
        GameServerState.STARTING,
    )


def is_ready(gs: GameServer) -> bool:
    """Tell whether every readiness gate holds."""
    return _gates_true(gs, gs.spec.readiness_gates)


def is_out_of_service(gs: GameServer) -> bool:
    """Tell whether an effective NotInService constraint is present."""
    return any(
        c.type == NOT_IN_SERVICE and c.effective is True for c in gs.spec.constraints
    )


def is_in_place_updating(gs: GameServer) -> bool:
    """Tell whether the server is marked as being updated in place."""
    return gs.metadata.annotations.get(GAME_SERVER_IN_PLACE_UPDATING_ANNOTATION) == "true"


def is_dynamic_port_allocated(gs: GameServer) -> bool:
    """Tell whether dynamic ports have been allocated for the server."""
    return gs.metadata.annotations.get(GAME_SERVER_DYNAMIC_PORT_ALLOCATED) == "true"


def can_in_place_updating(gs: GameServer) -> bool:
    """Tell whether the server may be updated in place now."""
    if is_being_deleted(gs):
        return False
    if is_before_running(gs):
        return True
    return is_in_place_updating(gs) and _delete_ready(gs)


def set_in_place_updating_status(gs: GameServer, status: str) -> None:
    """Set the in-place updating annotation to ``status``."""
    gs.metadata.annotations[GAME_SERVER_IN_PLACE_UPDATING_ANNOTATION] = status


def _container_ports(port, container_port: int, host_port: Optional[int]) -> list[ContainerPort]:
    if port.protocol == "TCPUDP":
        return [
            ContainerPort(container_port=container_port, host_port=host_port, protocol="UDP"),
            ContainerPort(container_port=container_port, host_port=host_port, protocol="TCP"),
        ]
    return [ContainerPort(container_port=container_port, host_port=host_port, protocol=port.protocol)]


def build_pod(gs: GameServer) -> Pod:
    """Build the pod that backs ``gs`` from its template."""
    pod = Pod(
        metadata=ObjectMeta(name=gs.metadata.name, namespace=gs.metadata.namespace),
        spec=copy.deepcopy(gs.spec.template),
    )
    _pod_object_meta(gs, pod)
    if find_ports(gs):
        index, _ = find_container(gs.spec, GAME_SERVER_CONTAINER_NAME)
        container: Container = pod.spec.containers[index]
        for port in gs.spec.ports:
            if port.container_port is not None:
                container.ports.extend(
                    _container_ports(port, port.container_port, port.host_port)
                )
            if port.container_port_range is not None and port.host_port_range is not None:
                cpr, hpr = port.container_port_range, port.host_port_range
                for idx in range(cpr.min_port, cpr.max_port + 1):
                    host = hpr.min_port + (hpr.min_port - idx)
                    container.ports.extend(_container_ports(port, idx, host))
    _inject_pod_scheduling(gs, pod)
    _inject_pod_tolerations(pod)
    return pod


def _pod_object_meta(gs: GameServer, pod: Pod) -> None:
    pod.metadata.labels = {**pod.metadata.labels, **gs.metadata.labels}
    pod.metadata.annotations = {**pod.metadata.annotations, **gs.metadata.annotations}
    pod.metadata.labels[ROLE_LABEL_KEY] = GAME_SERVER_LABEL_ROLE_VALUE
    pod.metadata.labels[GAME_SERVER_POD_LABEL_KEY] = gs.metadata.name
    pod.metadata.owner_references.append(new_controller_ref(gs, "GameServer"))
    pod.metadata.annotations[GROUP_NAME] = VERSION


def _scheduling_term() -> WeightedPodAffinityTerm:
    return WeightedPodAffinityTerm(
        weight=100,
        topology_key=HOSTNAME_TOPOLOGY_KEY,
        match_labels={ROLE_LABEL_KEY: GAME_SERVER_LABEL_ROLE_VALUE},
    )


def _inject_pod_scheduling(gs: GameServer, pod: Pod) -> None:
    strategy = gs.spec.scheduling
    if strategy == SchedulingStrategy.LEAST_ALLOCATED:
        if pod.spec.affinity is None:
            pod.spec.affinity = Affinity()
        if pod.spec.affinity.pod_anti_affinity is None:
            pod.spec.affinity.pod_anti_affinity = []
        pod.spec.affinity.pod_anti_affinity.append(_scheduling_term())
    elif strategy == SchedulingStrategy.MOST_ALLOCATED:
        if pod.spec.affinity is None:
            pod.spec.affinity = Affinity()
        if pod.spec.affinity.pod_affinity is None:
            pod.spec.affinity.pod_affinity = []
        pod.spec.affinity.pod_affinity.append(_scheduling_term())


def _inject_pod_tolerations(pod: Pod) -> None:
    pod.spec.tolerations.extend(
        Toleration(key=key, operator="Exists", effect="NoExecute")
        for key in (TAINT_NODE_NOT_READY, TAINT_NODE_UNREACHABLE)
    )


def is_game_server_pod(pod: Pod) -> bool:
    """Tell whether the pod belongs to a game server."""
    return bool(pod.metadata.labels.get(GAME_SERVER_POD_LABEL_KEY))


def apply_game_server_address_and_port(gs: GameServer, pod: Pod) -> None:
    """Copy the pod address and node into the server status."""
    gs.status.address = pod.status.pod_ip
    gs.status.node_name = pod.spec.node_name
    if gs.spec.template.host_network:
        gs.status.load_balancer_status = LoadBalancerStatus(
            ingress=[
                LoadBalancerIngress(
                    ip=pod.spec.node_name,
                    ports=[
                        LoadBalancerPort(
                            container_port=p.container_port,
                            external_port=p.host_port,
                            container_port_range=p.container_port_range,
                            external_port_range=p.host_port_range,
                            protocol=p.protocol,
                        )
                    ],
                )
                for p in gs.spec.ports
            ]
        )


def find_container(spec: GameServerSpec, name: str) -> tuple[int, Container]:
    """Return the index and container named ``name`` in the pod template."""
    for index, container in enumerate(spec.template.containers):
        if container.name == name:
            return index, container
    raise ContainerNotFoundError(f"Could not find a container named {name}")


def check_node_taint_by_ca(node: Node) -> bool:
    """Tell whether the autoscaler has marked the node for deletion."""
    return any(taint.key == TO_BE_DELETED_TAINT for taint in node.taints)


def not_in_service_constraint() -> Constraint:
    """Build an effective NotInService constraint stamped with the current time."""
    return Constraint(
        type=NOT_IN_SERVICE,
        effective=True,
        message=NOT_IN_SERVICE_MESSAGE,
        time_added=datetime.now(timezone.utc),
    )


def add_not_in_service_constraint(gs: GameServer) -> None:
    """Set a fresh NotInService constraint, replacing an existing one."""
    constraint = not_in_service_constraint()
    constraints = gs.spec.constraints
    for index, existing in enumerate(constraints):
        if existing.type == NOT_IN_SERVICE:
            constraints[index] = constraint
            return
    constraints.append(constraint)


def is_load_balancer_port_exist(gs: GameServer) -> bool:
    """Tell whether any port uses the LoadBalancer policy."""
    return any(p.port_policy == PortPolicy.LOAD_BALANCER for p in gs.spec.ports)


def update_pod_spec(gs: GameServer, pod: Pod) -> None:
    """Bring the pod's hash label, image and resources in line with ``gs``."""
    pod.metadata.labels[GAME_SERVER_HASH] = gs.metadata.labels.get(GAME_SERVER_HASH, "")
    image = ""
    resources = None
    for container in gs.spec.template.containers:
        if container.name == GAME_SERVER_CONTAINER_NAME:
            image = container.image
            resources = container.resources
    for container in pod.spec.containers:
        if container.name != GAME_SERVER_CONTAINER_NAME:
            continue
        container.image = image
        container.resources = (
            copy.deepcopy(resources) if resources is not None else type(container.resources)()
        )


def get_owner(gs: GameServer) -> str:
    """Return the id that port allocations of ``gs`` are shared under."""
    labels = gs.metadata.labels
    return (
        labels.get(SQUAD_NAME_LABEL_KEY)
        or labels.get(GAME_SERVER_SET_LABEL_KEY)
        or gs.metadata.uid
    )


def find_ports(gs: GameServer) -> list[int]:
    """Return every host port the server uses outside load balancers."""
    ports: list[int] = []
    for port in gs.spec.ports:
        if port.port_policy == PortPolicy.LOAD_BALANCER:
            continue
        if port.host_port is not None:
            ports.append(port.host_port)
        if port.host_port_range is not None:
            hpr = port.host_port_range
            ports.extend(range(hpr.min_port, hpr.max_port + 1))
    return ports


def find_dynamic_port_number(gs: GameServer) -> int:
    """Count the dynamic ports that need a single host port."""
    return sum(
        1
        for p in gs.spec.ports
        if p.port_policy == PortPolicy.DYNAMIC and p.container_port is not None
    )


def find_static_ports(gs: GameServer) -> list[int]:
    """Return host ports of non-Static ports that map a single container port."""
    return [
        p.host_port
        for p in gs.spec.ports
        if p.port_policy != PortPolicy.STATIC
        and p.container_port is not None
        and p.host_port is not None
    ]


def get_allocate_type(gs: GameServer) -> str:
    """Return how dynamic ports are allocated: PORT_TYPE, PORT_RANGE_TYPE or ''."""
    for port in gs.spec.ports:
        if port.port_policy != PortPolicy.DYNAMIC:
            continue
        if port.container_port is not None:
            return PORT_TYPE
        if port.container_port_range is not None:
            return PORT_RANGE_TYPE
    return ""


def set_host_port(gs: GameServer, ports: list[int]) -> None:
    """Write allocated host ports into the dynamic single ports, by position."""
    for index, port in enumerate(gs.spec.ports):
        if port.port_policy != PortPolicy.DYNAMIC:
            continue
        if port.container_port is not None:
            port.host_port = ports[index]


def set_host_port_range(gs: GameServer, ports: list[int]) -> None:
    """Write the allocated span into every non-LoadBalancer port range."""
    for port in gs.spec.ports:
        if port.port_policy == PortPolicy.LOAD_BALANCER:
            continue
        if port.container_port_range is not None:
            port.host_port_range = PortRange(min_port=ports[0], max_port=ports[-1])