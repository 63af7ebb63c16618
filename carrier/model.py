"""Resource types handled by the game server controllers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

GROUP_NAME = "carrier.ocgi.dev"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP_NAME}/{VERSION}"

GAME_SERVER_CONTAINER_NAME = "server"
ROLE_LABEL_KEY = f"{GROUP_NAME}/role"
GAME_SERVER_LABEL_ROLE_VALUE = "gameserver"
GAME_SERVER_POD_LABEL_KEY = f"{GROUP_NAME}/gameserver"
GAME_SERVER_SET_LABEL_KEY = f"{GROUP_NAME}/gameserverset"
SQUAD_NAME_LABEL_KEY = f"{GROUP_NAME}/squad"
GAME_SERVER_HASH = f"{GROUP_NAME}/gameserver-hash"
GAME_SERVER_IN_PLACE_UPDATING_ANNOTATION = f"{GROUP_NAME}/inplace-updating"
GAME_SERVER_IN_PLACE_UPDATE_ANNOTATION = f"{GROUP_NAME}/inplace-update-threshold"
GAME_SERVER_IN_PLACE_UPDATED_REPLICAS_ANNOTATION = f"{GROUP_NAME}/inplace-updated-replicas"
GAME_SERVER_DELETION_COST = f"{GROUP_NAME}/gs-deletion-cost"
GAME_SERVER_DYNAMIC_PORT_ALLOCATED = f"{GROUP_NAME}/dynamic-port-allocated"

NOT_IN_SERVICE = "NotInService"
SCALING_IN_PROGRESS = "ScalingInProgress"


class GameServerState(str, Enum):
    NONE = ""
    UNKNOWN = "Unknown"
    STARTING = "Starting"
    RUNNING = "Running"
    FAILED = "Failed"
    EXITED = "Exited"


class PortPolicy(str, Enum):
    LOAD_BALANCER = "LoadBalancer"
    DYNAMIC = "Dynamic"
    STATIC = "Static"


class SchedulingStrategy(str, Enum):
    DEFAULT = "Default"
    MOST_ALLOCATED = "MostAllocated"
    LEAST_ALLOCATED = "LeastAllocated"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class RestartPolicy(str, Enum):
    ALWAYS = "Always"
    ON_FAILURE = "OnFailure"
    NEVER = "Never"


class PodPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass
class OwnerReference:
    name: str
    uid: str
    kind: str = ""
    api_version: str = ""
    controller: bool = False
    block_owner_deletion: bool = False


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    generate_name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    generation: int = 0


@dataclass
class PortRange:
    min_port: int
    max_port: int


@dataclass
class GameServerPort:
    name: str = ""
    container_port: Optional[int] = None
    container_port_range: Optional[PortRange] = None
    host_port: Optional[int] = None
    host_port_range: Optional[PortRange] = None
    port_policy: Optional[PortPolicy] = None
    protocol: str = ""


@dataclass
class Constraint:
    type: str
    effective: Optional[bool] = None
    message: str = ""
    time_added: Optional[datetime] = None


@dataclass
class GameServerCondition:
    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    last_probe_time: Optional[datetime] = None
    message: str = ""


@dataclass
class LoadBalancerPort:
    container_port: Optional[int] = None
    external_port: Optional[int] = None
    container_port_range: Optional[PortRange] = None
    external_port_range: Optional[PortRange] = None
    protocol: str = ""


@dataclass
class LoadBalancerIngress:
    ip: str = ""
    ports: list[LoadBalancerPort] = field(default_factory=list)


@dataclass
class LoadBalancerStatus:
    ingress: list[LoadBalancerIngress] = field(default_factory=list)


@dataclass
class ContainerPort:
    container_port: int
    host_port: Optional[int] = None
    protocol: str = ""


@dataclass
class ResourceRequirements:
    limits: dict[str, str] = field(default_factory=dict)
    requests: dict[str, str] = field(default_factory=dict)


@dataclass
class Container:
    name: str
    image: str = ""
    ports: list[ContainerPort] = field(default_factory=list)
    resources: ResourceRequirements = field(default_factory=ResourceRequirements)


@dataclass
class ContainerStatus:
    """State of one container; ``terminated`` marks a container that has stopped."""

    name: str
    ready: bool = False
    container_id: str = ""
    running: bool = False
    started_at: Optional[datetime] = None
    terminated: bool = False
    exit_code: Optional[int] = None
    termination_message: str = ""


@dataclass
class Toleration:
    key: str
    operator: str = ""
    effect: str = ""
    value: str = ""


@dataclass
class WeightedPodAffinityTerm:
    weight: int
    topology_key: str
    match_labels: dict[str, str] = field(default_factory=dict)


@dataclass
class Affinity:
    """Preferred pod affinity and anti-affinity terms."""

    pod_affinity: Optional[list[WeightedPodAffinityTerm]] = None
    pod_anti_affinity: Optional[list[WeightedPodAffinityTerm]] = None


@dataclass
class PodSpec:
    containers: list[Container] = field(default_factory=list)
    node_name: str = ""
    restart_policy: RestartPolicy = RestartPolicy.ALWAYS
    host_network: bool = False
    tolerations: list[Toleration] = field(default_factory=list)
    affinity: Optional[Affinity] = None


@dataclass
class PodStatus:
    phase: Optional[PodPhase] = None
    pod_ip: str = ""
    container_statuses: list[ContainerStatus] = field(default_factory=list)


@dataclass
class Pod:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PodSpec = field(default_factory=PodSpec)
    status: PodStatus = field(default_factory=PodStatus)


@dataclass
class Taint:
    key: str
    value: str = ""
    effect: str = ""


@dataclass
class Node:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    taints: list[Taint] = field(default_factory=list)


@dataclass
class GameServerSpec:
    ports: list[GameServerPort] = field(default_factory=list)
    constraints: list[Constraint] = field(default_factory=list)
    readiness_gates: list[str] = field(default_factory=list)
    deletable_gates: list[str] = field(default_factory=list)
    scheduling: Optional[SchedulingStrategy] = None
    template: PodSpec = field(default_factory=PodSpec)


@dataclass
class GameServerStatus:
    state: GameServerState = GameServerState.NONE
    address: str = ""
    node_name: str = ""
    conditions: list[GameServerCondition] = field(default_factory=list)
    load_balancer_status: Optional[LoadBalancerStatus] = None


@dataclass
class GameServer:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: GameServerSpec = field(default_factory=GameServerSpec)
    status: GameServerStatus = field(default_factory=GameServerStatus)


@dataclass
class GameServerSetCondition:
    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    message: str = ""
    last_transition_time: Optional[datetime] = None


@dataclass
class GameServerSetSpec:
    replicas: int = 0
    template_metadata: ObjectMeta = field(default_factory=ObjectMeta)
    template: GameServerSpec = field(default_factory=GameServerSpec)
    selector: Optional[dict[str, str]] = None
    exclude_constraints: Optional[bool] = None
    scheduling: Optional[SchedulingStrategy] = None


@dataclass
class GameServerSetStatus:
    replicas: int = 0
    ready_replicas: int = 0
    observed_generation: int = 0
    selector: str = ""
    conditions: list[GameServerSetCondition] = field(default_factory=list)


@dataclass
class GameServerSet:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: GameServerSetSpec = field(default_factory=GameServerSetSpec)
    status: GameServerSetStatus = field(default_factory=GameServerSetStatus)


Resource = Union[Pod, Node, GameServer, GameServerSet]


def controller_of(obj: Resource) -> Optional[OwnerReference]:
    """Return the owner reference that controls ``obj``, if any."""
    return next((ref for ref in obj.metadata.owner_references if ref.controller), None)


def is_controlled_by(obj: Resource, owner: Resource) -> bool:
    """Tell whether ``owner`` is the controller of ``obj``."""
    ref = controller_of(obj)
    return ref is not None and ref.uid == owner.metadata.uid


def new_controller_ref(owner: Resource, kind: str) -> OwnerReference:
    """Build a controlling owner reference pointing at ``owner``."""
    return OwnerReference(
        name=owner.metadata.name,
        uid=owner.metadata.uid,
        kind=kind,
        api_version=API_VERSION,
        controller=True,
        block_owner_deletion=True,
    )