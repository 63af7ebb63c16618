"""Controller that reconciles GameServers with their pods, nodes and host ports."""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from carrier.allocator import MinMaxAllocator
from carrier.gameserver_util import (
    PORT_RANGE_TYPE,
    PORT_TYPE,
    ContainerNotFoundError,
    add_not_in_service_constraint,
    apply_game_server_address_and_port,
    build_pod,
    check_node_taint_by_ca,
    find_dynamic_port_number,
    find_ports,
    find_static_ports,
    get_allocate_type,
    get_owner,
    is_being_deleted,
    is_deletable,
    is_dynamic_port_allocated,
    is_game_server_pod,
    is_load_balancer_port_exist,
    is_out_of_service,
    set_host_port,
    set_host_port_range,
    update_pod_spec,
)
from carrier.kube import (
    AlreadyExistsError,
    CarrierClient,
    EventRecorder,
    KubeClient,
    NotFoundError,
    RateLimitingQueue,
    meta_namespace_key,
    split_meta_namespace_key,
)
from carrier.model import (
    GAME_SERVER_CONTAINER_NAME,
    GAME_SERVER_DYNAMIC_PORT_ALLOCATED,
    GAME_SERVER_HASH,
    GROUP_NAME,
    NOT_IN_SERVICE,
    GameServer,
    GameServerCondition,
    GameServerState,
    Node,
    Pod,
    PodPhase,
    RestartPolicy,
    controller_of,
    is_controlled_by,
)

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

_WORKER_POLL = 0.1


class GameServerController:
    """Reconciles GameServer state from the pods and nodes backing them."""

    def __init__(
        self,
        kube_client: KubeClient,
        carrier_client: CarrierClient,
        min_port: int,
        max_port: int,
        recorder: Optional[EventRecorder] = None,
    ) -> None:
        self.kube_client = kube_client
        self.carrier_client = carrier_client
        self.port_allocator = MinMaxAllocator(min_port, max_port)
        self.recorder = recorder if recorder is not None else EventRecorder("gameserver-controller")
        self.queue = RateLimitingQueue(0.02, 0.5, 5)
        self.node_queue = RateLimitingQueue(0.005, 1.0, 5)

    # Event handlers

    def enqueue_game_server(self, obj) -> None:
        """Queue the GameServer ``obj`` (an object or a key) for syncing."""
        self.queue.add_rate_limited(meta_namespace_key(obj))

    def forget_game_server(self, obj) -> None:
        """Drop the retry history of the GameServer ``obj``."""
        self.queue.forget(meta_namespace_key(obj))

    def _enqueue_owner(self, pod: Pod) -> None:
        owner = controller_of(pod)
        if owner is None:
            return
        self.enqueue_game_server(f"{pod.metadata.namespace}/{owner.name}")

    def on_pod_updated(self, old: Pod, new: Pod) -> None:
        """Queue the owning GameServer when its pod is scheduled or its containers change."""
        if not is_game_server_pod(old):
            return
        if (
            old.spec.node_name != new.spec.node_name
            or old.status.container_statuses != new.status.container_statuses
        ):
            self._enqueue_owner(new)

    def on_pod_deleted(self, pod) -> None:
        """Queue the owning GameServer of a deleted pod."""
        if not isinstance(pod, Pod):
            return
        if is_game_server_pod(pod):
            self._enqueue_owner(pod)

    def on_node_added(self, node: Node) -> None:
        """Queue a node the autoscaler has marked for deletion."""
        if not check_node_taint_by_ca(node):
            return
        self.node_queue.add_rate_limited(meta_namespace_key(node))

    def on_node_updated(self, old, new: Node) -> None:
        """Queue a node that has just gained the autoscaler's deletion taint."""
        if not isinstance(old, Node):
            return
        if check_node_taint_by_ca(old) or not check_node_taint_by_ca(new):
            return
        self.on_node_added(new)

    def on_node_deleted(self, node) -> None:
        """Drop the retry history of a deleted node."""
        self.node_queue.forget(meta_namespace_key(node))

    # Reconciliation

    def sync_node_taint(self, node_name: str) -> None:
        """Mark every GameServer on a node about to be removed as not in service."""
        logger.info("Sync node taint %s", node_name)
        pods = self.kube_client.pods_on_node(node_name)
        logger.info("List %d pods whose nodeName is %s", len(pods), node_name)
        for pod in pods:
            try:
                gs = self.carrier_client.game_servers.get(pod.metadata.namespace, pod.metadata.name)
            except NotFoundError:
                continue
            add_not_in_service_constraint(gs)
            self.carrier_client.game_servers.update(gs)

    def sync_port_allocated(self) -> None:
        """Record the host ports of existing GameServers as taken."""
        for gs in self.carrier_client.game_servers.list():
            if gs.metadata.deletion_timestamp is not None:
                continue
            self.port_allocator.set_used(get_owner(gs), gs.metadata.uid, find_ports(gs))

    def sync_game_server(self, key: str) -> None:
        """Reconcile the GameServer stored under ``key``."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            logger.error("invalid resource key %r", key)
            return
        try:
            gs = self.carrier_client.game_servers.get(namespace, name)
        except NotFoundError:
            logger.debug("GameServer %s is no longer available for syncing", key)
            return

        if gs.metadata.deletion_timestamp is not None:
            self.port_allocator.release(get_owner(gs), gs.metadata.uid, find_ports(gs))
        if gs.status.state in (GameServerState.EXITED, GameServerState.FAILED):
            return
        gs = self.sync_deletion_timestamp(copy.deepcopy(gs))
        gs = self.sync_starting_state(gs)
        self.sync_running_state(gs)

    def sync_deletion_timestamp(self, gs: GameServer) -> GameServer:
        """For a deleting GameServer, delete its pod and remove the finalizer."""
        if gs.metadata.deletion_timestamp is None:
            return gs
        try:
            pod = self.get_pod(gs)
        except NotFoundError:
            pod = None
        if pod is not None and pod.metadata.deletion_timestamp is None:
            self.kube_client.pods.delete(pod.metadata.namespace, pod.metadata.name)
            self.recorder.event(
                gs, EVENT_NORMAL, gs.status.state.value, f"Deleting Pod {pod.metadata.name}"
            )
        gs.metadata.finalizers = [f for f in gs.metadata.finalizers if f != GROUP_NAME]
        logger.info("Removing finalizer %s from GameServer %s", GROUP_NAME, gs.metadata.name)
        return self.carrier_client.game_servers.update(gs)

    def try_allocate_ports(self, gs: GameServer) -> GameServer:
        """Allocate host ports for dynamic ports and write them back."""
        if not gs.spec.ports:
            return gs
        if is_dynamic_port_allocated(gs) or is_load_balancer_port_exist(gs):
            return gs
        allocate_type = get_allocate_type(gs)
        gs_copy = copy.deepcopy(gs)
        owner = get_owner(gs_copy)
        uid = gs.metadata.uid
        ports: list[int] = []
        if allocate_type == "":
            self.port_allocator.set_used(owner, uid, find_static_ports(gs))
            return gs
        if allocate_type == PORT_TYPE:
            ports = self.port_allocator.allocate(owner, uid, find_dynamic_port_number(gs_copy), False)
            set_host_port(gs_copy, ports)
        elif allocate_type == PORT_RANGE_TYPE:
            cpr = gs.spec.ports[0].container_port_range
            number = cpr.max_port - cpr.min_port + 1
            ports = self.port_allocator.allocate(owner, uid, number, True)
            set_host_port_range(gs_copy, ports)
        gs_copy.metadata.annotations[GAME_SERVER_DYNAMIC_PORT_ALLOCATED] = "true"
        try:
            return self.carrier_client.game_servers.update(gs_copy)
        except Exception:
            self.port_allocator.release(owner, gs_copy.metadata.uid, ports)
            logger.error("Write back port of %s failed", gs.metadata.name)
            raise

    def sync_starting_state(self, gs: GameServer) -> GameServer:
        """Create the pod of a new GameServer and move it to Starting."""
        if is_being_deleted(gs):
            return gs
        gs = self.try_allocate_ports(gs)
        if not is_dynamic_port_allocated(gs) and find_dynamic_port_number(gs) > 0:
            return gs
        try:
            pod = self.get_pod(gs)
        except NotFoundError:
            if gs.status.address or gs.status.node_name:
                gs.status.state = GameServerState.FAILED
                gs.status.conditions.append(
                    GameServerCondition(
                        type="PodDeleted",
                        last_probe_time=datetime.now(timezone.utc),
                        message="Pod deleted",
                    )
                )
                return self.carrier_client.game_servers.update_status(gs)
            return self.create_pod(gs)

        if pod.metadata.labels.get(GAME_SERVER_HASH, "") != gs.metadata.labels.get(GAME_SERVER_HASH, ""):
            pod_copy = copy.deepcopy(pod)
            update_pod_spec(gs, pod_copy)
            try:
                pod = self.kube_client.pods.update(pod_copy)
            except Exception as err:
                self.recorder.event(
                    gs,
                    EVENT_WARNING,
                    gs.status.state.value,
                    f"Pod {gs.metadata.name} controlled by GameServer failed updated, reason: {err}",
                )
                raise

        if gs.status.state == GameServerState.RUNNING and pod.status.phase == PodPhase.RUNNING:
            return gs
        if gs.status.state == GameServerState.STARTING:
            return gs
        gs.status.state = GameServerState.STARTING
        gs = self.carrier_client.game_servers.update_status(gs)
        self.recorder.event(
            gs,
            EVENT_NORMAL,
            gs.status.state.value,
            f"Pod {gs.metadata.name} controlled by GameServer created",
        )
        return gs

    def sync_running_state(self, gs: GameServer) -> GameServer:
        """Bring the GameServer's state, address and node in line with its pod."""
        if is_being_deleted(gs):
            return gs
        pod = self.get_pod(gs)
        old_hash = pod.metadata.labels.get(GAME_SERVER_HASH, "")
        new_hash = gs.metadata.labels.get(GAME_SERVER_HASH, "")
        if old_hash != new_hash or (not old_hash and not new_hash):
            pod_copy = copy.deepcopy(pod)
            update_pod_spec(gs, pod_copy)
            pod = self.kube_client.pods.update(pod_copy)

        if gs.status.state == GameServerState.UNKNOWN:
            return gs
        if gs.status.state not in (GameServerState.STARTING, GameServerState.RUNNING):
            logger.warning("Found unexpected state: %r", gs.status.state.value)
            return gs

        node: Optional[Node] = None
        node_name = pod.spec.node_name
        if not node_name:
            if not gs.status.node_name:
                raise RuntimeError(f"pod of GameServer: {gs.metadata.name} has not been scheduled")
        else:
            try:
                node = self.kube_client.nodes.get("", node_name)
            except NotFoundError:
                node = None

        previous = copy.deepcopy(gs.status)
        self._reconcile_state(gs, pod, node)
        updated = self._reconcile_address(gs, pod)
        if previous == gs.status:
            return gs
        gs = self.carrier_client.game_servers.update_status(gs)
        if updated:
            self.recorder.event(gs, EVENT_NORMAL, gs.status.state.value, "Address and port populated")
        if gs.status.state == GameServerState.RUNNING:
            self.recorder.event(
                gs, EVENT_NORMAL, gs.status.state.value, "Waiting for receiving readiness message"
            )
        return gs

    def remove_constraints(self, gs: GameServer) -> GameServer:
        """Drop NotInService constraints, saving the GameServer if any were present."""
        kept = [c for c in gs.spec.constraints if c.type != NOT_IN_SERVICE]
        if len(kept) == len(gs.spec.constraints):
            return gs
        gs.spec.constraints = kept
        return self.carrier_client.game_servers.update(gs)

    def create_pod(self, gs: GameServer) -> GameServer:
        """Create the pod backing ``gs``."""
        try:
            pod = build_pod(gs)
        except ContainerNotFoundError:
            self.recorder.event(
                gs, EVENT_WARNING, gs.status.state.value, f"build Pod for GameServer {gs.metadata.name}"
            )
            raise
        try:
            pod = self.kube_client.pods.create(pod)
        except AlreadyExistsError:
            self.recorder.event(gs, EVENT_NORMAL, gs.status.state.value, "Pod already exists")
            return gs
        except Exception as err:
            self.recorder.event(
                gs,
                EVENT_WARNING,
                gs.status.state.value,
                f"error creating Pod for GameServer {gs.metadata.name}: {err}",
            )
            raise
        self.recorder.event(gs, EVENT_NORMAL, gs.status.state.value, f"Creating pod {pod.metadata.name}")
        return gs

    def get_pod(self, gs: GameServer) -> Pod:
        """Return the pod of ``gs``; NotFoundError if absent or owned by something else."""
        pod = self.kube_client.pods.get(gs.metadata.namespace, gs.metadata.name)
        if not is_controlled_by(pod, gs):
            raise NotFoundError("pod", gs.metadata.name)
        return pod

    def _reconcile_address(self, gs: GameServer, pod: Pod) -> bool:
        if not gs.status.node_name or not gs.status.address:
            apply_game_server_address_and_port(gs, pod)
            return True
        return False

    def _reconcile_state(self, gs: GameServer, pod: Pod, node: Optional[Node]) -> None:
        if node is None:
            gs.status.state = GameServerState.FAILED
            return
        for status in pod.status.container_statuses:
            if status.name != GAME_SERVER_CONTAINER_NAME:
                continue
            phase = pod.status.phase
            if phase == PodPhase.RUNNING:
                if not status.terminated:
                    if is_out_of_service(gs) and is_deletable(gs):
                        gs.status.state = GameServerState.EXITED
                    else:
                        gs.status.state = GameServerState.RUNNING
                    return
                self.recorder.event(gs, EVENT_WARNING, gs.status.state.value, status.termination_message)
                if pod.spec.restart_policy == RestartPolicy.NEVER:
                    gs.status.state = GameServerState.EXITED
                    return
                gs.status.state = GameServerState.RUNNING
            elif phase == PodPhase.PENDING:
                gs.status.state = GameServerState.STARTING
            elif phase == PodPhase.FAILED:
                gs.status.state = GameServerState.FAILED
            elif phase == PodPhase.SUCCEEDED:
                gs.status.state = GameServerState.EXITED
            else:
                gs.status.state = GameServerState.UNKNOWN

    # Workers

    def _process(self, queue: RateLimitingQueue, handler: Callable[[str], None], timeout) -> bool:
        key = queue.get(timeout)
        if key is None:
            return False
        try:
            handler(key)
        except Exception:
            logger.exception("error syncing %s", key)
            queue.add_rate_limited(key)
        else:
            queue.forget(key)
        finally:
            queue.done(key)
        return True

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Sync the next queued GameServer; False on shutdown or timeout."""
        return self._process(self.queue, self.sync_game_server, timeout)

    def _worker(self, queue: RateLimitingQueue, handler, stop: threading.Event) -> None:
        while not stop.is_set():
            self._process(queue, handler, _WORKER_POLL)

    def run(self, workers: int, stop: threading.Event) -> None:
        """Run ``workers`` workers per queue until ``stop`` is set."""
        self.sync_port_allocated()
        threads = [
            threading.Thread(target=self._worker, args=(queue, handler, stop), daemon=True)
            for _ in range(workers)
            for queue, handler in (
                (self.queue, self.sync_game_server),
                (self.node_queue, self.sync_node_taint),
            )
        ]
        for thread in threads:
            thread.start()
        stop.wait()
        self.queue.shut_down()
        self.node_queue.shut_down()
        for thread in threads:
            thread.join()
        logger.info("GameServer controller workers shut down")