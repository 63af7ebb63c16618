"""Decisions a GameServerSet makes about its members: how many to add or remove, and which."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Optional

from carrier.gameserver_util import (
    is_before_running,
    is_being_deleted,
    is_deletable,
    is_deletable_with_gates,
    is_in_place_updating,
    is_out_of_service,
    is_ready,
    is_stopped,
    set_in_place_updating_status,
)
from carrier.gameserverset_sort import (
    NodeCounter,
    sort_by_cost,
    sort_by_creation_time,
    sort_by_hash,
    sort_by_pod_num,
)
from carrier.gameserverset_util import (
    MAX_DELETION_COST,
    get_deletion_cost,
    is_game_server_set_in_place_updating,
    is_game_server_set_scaling,
)
from carrier.model import (
    GAME_SERVER_CONTAINER_NAME,
    GAME_SERVER_HASH,
    GameServer,
    GameServerSet,
    GameServerSetStatus,
    GameServerState,
    ResourceRequirements,
    SchedulingStrategy,
)

logger = logging.getLogger(__name__)

BURST_REPLICAS = 64


@dataclass
class Expectation:
    """What a GameServerSet should do next: servers to add, servers to delete."""

    to_add: int = 0
    to_delete: list[GameServer] = field(default_factory=list)
    exceed_burst: bool = False


def exclude_constraints(gs_set: GameServerSet) -> bool:
    """Tell whether servers carrying constraints are left out of the set's counts."""
    return bool(gs_set.spec.exclude_constraints)


def classify_game_servers(
    servers: list[GameServer], updating: bool
) -> tuple[list[GameServer], list[GameServer], list[GameServer]]:
    """Split servers into deletables, delete candidates and runnings.

    Deletables start with servers being updated in place (kept only when
    ``updating``), then servers not yet running, then stopped or deletable ones.
    """
    in_place_updatings: list[GameServer] = []
    not_readys: list[GameServer] = []
    deletables: list[GameServer] = []
    candidates: list[GameServer] = []
    runnings: list[GameServer] = []
    for gs in servers:
        if is_stopped(gs):
            deletables.append(gs)
        elif is_in_place_updating(gs):
            if updating:
                in_place_updatings.append(gs)
        elif is_before_running(gs):
            not_readys.append(gs)
        elif is_deletable(gs):
            deletables.append(gs)
        elif is_out_of_service(gs):
            candidates.append(gs)
        else:
            runnings.append(gs)
    return in_place_updatings + not_readys + deletables, candidates, runnings


def sort_game_servers(
    servers: list[GameServer],
    strategy: Optional[SchedulingStrategy],
    counter: NodeCounter,
) -> list[GameServer]:
    """Order servers for removal: by deletion cost, then by the scheduling policy."""
    if not servers:
        return servers
    servers = sort_by_cost(servers)
    try:
        cost = get_deletion_cost(servers[0].metadata.annotations)
    except ValueError as err:
        cost = getattr(err, "cost", 0)
    if cost == MAX_DELETION_COST:
        if strategy == SchedulingStrategy.MOST_ALLOCATED:
            servers = sort_by_pod_num(servers, counter)
        else:
            servers = sort_by_creation_time(servers)
    return servers


def compute_expectation(
    gs_set: GameServerSet, servers: list[GameServer], counter: NodeCounter
) -> Expectation:
    """Work out how many servers to add and which servers to delete."""
    scaling = is_game_server_set_scaling(gs_set)
    exclude = exclude_constraints(gs_set)
    up_count = 0
    potential: list[GameServer] = []
    to_delete: list[GameServer] = []

    for gs in servers:
        if gs.metadata.deletion_timestamp is not None:
            continue
        state = gs.status.state
        if state in (GameServerState.NONE, GameServerState.UNKNOWN, GameServerState.STARTING):
            up_count += 1
        elif state == GameServerState.RUNNING:
            if is_out_of_service(gs) and exclude and not is_in_place_updating(gs):
                logger.debug("GameServer %s is out of service and excluded", gs.metadata.name)
                continue
            if is_deletable_with_gates(gs):
                logger.debug("GameServer %s is ready to be deleted", gs.metadata.name)
                to_delete.append(gs)
                continue
            up_count += 1
        else:
            logger.info("GS state: %s", state.value)
            to_delete.append(gs)
            continue
        potential.append(gs)

    diff = gs_set.spec.replicas - up_count
    expectation = Expectation(to_delete=to_delete)
    logger.info("targetReplicaCount: %d, upcount: %d", gs_set.spec.replicas, up_count)
    if diff > 0:
        expectation.to_add = diff
        if diff > BURST_REPLICAS:
            expectation.to_add = BURST_REPLICAS
            expectation.exceed_burst = True
    elif diff < 0:
        count = -diff
        if scaling:
            deletables, candidates, runnings = classify_game_servers(list(potential), False)
            runnings = sort_game_servers(runnings, gs_set.spec.scheduling, counter)
            in_place_updating, _ = is_game_server_set_in_place_updating(gs_set)
            if in_place_updating:
                runnings = sort_by_hash(runnings, gs_set)
            potential = deletables + candidates + runnings
        else:
            potential = sort_game_servers(potential, gs_set.spec.scheduling, counter)
        count = min(count, len(potential))
        if count > BURST_REPLICAS:
            count = BURST_REPLICAS
            expectation.exceed_burst = True
        expectation.to_delete.extend(potential[:count])
    return expectation


def compute_status(servers: list[GameServer], gs_set: GameServerSet) -> GameServerSetStatus:
    """Count the set's live replicas and the ready ones among them."""
    status = GameServerSetStatus()
    exclude = exclude_constraints(gs_set)
    for gs in servers:
        if is_being_deleted(gs):
            continue
        status.replicas += 1
        if gs.status.state != GameServerState.RUNNING:
            continue
        if is_deletable_with_gates(gs):
            continue
        if is_out_of_service(gs) and exclude:
            continue
        if is_ready(gs):
            status.ready_replicas += 1
    return status


def update_game_server_spec(gs_set: GameServerSet, gs: GameServer) -> None:
    """Give ``gs`` the set's version: hash label, server image and resources."""
    gs.metadata.labels[GAME_SERVER_HASH] = gs_set.metadata.labels.get(GAME_SERVER_HASH, "")
    image = ""
    resources = ResourceRequirements()
    for container in gs_set.spec.template.template.containers:
        if container.name == GAME_SERVER_CONTAINER_NAME:
            image = container.image
            resources = container.resources
    for container in gs.spec.template.containers:
        if container.name != GAME_SERVER_CONTAINER_NAME:
            continue
        container.image = image
        container.resources = copy.deepcopy(resources)
    gs.spec.constraints = []
    set_in_place_updating_status(gs, "false")