"""Helpers for GameServerSets: building members, reading annotations, listing owned servers."""

from __future__ import annotations

import copy
import re

from carrier.kube import LabelSelector, ObjectStore
from carrier.model import (
    GAME_SERVER_DELETION_COST,
    GAME_SERVER_IN_PLACE_UPDATE_ANNOTATION,
    GAME_SERVER_IN_PLACE_UPDATED_REPLICAS_ANNOTATION,
    GAME_SERVER_SET_LABEL_KEY,
    SCALING_IN_PROGRESS,
    SQUAD_NAME_LABEL_KEY,
    ConditionStatus,
    GameServer,
    GameServerSet,
    ObjectMeta,
    is_controlled_by,
    new_controller_ref,
)

MAX_DELETION_COST = 2**63 - 1
_MIN_INT64 = -(2**63)
_DECIMAL = re.compile(r"[+-]?[0-9]+")


class _InvalidDeletionCost(ValueError):
    def __init__(self, message: str, cost: int) -> None:
        super().__init__(message)
        self.cost = cost


def _parse_int64(text: str) -> int:
    if not _DECIMAL.fullmatch(text):
        raise ValueError(f"invalid syntax: {text!r}")
    value = int(text)
    if not _MIN_INT64 <= value <= MAX_DELETION_COST:
        raise ValueError(f"value out of range: {text!r}")
    return value


def build_game_server(gs_set: GameServerSet) -> GameServer:
    """Build a new GameServer from the set's template, owned by the set."""
    template_meta = gs_set.spec.template_metadata
    labels = {**gs_set.metadata.labels, **template_meta.labels}
    annotations = {**gs_set.metadata.annotations, **template_meta.annotations}
    spec = copy.deepcopy(gs_set.spec.template)
    spec.scheduling = gs_set.spec.scheduling
    labels[GAME_SERVER_SET_LABEL_KEY] = gs_set.metadata.name
    labels[SQUAD_NAME_LABEL_KEY] = gs_set.metadata.labels.get(SQUAD_NAME_LABEL_KEY, "")
    return GameServer(
        metadata=ObjectMeta(
            generate_name=f"{gs_set.metadata.name}-",
            namespace=gs_set.metadata.namespace,
            labels=labels,
            annotations=annotations,
            owner_references=[new_controller_ref(gs_set, "GameServerSet")],
        ),
        spec=spec,
    )


def is_game_server_set_scaling(gs_set: GameServerSet) -> bool:
    """Tell whether the set carries a true ScalingInProgress condition."""
    return any(
        c.type == SCALING_IN_PROGRESS and c.status == ConditionStatus.TRUE
        for c in gs_set.status.conditions
    )


def is_game_server_set_in_place_updating(gs_set: GameServerSet) -> tuple[bool, int]:
    """Return whether an in-place update is requested, and its threshold."""
    value = gs_set.metadata.annotations.get(GAME_SERVER_IN_PLACE_UPDATE_ANNOTATION)
    if value is None:
        return False, 0
    try:
        return True, _parse_int64(value)
    except ValueError:
        return False, 0


def _valid_first_digit(text: str) -> bool:
    if not text:
        return False
    return text[0] == "-" or text == "0" or "1" <= text[0] <= "9"


def get_deletion_cost(annotations: dict[str, str]) -> int:
    """Return the deletion cost annotation, or MAX_DELETION_COST when unset.

    An invalid value raises ValueError; its ``cost`` attribute holds the
    cost to fall back to (0 for a bad leading character such as ``+`` or a
    leading zero, MAX_DELETION_COST for any other parse failure).
    """
    value = annotations.get(GAME_SERVER_DELETION_COST)
    if value is None:
        return MAX_DELETION_COST
    if not _valid_first_digit(value):
        raise _InvalidDeletionCost(f"invalid value {value!r}", 0)
    try:
        return _parse_int64(value)
    except ValueError as err:
        raise _InvalidDeletionCost(str(err), MAX_DELETION_COST) from err


def get_in_place_updated_replicas(gs_set: GameServerSet) -> int:
    """Return how many replicas the set records as updated in place."""
    value = gs_set.metadata.annotations.get(GAME_SERVER_IN_PLACE_UPDATED_REPLICAS_ANNOTATION)
    if value is None:
        return 0
    try:
        return _parse_int64(value)
    except ValueError:
        return 0


def list_game_servers_by_owner(store: ObjectStore, gs_set: GameServerSet) -> list[GameServer]:
    """List the GameServers in ``store`` selected by and controlled by ``gs_set``."""
    match = gs_set.spec.selector or {GAME_SERVER_SET_LABEL_KEY: gs_set.metadata.name}
    candidates = store.list(None, LabelSelector(equals=dict(match)))
    return [gs for gs in candidates if is_controlled_by(gs, gs_set)]