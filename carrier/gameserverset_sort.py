"""Orderings of GameServers used to pick which ones to remove or update first."""

from __future__ import annotations

import threading
from typing import Optional

from carrier.gameserverset_util import get_deletion_cost
from carrier.model import GAME_SERVER_HASH, GameServer, GameServerSet


class NodeCounter:
    """Thread-safe count of GameServers placed on each node."""

    def __init__(self, counts: Optional[dict[str, int]] = None) -> None:
        self._lock = threading.Lock()
        self._counts: dict[str, int] = dict(counts or {})

    def count(self, node: str) -> Optional[int]:
        """Return the count for ``node``, or None if the node is unknown."""
        with self._lock:
            return self._counts.get(node)

    def inc(self, node: str) -> None:
        """Count one more GameServer on ``node``."""
        with self._lock:
            self._counts[node] = self._counts.get(node, 0) + 1

    def dec(self, node: str) -> None:
        """Count one fewer GameServer on ``node``, forgetting it at zero."""
        with self._lock:
            count = self._counts.get(node)
            if count is None:
                return
            if count <= 1:
                del self._counts[node]
            else:
                self._counts[node] = count - 1


def sort_by_pod_num(servers: list[GameServer], counter: NodeCounter) -> list[GameServer]:
    """Sort in place: unknown nodes first, then the least full nodes, then by name."""

    def key(gs: GameServer):
        count = counter.count(gs.status.node_name)
        if count is None:
            return (0, 0, "")
        return (1, count, gs.metadata.name)

    servers.sort(key=key)
    return servers


def sort_by_cost(servers: list[GameServer]) -> list[GameServer]:
    """Sort in place by deletion cost, invalid costs first."""

    def key(gs: GameServer):
        try:
            return (1, get_deletion_cost(gs.metadata.annotations))
        except ValueError:
            return (0, 0)

    servers.sort(key=key)
    return servers


def sort_by_creation_time(servers: list[GameServer]) -> list[GameServer]:
    """Sort in place, oldest first, ties broken by name."""

    def key(gs: GameServer):
        created = gs.metadata.creation_timestamp
        if created is None:
            return (0, gs.metadata.name)
        return (1, created, gs.metadata.name)

    servers.sort(key=key)
    return servers


def sort_by_hash(servers: list[GameServer], gs_set: GameServerSet) -> list[GameServer]:
    """Sort in place: old versions first, then the set's current version by name."""
    wanted = gs_set.metadata.labels.get(GAME_SERVER_HASH, "")

    def key(gs: GameServer):
        if gs.metadata.labels.get(GAME_SERVER_HASH, "") == wanted:
            return (1, gs.metadata.name)
        return (0, "")

    servers.sort(key=key)
    return servers