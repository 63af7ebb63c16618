from datetime import datetime, timedelta, timezone

from carrier.gameserverset_sort import (
    NodeCounter,
    sort_by_cost,
    sort_by_creation_time,
    sort_by_hash,
    sort_by_pod_num,
)
from carrier.model import (
    GAME_SERVER_DELETION_COST,
    GAME_SERVER_HASH,
    GameServer,
    GameServerSet,
    GameServerStatus,
    ObjectMeta,
)


def _gs(name, node="", created=None, annotations=None, labels=None):
    return GameServer(
        metadata=ObjectMeta(
            name=name,
            creation_timestamp=created,
            annotations=annotations or {},
            labels=labels or {},
        ),
        status=GameServerStatus(node_name=node),
    )


def _names(servers):
    return [gs.metadata.name for gs in servers]


def test_by_count():
    servers = [_gs("test", "node1"), _gs("test1", "node2"), _gs("test2", "node1")]
    counter = NodeCounter({"node1": 2, "node2": 1})
    assert _names(sort_by_pod_num(servers, counter)) == ["test1", "test", "test2"]


def test_by_count_unknown_node_first():
    servers = [_gs("test", "node1"), _gs("test1", "")]
    counter = NodeCounter({"node1": 2})
    assert _names(sort_by_pod_num(servers, counter)) == ["test1", "test"]


def test_by_creation_time():
    now = datetime.now(timezone.utc)
    servers = [
        _gs("test", "node1", now + timedelta(seconds=1)),
        _gs("test1", "node2", now + timedelta(seconds=2)),
        _gs("test2", "node1", now + timedelta(seconds=1)),
    ]
    assert _names(sort_by_creation_time(servers)) == ["test", "test2", "test1"]


def test_by_cost():
    servers = [
        _gs("test", annotations={GAME_SERVER_DELETION_COST: "1"}),
        _gs("test1", annotations={GAME_SERVER_DELETION_COST: "2"}),
    ]
    assert _names(sort_by_cost(servers)) == ["test", "test1"]


def test_by_cost_reorders_and_puts_invalid_first():
    servers = [
        _gs("high", annotations={GAME_SERVER_DELETION_COST: "3000"}),
        _gs("unset"),
        _gs("low", annotations={GAME_SERVER_DELETION_COST: "1000"}),
        _gs("bad", annotations={GAME_SERVER_DELETION_COST: "+10"}),
    ]
    assert _names(sort_by_cost(servers)) == ["bad", "low", "high", "unset"]


def test_by_hash():
    servers = [
        _gs("test", labels={GAME_SERVER_HASH: "1"}),
        _gs("test1", labels={GAME_SERVER_HASH: "2"}),
    ]
    gs_set = GameServerSet(metadata=ObjectMeta(name="testa", labels={GAME_SERVER_HASH: "1"}))
    assert _names(sort_by_hash(servers, gs_set)) == ["test1", "test"]


def test_sorts_return_same_list():
    servers = [_gs("b"), _gs("a")]
    assert sort_by_creation_time(servers) is servers
    assert _names(servers) == ["a", "b"]


def test_counter_inc_dec():
    counter = NodeCounter()
    assert counter.count("node1") is None
    counter.inc("node1")
    counter.inc("node1")
    assert counter.count("node1") == 2
    counter.dec("node1")
    assert counter.count("node1") == 1
    counter.dec("node1")
    assert counter.count("node1") is None
    counter.dec("node1")
    assert counter.count("node1") is None