# carrier

Controllers for game server workloads, written as plain Python objects that
work against in-memory stores. Nothing beyond the standard library is needed.

## What is in the package

- `carrier.model`: dataclasses for the resources (`GameServer`,
  `GameServerSet`, `Pod`, `Node` and their parts), enums such as
  `GameServerState` and `PortPolicy`, the label and annotation keys, and the
  owner helpers `controller_of`, `is_controlled_by` and `new_controller_ref`.
- `carrier.allocator`: `MinMaxAllocator` hands out single or contiguous host
  ports from a fixed range. Ports are shared by every id allocating under the
  same reference id and go back to the pool when the last of those ids
  releases them. `RangeFullError` is raised when no fitting ports remain.
- `carrier.gameserver_util`: predicates and helpers on GameServers
  (`is_ready`, `is_deletable`, `is_out_of_service`, `build_pod`,
  `find_ports`, `add_not_in_service_constraint`, ...).
- `carrier.kube`: the API surface the controllers use. `ObjectStore` is a
  thread-safe store keyed by namespace and name that copies objects in and
  out; `KubeClient` holds pods and nodes, `CarrierClient` holds GameServers
  and GameServerSets; `EventRecorder` keeps events as tuples in its `events`
  list; `RateLimitingQueue` is a de-duplicating work queue with fast/slow
  retry delays; `LabelSelector` matches labels by equality and inequality.
- `carrier.gameserverset_util`, `carrier.gameserverset_sort` and
  `carrier.gameserverset_policy`: building GameServers from a set, reading
  the set's annotations, ordering servers (by deletion cost, node packing via
  `NodeCounter`, creation time or version hash), and `compute_expectation` /
  `compute_status`.
- `carrier.gameserver_controller.GameServerController`: creates the backing
  pod, allocates dynamic host ports, follows pod and node state into the
  GameServer status, deletes the pod and removes the finalizer on deletion,
  and marks servers on nodes tainted `ToBeDeletedByClusterAutoscaler` as not
  in service.
- `carrier.gameserverset_controller.GameServerSetController`: keeps the
  number of GameServers at the desired replica count, picks which servers go
  first, and performs in-place image and resource updates.

## Allocating ports

```python
from carrier.allocator import MinMaxAllocator, RangeFullError

allocator = MinMaxAllocator(7000, 7100)
ports = allocator.allocate("squad-a", "uid-1", 3, True)   # [7000, 7001, 7002]
same = allocator.allocate("squad-a", "uid-2", 3, True)    # the same ports
allocator.release("squad-a", "uid-1", ports)
allocator.release("squad-a", "uid-2", ports)              # now free again
allocator.is_used(7000)                                   # False
```

## Deciding how to scale a set

```python
from carrier.gameserverset_policy import compute_expectation
from carrier.gameserverset_sort import NodeCounter

expectation = compute_expectation(gs_set, servers, NodeCounter())
expectation.to_add        # how many GameServers to create
expectation.to_delete     # which GameServers to delete, in order
expectation.exceed_burst  # True when more than 64 were needed at once
```

## Driving the controllers

```python
import threading

from carrier.kube import CarrierClient, KubeClient
from carrier.gameserver_controller import GameServerController
from carrier.gameserverset_controller import GameServerSetController

kube = KubeClient()
carrier = CarrierClient(gs_set)

sets = GameServerSetController(carrier)
sets.sync("default/my-set")          # reconcile one set directly

servers = GameServerController(kube, carrier, 7000, 8000)
servers.enqueue_game_server(game_server)
servers.process_next(timeout=0.1)    # sync one queued GameServer

stop = threading.Event()
# servers.run(2, stop) blocks, running workers until stop.set()
```

Errors raised while syncing are logged and the key is queued again with a
rate-limited delay.

## What the package does not do

It does not talk to a real cluster: there is no API client, no watch or
informer, and no persistent storage. The stores in `carrier.kube` live in
memory, and the event handlers (`on_pod_updated`, `on_node_added`,
`on_game_server_added`, ...) must be called by whoever feeds changes in.
There is no command-line program.

## Running the tests

```
pip install .[test]
pytest
```