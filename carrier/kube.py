"""In-memory stand-ins for the cluster API: stores, clients, events and work queues."""

from __future__ import annotations

import copy
import heapq
import itertools
import logging
import random
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Generic, Hashable, Optional, TypeVar, Union

from carrier.model import GameServer, GameServerSet, Node, Pod

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NAME_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_NAME_SUFFIX_LENGTH = 5


class NotFoundError(LookupError):
    """Raised when a named object does not exist."""

    def __init__(self, resource: str, name: str) -> None:
        super().__init__(f'{resource} "{name}" not found')
        self.resource = resource
        self.name = name


class AlreadyExistsError(Exception):
    """Raised when creating an object whose name is already taken."""

    def __init__(self, resource: str, name: str) -> None:
        super().__init__(f'{resource} "{name}" already exists')
        self.resource = resource
        self.name = name


def meta_namespace_key(obj) -> str:
    """Return the ``namespace/name`` key of ``obj``; a string is taken as a key already."""
    if isinstance(obj, str):
        return obj
    meta = obj.metadata
    return f"{meta.namespace}/{meta.name}" if meta.namespace else meta.name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key into its namespace and name."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


@dataclass
class LabelSelector:
    """Selects labels that equal ``equals`` and differ from ``not_equals``."""

    equals: dict[str, str] = field(default_factory=dict)
    not_equals: dict[str, str] = field(default_factory=dict)

    def matches(self, labels: dict[str, str]) -> bool:
        """Tell whether ``labels`` satisfy every requirement."""
        if any(key not in labels or labels[key] != value for key, value in self.equals.items()):
            return False
        return all(labels.get(key) != value for key, value in self.not_equals.items())


class ObjectStore(Generic[T]):
    """Thread-safe store of objects keyed by namespace and name.

    Objects are copied on the way in and on the way out, so callers never
    share state with the store.
    """

    def __init__(self, resource: str = "object") -> None:
        self.resource = resource
        self._lock = threading.Lock()
        self._objects: dict[tuple[str, str], T] = {}

    @staticmethod
    def _key(obj) -> tuple[str, str]:
        return obj.metadata.namespace, obj.metadata.name

    def get(self, namespace: str, name: str) -> T:
        """Return a copy of the object, or raise NotFoundError."""
        with self._lock:
            try:
                return copy.deepcopy(self._objects[(namespace, name)])
            except KeyError:
                raise NotFoundError(self.resource, name) from None

    def list(self, namespace: Optional[str] = None, selector: Optional[LabelSelector] = None) -> list[T]:
        """Return copies of the objects in ``namespace`` (all if empty) matching ``selector``."""
        with self._lock:
            return [
                copy.deepcopy(obj)
                for (ns, _), obj in self._objects.items()
                if (not namespace or ns == namespace)
                and (selector is None or selector.matches(obj.metadata.labels))
            ]

    def create(self, obj: T) -> T:
        """Store a new object, naming it from ``generate_name`` when it has no name."""
        stored = copy.deepcopy(obj)
        meta = stored.metadata
        with self._lock:
            if not meta.name:
                if not meta.generate_name:
                    raise ValueError("name or generate_name is required")
                meta.name = self._unique_name(meta.namespace, meta.generate_name)
            key = self._key(stored)
            if key in self._objects:
                raise AlreadyExistsError(self.resource, meta.name)
            if not meta.uid:
                meta.uid = str(uuid.uuid4())
            if meta.creation_timestamp is None:
                meta.creation_timestamp = datetime.now(timezone.utc)
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def _unique_name(self, namespace: str, prefix: str) -> str:
        while True:
            suffix = "".join(random.choices(_NAME_ALPHABET, k=_NAME_SUFFIX_LENGTH))
            name = prefix + suffix
            if (namespace, name) not in self._objects:
                return name

    def add(self, obj: T) -> None:
        """Insert or replace an object without any checks."""
        with self._lock:
            self._objects[self._key(obj)] = copy.deepcopy(obj)

    def update(self, obj: T) -> T:
        """Replace an existing object, or raise NotFoundError."""
        key = self._key(obj)
        with self._lock:
            if key not in self._objects:
                raise NotFoundError(self.resource, obj.metadata.name)
            stored = copy.deepcopy(obj)
            self._objects[key] = stored
            return copy.deepcopy(stored)

    def update_status(self, obj: T) -> T:
        """Replace only the status of an existing object, or raise NotFoundError."""
        key = self._key(obj)
        with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(self.resource, obj.metadata.name)
            if hasattr(stored, "status"):
                stored.status = copy.deepcopy(obj.status)
            else:
                stored = copy.deepcopy(obj)
                self._objects[key] = stored
            return copy.deepcopy(stored)

    def delete(self, namespace: str, name: str) -> None:
        """Remove an object, or raise NotFoundError."""
        with self._lock:
            if self._objects.pop((namespace, name), None) is None:
                raise NotFoundError(self.resource, name)


class KubeClient:
    """Holds the pods and nodes of a cluster."""

    def __init__(self, *objects: Union[Pod, Node]) -> None:
        self.pods: ObjectStore[Pod] = ObjectStore("pods")
        self.nodes: ObjectStore[Node] = ObjectStore("nodes")
        for obj in objects:
            if isinstance(obj, Pod):
                self.pods.add(obj)
            elif isinstance(obj, Node):
                self.nodes.add(obj)
            else:
                raise TypeError(f"unsupported object: {type(obj).__name__}")

    def pods_on_node(self, node_name: str) -> list[Pod]:
        """Return the pods, in every namespace, scheduled to ``node_name``."""
        return [pod for pod in self.pods.list() if pod.spec.node_name == node_name]


class CarrierClient:
    """Holds the GameServers and GameServerSets of a cluster."""

    def __init__(self, *objects: Union[GameServer, GameServerSet]) -> None:
        self.game_servers: ObjectStore[GameServer] = ObjectStore("gameservers")
        self.game_server_sets: ObjectStore[GameServerSet] = ObjectStore("gameserversets")
        for obj in objects:
            if isinstance(obj, GameServer):
                self.game_servers.add(obj)
            elif isinstance(obj, GameServerSet):
                self.game_server_sets.add(obj)
            else:
                raise TypeError(f"unsupported object: {type(obj).__name__}")


class EventRecorder:
    """Records events about objects as ``(key, type, reason, message)`` tuples."""

    def __init__(self, component: str = "") -> None:
        self.component = component
        self.events: list[tuple[str, str, str, str]] = []
        self._lock = threading.Lock()

    def event(self, obj, event_type: str, reason: str, message: str) -> None:
        """Record an event about ``obj``."""
        key = meta_namespace_key(obj)
        with self._lock:
            self.events.append((key, event_type, reason, message))
        logger.info("Event(%s) %s %s %s: %s", self.component, key, event_type, reason, message)


class RateLimitingQueue:
    """Work queue with de-duplication and per-item fast/slow retry delays.

    An item is handed to at most one worker at a time; adding it again while
    it is being processed queues it once more after ``done``.
    """

    def __init__(self, fast_delay: float = 0.02, slow_delay: float = 0.5, max_fast_attempts: int = 5) -> None:
        self._fast_delay = fast_delay
        self._slow_delay = slow_delay
        self._max_fast_attempts = max_fast_attempts
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _insert(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def add(self, item: Hashable) -> None:
        """Queue ``item`` unless it is already waiting."""
        with self._cond:
            self._insert(item)

    def add_rate_limited(self, item: Hashable) -> None:
        """Queue ``item`` after a delay that grows with its failures."""
        with self._cond:
            if self._shutting_down:
                return
            attempts = self._failures.get(item, 0) + 1
            self._failures[item] = attempts
            delay = self._fast_delay if attempts <= self._max_fast_attempts else self._slow_delay
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._sequence), item))
            self._cond.notify_all()

    def forget(self, item: Hashable) -> None:
        """Clear the failure count of ``item``."""
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        """Return how many times ``item`` was rate-limited since it was last forgotten."""
        with self._cond:
            return self._failures.get(item, 0)

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Return the next item, or None on shutdown or when ``timeout`` runs out."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    _, _, ready = heapq.heappop(self._waiting)
                    self._insert(ready)
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    return item
                if self._shutting_down:
                    return None
                waits = []
                if self._waiting:
                    waits.append(self._waiting[0][0] - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    waits.append(remaining)
                self._cond.wait(min(waits) if waits else None)

    def done(self, item: Hashable) -> None:
        """Mark ``item`` as processed, queueing it again if it was re-added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting items and wake every waiting worker."""
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._cond.notify_all()