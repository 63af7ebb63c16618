"""Host port allocation within a fixed range."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field


class RangeFullError(Exception):
    """Raised when the range has no room for the requested ports."""

    def __init__(self, message: str = "range full") -> None:
        super().__init__(message)


@dataclass
class _Allocation:
    ports: list[int]
    owner_ids: set[str] = field(default_factory=set)


class MinMaxAllocator:
    """Thread-safe allocator of ports between ``low`` and ``high`` inclusive.

    Ports are shared per reference id: every game server id that allocates
    under the same reference gets the same ports, and the ports return to the
    pool once the last of those ids releases them.
    """

    def __init__(self, low: int, high: int) -> None:
        self._lock = threading.Lock()
        self._min = low
        self._max = high
        self._free = 1 + high - low
        self._used: set[int] = set()
        self._by_ref: dict[str, _Allocation] = {}

    def allocate(self, ref_id: str, uid: str, count: int, continuous: bool) -> list[int]:
        """Allocate ``count`` ports for ``ref_id``; contiguous if ``continuous``."""
        with self._lock:
            existing = self._by_ref.get(ref_id)
            if existing is not None:
                existing.owner_ids.add(uid)
                return list(existing.ports)

            if self._free < count:
                raise RangeFullError()

            low = self._min
            while True:
                ports = self._take(low, count)
                if not ports:
                    raise RangeFullError()
                if (len(ports) == count and not continuous) or ports[-1] - ports[0] == count - 1:
                    self._by_ref[ref_id] = _Allocation(ports=ports, owner_ids={uid})
                    return list(ports)
                self._release(ref_id, uid, ports)
                next_low = ports[-1]
                if next_low == self._max or next_low == low:
                    break
                low = next_low
            raise RangeFullError()

    def release(self, ref_id: str, uid: str, ports: list[int]) -> None:
        """Drop ``uid`` from ``ref_id``; free the ports when no id is left."""
        with self._lock:
            self._release(ref_id, uid, ports)

    def set_used(self, ref_id: str, uid: str, ports: list[int]) -> None:
        """Record ``ports`` as taken by ``ref_id`` on behalf of ``uid``."""
        with self._lock:
            existing = self._by_ref.get(ref_id)
            if existing is not None:
                existing.owner_ids.add(uid)
                return
            for port in ports:
                self._used.add(port)
                self._free -= 1
            self._by_ref[ref_id] = _Allocation(ports=list(ports), owner_ids={uid})

    def is_used(self, port: int) -> bool:
        """Tell whether ``port`` is currently taken."""
        with self._lock:
            return port in self._used

    def has_owner(self, ref_id: str) -> bool:
        """Tell whether ``ref_id`` currently holds ports."""
        with self._lock:
            return ref_id in self._by_ref

    def _take(self, low: int, count: int) -> list[int]:
        taken: list[int] = []
        for _ in range(count):
            port = next((p for p in range(low, self._max + 1) if p not in self._used), None)
            if port is None:
                continue
            self._used.add(port)
            self._free -= 1
            taken.append(port)
        return taken

    def _release(self, ref_id: str, uid: str, ports: list[int]) -> None:
        existing = self._by_ref.get(ref_id)
        if existing is not None:
            existing.owner_ids.discard(uid)
            if existing.owner_ids:
                return
        self._by_ref.pop(ref_id, None)
        for port in ports:
            if self._min <= port <= self._max:
                self._free += 1
                self._used.discard(port)