"""Controller that keeps each GameServerSet at its desired number and version of GameServers."""

from __future__ import annotations

import copy
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Sequence

from carrier.gameserver_util import (
    add_not_in_service_constraint,
    apply_defaults,
    can_in_place_updating,
    is_before_running,
    is_being_deleted,
    is_deletable_exist,
    is_in_place_updating,
    is_readiness_exist,
    is_ready,
    set_in_place_updating_status,
)
from carrier.gameserverset_policy import (
    BURST_REPLICAS,
    classify_game_servers,
    compute_expectation,
    compute_status,
    update_game_server_spec,
)
from carrier.gameserverset_sort import NodeCounter, sort_by_creation_time
from carrier.gameserverset_util import (
    build_game_server,
    get_in_place_updated_replicas,
    is_game_server_set_in_place_updating,
    list_game_servers_by_owner,
)
from carrier.kube import (
    CarrierClient,
    EventRecorder,
    LabelSelector,
    NotFoundError,
    RateLimitingQueue,
    meta_namespace_key,
    split_meta_namespace_key,
)
from carrier.model import (
    GAME_SERVER_HASH,
    GAME_SERVER_IN_PLACE_UPDATED_REPLICAS_ANNOTATION,
    GAME_SERVER_SET_LABEL_KEY,
    GameServer,
    GameServerSet,
    controller_of,
)

logger = logging.getLogger(__name__)

EVENT_NORMAL = "Normal"

_WORKER_POLL = 0.1
_UPDATE_INTERVAL = 0.05
_UPDATE_TIMEOUT = 1.0


class _AggregateError(RuntimeError):
    """Several errors raised by parallel work, reported together."""

    def __init__(self, errors: Sequence[Exception]) -> None:
        self.errors = list(errors)
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            message = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(message)


def _raise_if_any(errors: Sequence[Exception]) -> None:
    if errors:
        raise _AggregateError(errors)


def _parallelize(items: Sequence, work: Callable) -> list[Exception]:
    """Run ``work`` on every item with up to BURST_REPLICAS threads; collect its errors."""
    errors: list[Exception] = []
    if not items:
        return errors
    lock = threading.Lock()

    def run(item) -> None:
        try:
            work(item)
        except Exception as err:  # collected and reported together
            with lock:
                errors.append(err)

    with ThreadPoolExecutor(max_workers=min(BURST_REPLICAS, len(items))) as pool:
        list(pool.map(run, items))
    return errors


class GameServerSetController:
    """Scales GameServerSets up and down and updates their GameServers in place."""

    def __init__(self, carrier_client: CarrierClient, recorder: Optional[EventRecorder] = None) -> None:
        self.carrier_client = carrier_client
        self.recorder = recorder if recorder is not None else EventRecorder("gameserverset-controller")
        self.counter = NodeCounter()
        self.queue = RateLimitingQueue(0.02, 0.5, 5)

    # Event handlers

    def on_game_server_added(self, gs: GameServer) -> None:
        """Count a new scheduled GameServer and queue its owner."""
        if gs.metadata.deletion_timestamp is None and gs.status.node_name:
            self.counter.inc(gs.status.node_name)
        self._handle_game_server(gs)

    def on_game_server_updated(self, old: GameServer, new: GameServer) -> None:
        """Queue the owner of a live GameServer and count it once it is scheduled."""
        if new.metadata.deletion_timestamp is None:
            self._handle_game_server(new)
        if not old.status.node_name and new.status.node_name:
            self.counter.inc(new.status.node_name)

    def on_game_server_deleted(self, gs) -> None:
        """Uncount a deleted GameServer and queue its owner."""
        if not isinstance(gs, GameServer):
            return
        if gs.status.node_name:
            self.counter.dec(gs.status.node_name)
        self._handle_game_server(gs)

    def _handle_game_server(self, gs: GameServer) -> None:
        ref = controller_of(gs)
        if ref is None:
            return
        try:
            gs_set = self.carrier_client.game_server_sets.get(gs.metadata.namespace, ref.name)
        except NotFoundError:
            logger.info("Owner GameServerSet no longer available for syncing, ref: %s", ref.name)
            return
        self.enqueue(gs_set)

    def enqueue(self, obj) -> None:
        """Queue the GameServerSet ``obj`` (an object or a key) for syncing."""
        self.queue.add_rate_limited(meta_namespace_key(obj))

    def forget(self, obj) -> None:
        """Drop the retry history of the GameServerSet ``obj``."""
        self.queue.forget(meta_namespace_key(obj))

    # Reconciliation

    def sync(self, key: str) -> None:
        """Reconcile the number and version of GameServers of the set under ``key``."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            logger.error("invalid resource key %r", key)
            return
        logger.debug("Sync gameServerSet %s", key)
        try:
            gs_set = self.carrier_client.game_server_sets.get(namespace, name)
        except NotFoundError:
            logger.debug("GameServerSet %s is no longer available for syncing", key)
            return
        gs_set = copy.deepcopy(gs_set)
        servers = list_game_servers_by_owner(self.carrier_client.game_servers, gs_set)
        self.manage_replicas(key, servers, gs_set)
        self.sync_status(gs_set, servers)

    def manage_replicas(self, key: str, servers: list[GameServer], gs_set: GameServerSet) -> None:
        """Add or remove GameServers to meet the desired replicas, then update in place."""
        logger.info("Current GameServer number of GameServerSet %s: %d", key, len(servers))
        expectation = compute_expectation(gs_set, servers, self.counter)
        status = compute_status(servers, gs_set)
        to_add = expectation.to_add
        to_delete = expectation.to_delete
        try:
            if to_add > 0:
                try:
                    self.create_game_servers(gs_set, to_add)
                except Exception as err:
                    logger.error("error adding game servers: %s", err)
            if to_delete:
                deletables, candidates, runnings = classify_game_servers(to_delete, False)
                self.recorder.event(
                    gs_set,
                    EVENT_NORMAL,
                    "ToDelete",
                    f"Created GameServer: {len(servers)}, can delete: {len(to_delete)}",
                )
                logger.info(
                    "toDeleteList toDeletes %d, candidates %d, runnings %d",
                    len(deletables),
                    len(candidates),
                    len(runnings),
                )
                self.delete_game_servers(gs_set, deletables)
                self.mark_out_of_service(gs_set, runnings)

            gs_set = self.sync_status(gs_set, servers)
            if status.replicas - len(to_delete) + to_add != gs_set.spec.replicas:
                raise RuntimeError(
                    f"GameServerSet {key} actual replicas: {gs_set.status.replicas}, "
                    f"desired: {gs_set.spec.replicas}, to delete {len(to_delete)}, to add: {to_add}"
                )
            self.do_in_place_update(gs_set)
        finally:
            if expectation.exceed_burst:
                self.queue.add(key)

    def _old_and_new_replicas(self, gs_set: GameServerSet) -> tuple[list[GameServer], list[GameServer]]:
        wanted = gs_set.metadata.labels.get(GAME_SERVER_HASH, "")
        name = gs_set.metadata.name
        store = self.carrier_client.game_servers
        new = store.list(None, LabelSelector(equals={GAME_SERVER_HASH: wanted, GAME_SERVER_SET_LABEL_KEY: name}))
        old = store.list(
            None,
            LabelSelector(equals={GAME_SERVER_SET_LABEL_KEY: name}, not_equals={GAME_SERVER_HASH: wanted}),
        )
        return old, new

    def do_in_place_update(self, gs_set: GameServerSet) -> None:
        """Move old-version GameServers to the set's version, up to the requested threshold."""
        in_place_updating, desired = is_game_server_set_in_place_updating(gs_set)
        if not in_place_updating:
            return
        old_servers, new_servers = self._old_and_new_replicas(gs_set)
        diff = desired - len(new_servers)
        updated_count = get_in_place_updated_replicas(gs_set)
        logger.debug(
            "desired: %d, diff: %d, new version: %d, updated: %d",
            desired,
            diff,
            len(new_servers),
            updated_count,
        )
        if diff <= 0 or updated_count >= desired:
            if len(new_servers) > updated_count:
                gs_set.metadata.annotations[GAME_SERVER_IN_PLACE_UPDATED_REPLICAS_ANNOTATION] = str(
                    len(new_servers)
                )
                self.carrier_client.game_server_sets.update(gs_set)
            return

        can_updates, waitings, runnings = classify_game_servers(old_servers, True)
        candidates = (
            sort_by_creation_time(can_updates)
            + sort_by_creation_time(waitings)
            + sort_by_creation_time(runnings)
        )
        candidates = candidates[:diff]

        self.mark_out_of_service(gs_set, candidates, lambda gs: set_in_place_updating_status(gs, "true"))

        updated, update_errors = self._in_place_update(gs_set, candidates)
        poll_error = self._record_updated_replicas(gs_set, updated + updated_count)
        _raise_if_any(update_errors)
        if poll_error is not None:
            raise poll_error

    def _record_updated_replicas(self, gs_set: GameServerSet, total: int) -> Optional[Exception]:
        store = self.carrier_client.game_server_sets
        deadline = time.monotonic() + _UPDATE_TIMEOUT
        while True:
            gs_set.metadata.annotations[GAME_SERVER_IN_PLACE_UPDATED_REPLICAS_ANNOTATION] = str(total)
            try:
                store.update(gs_set)
                return None
            except NotFoundError:
                try:
                    gs_set = store.get(gs_set.metadata.namespace, gs_set.metadata.name)
                except NotFoundError:
                    pass
            except Exception as err:
                return err
            if time.monotonic() + _UPDATE_INTERVAL > deadline:
                return TimeoutError("timed out waiting for the condition")
            time.sleep(_UPDATE_INTERVAL)

    def create_game_servers(self, gs_set: GameServerSet, count: int) -> None:
        """Create ``count`` GameServers from the set's template."""
        logger.info("Adding more GameServers: %s, count: %d", gs_set.metadata.name, count)
        gs = build_game_server(gs_set)
        apply_defaults(gs)

        def create(_: int) -> None:
            try:
                created = self.carrier_client.game_servers.create(gs)
            except Exception as err:
                raise RuntimeError(
                    f"error creating GameServer for GameServerSet {gs_set.metadata.name}: {err}"
                ) from err
            self.recorder.event(
                gs_set, EVENT_NORMAL, "SuccessfulCreate", f"Created GameServer : {created.metadata.name}"
            )

        _raise_if_any(_parallelize(range(count), create))

    def delete_game_servers(self, gs_set: GameServerSet, servers: list[GameServer]) -> None:
        """Delete GameServers, re-checking readiness of those not yet running."""
        logger.info("Deleting GameServers: %s, to delete %d", gs_set.metadata.name, len(servers))
        store = self.carrier_client.game_servers

        def delete(gs: GameServer) -> None:
            name = gs.metadata.name
            if is_before_running(gs):
                try:
                    fresh = store.get(gs.metadata.namespace, name)
                except Exception as err:
                    raise RuntimeError(f"error checking GameServer {name} status: {err}") from err
                if is_ready(fresh) and is_readiness_exist(fresh):
                    logger.info("GameServer %s is not before ready now, will not delete", name)
                    return
            try:
                store.delete(gs.metadata.namespace, name)
            except NotFoundError:
                pass
            except Exception as err:
                logger.error("error deleting GameServer %s: %s", name, err)
                return
            self.recorder.event(
                gs_set,
                EVENT_NORMAL,
                "SuccessfulDelete",
                f"Deleted delatable GameServer in state {gs.status.state.value} : {name}",
            )

        _raise_if_any(_parallelize(servers, delete))

    def mark_out_of_service(self, gs_set: GameServerSet, servers: list[GameServer], *args) -> None:
        """Mark running GameServers not in service, applying each option in ``args`` first."""
        logger.info("Marking GameServers not in service: %s, count %d", gs_set.metadata.name, len(servers))
        store = self.carrier_client.game_servers

        def mark(gs: GameServer) -> None:
            gs_copy = copy.deepcopy(gs)
            if is_before_running(gs_copy) or is_in_place_updating(gs_copy) or is_being_deleted(gs_copy):
                return
            for option in args:
                option(gs_copy)
            if is_deletable_exist(gs_copy):
                add_not_in_service_constraint(gs_copy)
            try:
                store.update(gs_copy)
            except Exception as err:
                raise RuntimeError(
                    f"error updating GameServer {gs.metadata.name} to not in service: {err}"
                ) from err
            self.recorder.event(
                gs_set, EVENT_NORMAL, "Successful Mark ", f"Mark GameServer not in service: {gs.metadata.name}"
            )

        _raise_if_any(_parallelize(servers, mark))

    def _in_place_update(
        self, gs_set: GameServerSet, servers: list[GameServer]
    ) -> tuple[int, list[Exception]]:
        logger.info("Updating GameServers: %s, to update %d", gs_set.metadata.name, len(servers))
        store = self.carrier_client.game_servers
        lock = threading.Lock()
        count = 0

        def update(gs: GameServer) -> None:
            nonlocal count
            name = gs.metadata.name
            gs_copy = copy.deepcopy(gs)
            if not can_in_place_updating(gs_copy):
                return
            if is_before_running(gs_copy):
                try:
                    fresh = store.get(gs_copy.metadata.namespace, name)
                except Exception as err:
                    raise RuntimeError(f"error checking GameServer {name} status: {err}") from err
                if is_ready(fresh) and is_readiness_exist(fresh):
                    logger.info("GameServer %s is not before ready now, will not update", name)
                    return
            gs_copy.status.conditions = []
            try:
                gs_copy = store.update_status(gs_copy)
            except Exception as err:
                raise RuntimeError(f"error updating GameServer {name} status for condition: {err}") from err
            update_game_server_spec(gs_set, gs_copy)
            try:
                store.update(gs_copy)
            except Exception as err:
                raise RuntimeError(f"error inpalce updating GameServer: {name}: {err}") from err
            with lock:
                count += 1
            self.recorder.event(
                gs_set, EVENT_NORMAL, "SuccessfulUpdate", f"Update GameServer in place success: {name}"
            )

        errors = _parallelize(servers, update)
        return count, errors

    def in_place_update_game_servers(self, gs_set: GameServerSet, servers: list[GameServer]) -> int:
        """Update the given GameServers to the set's version; return how many were updated."""
        count, errors = self._in_place_update(gs_set, servers)
        _raise_if_any(errors)
        return count

    def sync_status(self, gs_set: GameServerSet, servers: list[GameServer]) -> GameServerSet:
        """Write the set's replica counts when they differ from what is stored."""
        status = compute_status(servers, gs_set)
        status.conditions = gs_set.status.conditions
        if gs_set.status == status:
            return gs_set
        gs_set.status = status
        return self.carrier_client.game_server_sets.update_status(gs_set)

    # Workers

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Sync the next queued GameServerSet; False on shutdown or timeout."""
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            self.sync(key)
        except Exception:
            logger.exception("error syncing %s", key)
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _worker(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self.process_next(_WORKER_POLL)

    def run(self, workers: int, stop: threading.Event) -> None:
        """Run ``workers`` workers until ``stop`` is set."""
        threads = [threading.Thread(target=self._worker, args=(stop,), daemon=True) for _ in range(workers)]
        for thread in threads:
            thread.start()
        stop.wait()
        self.queue.shut_down()
        for thread in threads:
            thread.join()
        logger.info("GameServerSet controller workers shut down")