"""Sharded alarm task synchronization across a fleet of alerting nodes.
"""
import bisect
import functools
import hashlib
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from types import MappingProxyType

from alarmsync import tick
from alarmsync.config import LIST_FAIL_FAST, SyncConfig
from alarmsync.kapacitor import KapacitorClient
from alarmsync.models import Alarm, EmptyRing, ForeignTask, ListError
from alarmsync.models import NodeUnavailable, Task, TaskType

logger = logging.getLogger(__name__)

__all__ = ['AlarmSync', 'HashRing', 'NodeRegistry', 'NodeOperations', 'Reconciler',
           'ReconcileReport', 'Topology', 'compute_reconcile_plan']


# ============================================================
# UTILITY FUNCTIONS
# ============================================================

def log_duration(operation_name: str = None):
    """Decorator to log method execution duration.

    Args:
        operation_name: Custom name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            start = time.time()
            result = func(*args, **kwargs)
            duration_ms = int((time.time() - start) * 1000)
            logger.info(f'{name} completed in {duration_ms}ms')
            return result
        return wrapper
    return decorator


def key_to_point(key: str) -> int:
    """Hash a key onto the 32-bit ring space.
    """
    digest = hashlib.md5(str(key).encode()).digest()
    return int.from_bytes(digest[:4], 'big')


def fan_out(fn: Callable, items: Iterable, max_workers: int) -> dict:
    """Run ``fn(item)`` for every item concurrently and wait for all.

    Returns
        Mapping of item -> (result, error); exactly one of the pair is None
    """
    items = list(items)
    if not items:
        return {}

    def call(item):
        try:
            return fn(item), None
        except Exception as e:
            return None, e

    with ThreadPoolExecutor(max_workers=min(max_workers, len(items)), thread_name_prefix='alarmsync') as pool:
        futures = {item: pool.submit(call, item) for item in items}
        return {item: future.result() for item, future in futures.items()}


# ============================================================
# HASH RING
# ============================================================

class HashRing:
    """Consistent hash ring with virtual replicas per node.

    Lookups walk clockwise from the key's point to the first node point at
    or after it, wrapping to the start of the ring.
    """

    def __init__(self, replicas: int = 100):
        self.replicas = replicas
        self._points = []
        self._owners = {}
        self._nodes = set()

    @classmethod
    def from_nodes(cls, nodes: Iterable[str], replicas: int = 100) -> 'HashRing':
        ring = cls(replicas)
        for node in nodes:
            ring.add(node)
        return ring

    def add(self, node: str) -> None:
        """Insert a node and its virtual replicas.
        """
        if node in self._nodes:
            return
        self._nodes.add(node)
        for i in range(self.replicas):
            point = key_to_point(f'{i}{node}')
            # On a point collision the first owner keeps it
            if point in self._owners:
                continue
            self._owners[point] = node
            bisect.insort(self._points, point)

    def get(self, key: str) -> str:
        """Return the node owning ``key``.

        Raises
            EmptyRing: If no nodes are present
        """
        if not self._points:
            raise EmptyRing('hash ring has no nodes')
        idx = bisect.bisect_left(self._points, key_to_point(key))
        if idx >= len(self._points):
            idx = 0
        return self._owners[self._points[idx]]

    @property
    def nodes(self) -> frozenset[str]:
        return frozenset(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node: str) -> bool:
        return node in self._nodes

    def __repr__(self) -> str:
        return f'HashRing(nodes={len(self._nodes)}, points={len(self._points)})'


# ============================================================
# NODE REGISTRY
# ============================================================

@dataclass(frozen=True)
class Topology:
    """Immutable snapshot of the active node set.

    The ring and the client map always hold exactly the same addresses.
    """
    addresses: tuple[str, ...] = ()
    clients: Mapping = field(default_factory=lambda: MappingProxyType({}))
    ring: HashRing = field(default_factory=HashRing)

    def client_for(self, address: str) -> tuple[KapacitorClient | None, bool]:
        client = self.clients.get(address)
        return client, client is not None


def default_client_factory(url: str, timeout: float) -> KapacitorClient:
    return KapacitorClient(url, timeout=timeout)


class NodeRegistry:
    """Owns the active node set, one client per node, and the hash ring.

    Rebuilds publish a fresh ``Topology`` with a single reference swap;
    readers take one snapshot per operation and never see a partial set.
    """

    def __init__(self, config: SyncConfig = None, client_factory: Callable = None):
        """Initialize registry with an empty topology.

        Args:
            config: Sync configuration
            client_factory: Callable(url, timeout) -> client handle
        """
        self.config = config or SyncConfig()
        self.client_factory = client_factory or default_client_factory
        self._rebuild_lock = threading.Lock()
        self._topology = Topology(ring=HashRing(self.config.replicas))
        self.generation = 0

    def _connect(self, url: str):
        client = self.client_factory(url, self.config.request_timeout_sec)
        if self.config.ping_on_connect:
            try:
                client.ping()
            except Exception:
                client.close()
                raise
        return client

    @log_duration('rebuild')
    def rebuild(self, addresses: Iterable[str]) -> Topology:
        """Connect to every address and atomically publish the new topology.

        Rebuilds are serialized from connect through swap, so the last call
        made is the one left visible. Addresses that fail to connect are
        logged and left out until the next rebuild. Clients of the previous
        topology that are not reused are closed. Never raises for a single
        bad address.

        Returns
            The published topology
        """
        urls = list(dict.fromkeys(self.config.node_url(a) for a in addresses if a))
        with self._rebuild_lock:
            previous = self._topology
            logger.info(f'Rebuilding topology, old nodes: {list(previous.addresses)}, requested: {urls}')

            results = fan_out(self._connect, urls, self.config.max_workers)
            clients = {}
            for url in urls:
                client, error = results[url]
                if error is not None:
                    logger.error(f'Connect to kapacitor {url} failed: {error}')
                    continue
                clients[url] = client

            active = tuple(url for url in urls if url in clients)
            topology = Topology(
                addresses=active,
                clients=MappingProxyType(clients),
                ring=HashRing.from_nodes(active, self.config.replicas),
            )
            self._topology = topology
            self.generation += 1
            generation = self.generation

            kept = {id(c) for c in clients.values()}
            for url, client in previous.clients.items():
                if id(client) not in kept:
                    self._close(url, client)

        dropped = len(urls) - len(active)
        if dropped:
            logger.warning(f'Topology degraded: {dropped} of {len(urls)} nodes unreachable')
        logger.info(f'Topology v{generation} active nodes: {list(active)}')
        return topology

    def _close(self, url: str, client) -> None:
        try:
            client.close()
            logger.debug(f'Closed kapacitor {url} client')
        except Exception as e:
            logger.warning(f'Close kapacitor {url} client failed: {e}')

    def snapshot(self) -> Topology:
        return self._topology

    def client_for(self, address: str) -> tuple[KapacitorClient | None, bool]:
        return self._topology.client_for(address)

    def active_addresses(self) -> tuple[str, ...]:
        return self._topology.addresses

    def node_for(self, key: str) -> str:
        """Resolve the node owning ``key`` on the current ring.
        """
        return self._topology.ring.get(key)


# ============================================================
# NODE OPERATIONS
# ============================================================

class NodeOperations:
    """Per-node task listing, hash-routed creation and broadcast deletion.
    """

    def __init__(self, registry: NodeRegistry, config: SyncConfig = None):
        self.registry = registry
        self.config = config or registry.config

    def is_owned(self, task_id: str) -> bool:
        """Check that a task id carries our namespace prefix.
        """
        return str(task_id).startswith(self.config.task_prefix)

    def list_tasks(self) -> dict[str, Task]:
        """Merge the task listings of all active nodes into one mapping.

        Under the fail-fast policy a single failing node aborts the call
        with ``ListError``; under best-effort the node is skipped. A task id
        seen on more than one node keeps the first copy in address order,
        and later copies of owned tasks are deleted.

        Raises
            ListError: If a node listing fails under fail-fast
        """
        topology = self.registry.snapshot()
        results = fan_out(lambda url: topology.clients[url].list_tasks(),
                          topology.addresses, self.config.max_workers)

        failed = {url: error for url, (_, error) in results.items() if error is not None}
        for url, error in failed.items():
            logger.error(f'List kapacitor {url} tasks failed: {error}')
        if failed and self.config.list_policy == LIST_FAIL_FAST:
            raise ListError(f'list tasks failed on {len(failed)} node(s): {sorted(failed)}')

        tasks = {}
        for url in topology.addresses:
            if url in failed:
                continue
            listed, _ = results[url]
            for task in listed:
                if task.id not in tasks:
                    tasks[task.id] = task
                    continue
                logger.warning(f'Found duplicate task {task.id} on {url}, first seen on {tasks[task.id].node}')
                if self.config.dedupe_on_list and self.is_owned(task.id):
                    self._delete_duplicate(topology, url, task.id)
        logger.debug(f'Listed {len(tasks)} tasks across {len(topology.addresses) - len(failed)} nodes')
        return tasks

    def _delete_duplicate(self, topology: Topology, url: str, task_id: str) -> None:
        try:
            topology.clients[url].delete_task(task_id)
            logger.info(f'Found duplicate task, and cleaned it: {task_id} at {url}')
        except Exception as e:
            logger.error(f'Delete duplicate task {task_id} at {url} failed: {e}')

    def create(self, alarm: Alarm) -> Task:
        """Create the alarm's task on its hash-selected node.

        Raises
            UnsupportedTrigger, MalformedTimeWindow: If the script cannot be generated
            EmptyRing: If no nodes are active
            NodeUnavailable: If the resolved node has no live client
            KapacitorError: If the node rejects the task
        """
        try:
            script = tick.generate(alarm, self.config.event_addr)
        except Exception as e:
            logger.error(f'Generate tick script failed: {e} [{alarm.db}] [{alarm.name}]')
            raise

        topology = self.registry.snapshot()
        url = topology.ring.get(alarm.version)
        client, found = topology.client_for(url)
        if not found:
            logger.error(f'Get cached kapacitor {url} client failed')
            raise NodeUnavailable(f'no live client for kapacitor {url}')

        logger.info(f'Create task: {alarm.version} at {url}')
        try:
            return client.create_task(
                alarm.version,
                script,
                dbrps=[{'db': alarm.db, 'rp': alarm.rp}],
                task_type=TaskType.BATCH,
                status=alarm.status,
            )
        except Exception as e:
            logger.error(f'Create task {alarm.version} at {url} failed: {e}')
            raise

    def remove(self, task_id: str) -> dict[str, Exception | None]:
        """Delete a task from every active node concurrently.

        The node holding the task may not be the one the ring selects now,
        so the delete is broadcast. Per-node failures are logged only.

        Returns
            Mapping of node url -> error (None on success)

        Raises
            ForeignTask: If the id lacks our namespace prefix
        """
        if not self.is_owned(task_id):
            logger.error(f'This task does not belong to {self.config.namespace}: {task_id}')
            raise ForeignTask(f'task {task_id} does not carry prefix {self.config.task_prefix!r}')

        logger.info(f'Delete task: {task_id}')
        topology = self.registry.snapshot()
        results = fan_out(lambda url: topology.clients[url].delete_task(task_id),
                          topology.addresses, self.config.max_workers)

        outcome = {}
        for url, (_, error) in results.items():
            if error is not None:
                logger.error(f'Delete task {task_id} at {url} failed: {error}')
            outcome[url] = error
        return outcome


# ============================================================
# RECONCILER
# ============================================================

def compute_reconcile_plan(desired: Mapping, observed: Mapping) -> tuple[list[str], list[str]]:
    """Diff desired alarms against observed tasks by id.

    Ids present on both sides are left alone; alarm content is not compared.

    Returns
        Tuple of (ids to create, ids to remove), each sorted
    """
    to_create = sorted(k for k in desired if k not in observed)
    to_remove = sorted(k for k in observed if k not in desired)
    return to_create, to_remove


@dataclass
class ReconcileReport:
    """Outcome of one reconciliation pass.
    """
    created: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def operations(self) -> int:
        return len(self.created) + len(self.removed) + len(self.failed)


class Reconciler:
    """Drives creates and removes so observed tasks match desired alarms.

    Holds no state between runs; a failed operation is corrected by the
    next run, never retried here.
    """

    def __init__(self, operations: NodeOperations, config: SyncConfig = None):
        self.operations = operations
        self.config = config or operations.config

    def run(self, desired: Mapping[str, Alarm], observed: Mapping[str, Task]) -> ReconcileReport:
        """Create missing tasks and remove stale ones concurrently.
        """
        to_create, to_remove = compute_reconcile_plan(desired, observed)
        report = ReconcileReport()

        skip = set(self.config.skip_measurements)
        if skip:
            report.skipped = [k for k in to_create if desired[k].measurement in skip]
            to_create = [k for k in to_create if desired[k].measurement not in skip]

        jobs = [('create', k) for k in to_create] + [('remove', k) for k in to_remove]
        if not jobs:
            logger.debug('Reconcile: nothing to do')
            return report

        def apply(job):
            action, key = job
            if action == 'create':
                return self.operations.create(desired[key])
            return self.operations.remove(key)

        results = fan_out(apply, jobs, self.config.max_workers)
        for (action, key), (_, error) in results.items():
            if error is not None:
                logger.error(f'Reconcile {action} {key} failed: {error}')
                report.failed[key] = error
            elif action == 'create':
                report.created.append(key)
            else:
                report.removed.append(key)

        logger.info(f'Reconcile: {len(report.created)} created, {len(report.removed)} removed, '
                    f'{len(report.failed)} failed, {len(report.skipped)} skipped')
        return report


# ============================================================
# MONITORS
# ============================================================

class Monitor:
    """Base class for background monitoring threads.
    """

    def __init__(self, name: str, interval: float, shutdown_event: threading.Event):
        """Initialize monitor.

        Args:
            name: Monitor name
            interval: Check interval in seconds
            shutdown_event: Event to signal shutdown
        """
        self.name = name
        self.interval = interval
        self.shutdown_event = shutdown_event
        self.thread = None
        self._stop_requested = False

    def start(self) -> None:
        self.thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self.thread.start()
        logger.info(f'{self.name} monitor started')

    def stop(self) -> None:
        self._stop_requested = True

    def _run(self) -> None:
        while not self.shutdown_event.is_set() and not self._stop_requested:
            try:
                self.check()
            except Exception as e:
                logger.error(f'{self.name} monitor error: {e}', exc_info=True)
            if self.shutdown_event.wait(timeout=self.interval):
                break

    def check(self) -> None:
        """Perform monitoring check - to be implemented by subclasses.
        """
        raise NotImplementedError


class ReconcileMonitor(Monitor):
    """Periodically reconciles against the alarms returned by a provider.
    """

    def __init__(self, sync: 'AlarmSync', alarm_provider: Callable[[], Mapping],
                 interval: float, shutdown_event: threading.Event):
        super().__init__('reconcile', interval, shutdown_event)
        self.sync = sync
        self.alarm_provider = alarm_provider

    def check(self) -> None:
        self.sync.reconcile(self.alarm_provider())


class TopologyMonitor(Monitor):
    """Rebuilds the registry when the provided address set changes.
    """

    def __init__(self, sync: 'AlarmSync', address_provider: Callable[[], Iterable[str]],
                 interval: float, shutdown_event: threading.Event):
        super().__init__('topology', interval, shutdown_event)
        self.sync = sync
        self.address_provider = address_provider
        self.last_addresses = None

    def check(self) -> None:
        addresses = tuple(self.address_provider())
        if set(addresses) == self.last_addresses:
            return
        logger.info(f'Node address set changed: {sorted(self.last_addresses or [])} -> {sorted(addresses)}')
        self.sync.set_topology(addresses)
        self.last_addresses = set(addresses)


# ============================================================
# ENGINE
# ============================================================

class AlarmSync:
    """Keeps a fleet of alerting nodes in sync with the desired alarms.

    Entry points for a host process:
    1. set_topology: replace the active node set
    2. reconcile: create missing tasks, remove stale ones
    3. create_one / remove_one: single task operations
    """

    def __init__(self, addresses: Iterable[str] = None, config: SyncConfig = None,
                 client_factory: Callable = None):
        """Initialize the engine.

        Args:
            addresses: Initial node addresses (bare hosts or full URLs)
            config: Sync configuration (defaults from environment)
            client_factory: Callable(url, timeout) -> client handle
        """
        self.config = config or SyncConfig()
        self.registry = NodeRegistry(self.config, client_factory)
        self.operations = NodeOperations(self.registry, self.config)
        self.reconciler = Reconciler(self.operations, self.config)
        self.last_report = None
        self._shutdown_event = threading.Event()
        self._monitors = {}
        if addresses:
            self.set_topology(addresses)

    def __enter__(self):
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        if exc_ty:
            logger.error(exc_val)
        self.stop()

    @property
    def addresses(self) -> tuple[str, ...]:
        return self.registry.active_addresses()

    def set_topology(self, addresses: Iterable[str]) -> tuple[str, ...]:
        """Replace the active node set.

        Returns
            Addresses that connected and are now active
        """
        return self.registry.rebuild(addresses).addresses

    def node_for(self, version: str) -> str:
        return self.registry.node_for(version)

    def list_tasks(self) -> dict[str, Task]:
        return self.operations.list_tasks()

    @log_duration('reconcile')
    def reconcile(self, desired: Mapping) -> ReconcileReport:
        """Bring observed tasks in line with ``desired``.

        Args:
            desired: Mapping of version -> Alarm (or alarm dict)

        Raises
            ListError: If observed state cannot be listed under fail-fast
        """
        alarms = {k: v if isinstance(v, Alarm) else Alarm.from_dict(v) for k, v in desired.items()}
        observed = self.operations.list_tasks()
        self.last_report = self.reconciler.run(alarms, observed)
        return self.last_report

    def create_one(self, alarm: Alarm | Mapping) -> Task:
        if not isinstance(alarm, Alarm):
            alarm = Alarm.from_dict(alarm)
        return self.operations.create(alarm)

    def remove_one(self, task_id: str) -> dict[str, Exception | None]:
        return self.operations.remove(task_id)

    def start_monitors(self, alarm_provider: Callable[[], Mapping] = None,
                       address_provider: Callable[[], Iterable[str]] = None) -> None:
        """Start background reconcile and topology loops for the given providers.
        """
        if self._shutdown_event.is_set():
            self._shutdown_event = threading.Event()
        interval = self.config.reconcile_interval_sec
        if address_provider is not None:
            self._start_monitor(TopologyMonitor(self, address_provider, interval, self._shutdown_event))
        if alarm_provider is not None:
            self._start_monitor(ReconcileMonitor(self, alarm_provider, interval, self._shutdown_event))

    def _start_monitor(self, monitor: Monitor) -> None:
        existing = self._monitors.get(monitor.name)
        if existing and existing.thread and existing.thread.is_alive():
            logger.debug(f'{monitor.name} monitor already running')
            return
        self._monitors[monitor.name] = monitor
        monitor.start()

    def stop(self) -> None:
        """Stop background monitors and wait for their threads.
        """
        self._shutdown_event.set()
        for name, monitor in self._monitors.items():
            monitor.stop()
            if monitor.thread and monitor.thread.is_alive():
                monitor.thread.join(timeout=10)
                if monitor.thread.is_alive():
                    logger.warning(f'{name} thread did not stop within timeout')
        self._monitors.clear()

    def get_status(self) -> dict:
        """Get current engine state for debugging.
        """
        topology = self.registry.snapshot()
        report = self.last_report
        return {
            'addresses': list(topology.addresses),
            'ring': repr(topology.ring),
            'generation': self.registry.generation,
            'list_policy': self.config.list_policy,
            'monitors': list(self._monitors.keys()),
            'last_report': None if report is None else {
                'created': len(report.created),
                'removed': len(report.removed),
                'failed': sorted(report.failed),
                'skipped': len(report.skipped),
            },
        }
