"""Shared fakes and builders for alarmsync tests.

WHAT THIS FILE PROVIDES:
- FakeKapacitor: in-memory stand-in for one alerting node client
- FakeFleet: client factory that hands out one FakeKapacitor per url
- make_alarm / make_config: builders with test defaults
"""
import threading

from alarmsync.config import SyncConfig
from alarmsync.kapacitor import KapacitorError
from alarmsync.models import Alarm, Task, TaskStatus, TaskType

EVENT_ADDR = 'http://event:8001/event'


def make_config(**overrides) -> SyncConfig:
    """Build a config independent of the ALARMSYNC_* environment.
    """
    params = {
        'url_template': 'http://{addr}:9092',
        'request_timeout_sec': 5,
        'ping_on_connect': True,
        'event_addr': EVENT_ADDR,
        'namespace': 'loda',
        'version_sep': '_',
        'replicas': 100,
        'list_policy': 'fail_fast',
        'dedupe_on_list': True,
        'max_workers': 4,
        'reconcile_interval_sec': 0.05,
        'skip_measurements': (),
    }
    params.update(overrides)
    return SyncConfig(**params)


def make_alarm(version: str = 'loda_v1', **overrides) -> Alarm:
    params = {
        'version': version,
        'db': 'telegraf',
        'rp': 'autogen',
        'measurement': 'cpu.idle',
        'group_by': '*',
        'period': '5m',
        'every': '1m',
        'trigger': 'threshold',
        'func': 'mean',
        'expression': '>',
        'value': '90',
        'enable': 'true',
        'name': f'alarm-{version}',
    }
    params.update(overrides)
    return Alarm(**params)


class FakeKapacitor:
    """In-memory node client recording every call.
    """

    def __init__(self, url: str, timeout: float = 20):
        self.url = url
        self.timeout = timeout
        self.tasks = {}
        self.created = []
        self.deleted = []
        self.list_calls = 0
        self.fail_ping = False
        self.fail_list = False
        self.fail_create = False
        self.fail_delete = False
        self.closed = 0
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f'FakeKapacitor({self.url})'

    def add_task(self, task_id: str) -> Task:
        task = Task(task_id, node=self.url)
        self.tasks[task_id] = task
        return task

    def ping(self) -> None:
        if self.fail_ping:
            raise KapacitorError(self.url, 'connection refused')

    def list_tasks(self, limit: int = -1) -> list[Task]:
        with self._lock:
            self.list_calls += 1
            if self.fail_list:
                raise KapacitorError(self.url, 'list timed out')
            return list(self.tasks.values())

    def create_task(self, task_id, script, dbrps, task_type=TaskType.BATCH, status=TaskStatus.ENABLED) -> Task:
        with self._lock:
            if self.fail_create:
                raise KapacitorError(self.url, 'internal error', 500)
            if task_id in self.tasks:
                raise KapacitorError(self.url, f'task {task_id} already exists', 400)
            task = Task(task_id, node=self.url, type=TaskType(task_type).value,
                        status=TaskStatus(status).value, dbrps=dbrps, script=script)
            self.tasks[task_id] = task
            self.created.append(task)
            return task

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            self.deleted.append(task_id)
            if self.fail_delete:
                raise KapacitorError(self.url, 'delete timed out')
            return self.tasks.pop(task_id, None) is not None

    def close(self) -> None:
        self.closed += 1


class FakeFleet:
    """Client factory keeping one fake per url across rebuilds.

    Nodes keep their tasks when the topology is rebuilt, like real servers.
    """

    def __init__(self, unreachable=()):
        self.nodes = {}
        self.unreachable = set(unreachable)
        self.connects = 0

    def __call__(self, url: str, timeout: float) -> FakeKapacitor:
        self.connects += 1
        node = self.nodes.get(url)
        if node is None:
            node = FakeKapacitor(url, timeout)
            self.nodes[url] = node
        node.fail_ping = url in self.unreachable
        return node

    def node(self, addr: str) -> FakeKapacitor:
        return self.nodes[f'http://{addr}:9092']

    @property
    def total_created(self) -> int:
        return sum(len(n.created) for n in self.nodes.values())

    @property
    def total_deleted(self) -> int:
        return sum(len(n.deleted) for n in self.nodes.values())
