import os
from dataclasses import dataclass, field
from types import SimpleNamespace

LIST_FAIL_FAST = 'fail_fast'
LIST_BEST_EFFORT = 'best_effort'


def _split(value: str) -> tuple[str, ...]:
    return tuple(v.strip() for v in value.split(',') if v.strip())


sync = SimpleNamespace(
    kapacitor=SimpleNamespace(
        addrs=_split(os.getenv('ALARMSYNC_KAPACITOR_ADDRS', '')),
        url_template=os.getenv('ALARMSYNC_URL_TEMPLATE', 'http://{addr}:9092'),
        timeout_sec=float(os.getenv('ALARMSYNC_REQUEST_TIMEOUT', '20')),
        ping_on_connect=os.getenv('ALARMSYNC_PING_ON_CONNECT', 'true').lower() == 'true',
    ),
    event=SimpleNamespace(
        addr=os.getenv('ALARMSYNC_EVENT_ADDR', 'http://127.0.0.1:8001/event'),
    ),
    task=SimpleNamespace(
        namespace=os.getenv('ALARMSYNC_NAMESPACE', 'loda'),
        version_sep=os.getenv('ALARMSYNC_VERSION_SEP', '_'),
    ),
    ring=SimpleNamespace(
        replicas=int(os.getenv('ALARMSYNC_RING_REPLICAS', '100')),
    ),
    reconcile=SimpleNamespace(
        list_policy=os.getenv('ALARMSYNC_LIST_POLICY', LIST_FAIL_FAST),
        dedupe_on_list=os.getenv('ALARMSYNC_DEDUPE_ON_LIST', 'true').lower() == 'true',
        max_workers=int(os.getenv('ALARMSYNC_MAX_WORKERS', '16')),
        interval_sec=float(os.getenv('ALARMSYNC_RECONCILE_INTERVAL', '60')),
        skip_measurements=_split(os.getenv('ALARMSYNC_SKIP_MEASUREMENTS', '')),
    ),
)


@dataclass
class SyncConfig:
    """Configuration for the alarm synchronization engine.

    All timing parameters are in seconds. Defaults come from the
    ``ALARMSYNC_*`` environment variables collected in ``sync``.
    """
    url_template: str = sync.kapacitor.url_template
    request_timeout_sec: float = sync.kapacitor.timeout_sec
    ping_on_connect: bool = sync.kapacitor.ping_on_connect
    event_addr: str = sync.event.addr
    namespace: str = sync.task.namespace
    version_sep: str = sync.task.version_sep
    replicas: int = sync.ring.replicas
    list_policy: str = sync.reconcile.list_policy
    dedupe_on_list: bool = sync.reconcile.dedupe_on_list
    max_workers: int = sync.reconcile.max_workers
    reconcile_interval_sec: float = sync.reconcile.interval_sec
    skip_measurements: tuple[str, ...] = field(default_factory=lambda: sync.reconcile.skip_measurements)

    def __post_init__(self):
        if self.list_policy not in {LIST_FAIL_FAST, LIST_BEST_EFFORT}:
            raise ValueError(f'list_policy must be {LIST_FAIL_FAST!r} or {LIST_BEST_EFFORT!r}, got {self.list_policy!r}')
        if self.replicas < 1:
            raise ValueError(f'replicas must be positive, got {self.replicas}')
        if self.max_workers < 1:
            raise ValueError(f'max_workers must be positive, got {self.max_workers}')
        self.skip_measurements = tuple(self.skip_measurements)

    @property
    def task_prefix(self) -> str:
        """Prefix carried by every task id this system owns.
        """
        return f'{self.namespace}{self.version_sep}'

    def node_url(self, addr: str) -> str:
        """Expand a bare node address into its API base URL.
        """
        if '://' in addr:
            return addr.rstrip('/')
        return self.url_template.format(addr=addr)


if __name__ == '__main__':
    __import__('doctest').testmod()
