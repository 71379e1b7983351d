"""Alarm and task models plus the error taxonomy shared by the engine.
"""
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from functools import total_ordering

logger = logging.getLogger(__name__)

__all__ = [
    'AlarmSyncError', 'EmptyRing', 'NodeUnavailable', 'ForeignTask',
    'UnsupportedTrigger', 'MalformedTimeWindow', 'ListError',
    'Trigger', 'TaskType', 'TaskStatus', 'Alarm', 'Task', 'parse_bool',
]


# ============================================================
# EXCEPTIONS
# ============================================================

class AlarmSyncError(Exception):
    """Base class for every error raised by alarmsync.
    """


class EmptyRing(AlarmSyncError):
    """Raised when a ring lookup is made with no nodes present.
    """


class NodeUnavailable(AlarmSyncError):
    """Raised when a resolved node has no live client handle.
    """


class ForeignTask(AlarmSyncError):
    """Raised when asked to delete a task outside our namespace.
    """


class UnsupportedTrigger(AlarmSyncError):
    """Raised when no script shape exists for an alarm trigger kind.
    """


class MalformedTimeWindow(AlarmSyncError):
    """Raised when time-of-day window bounds are not hours.
    """


class ListError(AlarmSyncError):
    """Raised when a fail-fast task listing hits a node error.
    """


# ============================================================
# ENUMS
# ============================================================

class Trigger(str, Enum):
    """Alerting strategy that decides the generated script shape.
    """
    RELATIVE = 'relative'
    THRESHOLD = 'threshold'
    DEADMAN = 'deadman'


class TaskType(str, Enum):
    STREAM = 'stream'
    BATCH = 'batch'


class TaskStatus(str, Enum):
    ENABLED = 'enabled'
    DISABLED = 'disabled'


_TRUE = {'1', 't', 'T', 'TRUE', 'true', 'True'}


def parse_bool(value) -> bool:
    """Parse the producer's boolean flags.

    Strings follow the usual ``1/t/true`` spellings, anything unknown is False.

    >>> parse_bool('true'), parse_bool('T'), parse_bool('yes'), parse_bool(True)
    (True, True, False, True)
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value) in _TRUE


# ============================================================
# ALARM (DESIRED STATE)
# ============================================================

_ALIASES = {
    'groupby': 'group_by',
    'starttime': 'stime',
    'endtime': 'etime',
}


@dataclass(frozen=True)
class Alarm:
    """Desired monitoring rule, keyed by its globally unique version.

    ``version`` doubles as the task id and as the shard key.
    """
    version: str
    db: str
    rp: str
    measurement: str
    where: str = ''
    group_by: str = '*'
    period: str = '5m'
    every: str = '1m'
    trigger: Trigger = Trigger.THRESHOLD
    func: str = 'mean'
    expression: str = '>'
    value: str = '0'
    stime: str | int | None = None
    etime: str | int | None = None
    enable: bool = True
    name: str = ''

    def __post_init__(self):
        if not self.version:
            raise ValueError('Alarm version must be non-empty')
        # Unknown trigger strings are kept as-is and rejected at script generation
        try:
            object.__setattr__(self, 'trigger', Trigger(self.trigger))
        except ValueError:
            logger.debug(f'Alarm {self.version} has unknown trigger {self.trigger!r}')
        if self.value is None:
            raise ValueError(f'Alarm {self.version} has no threshold value')
        object.__setattr__(self, 'value', str(self.value))
        object.__setattr__(self, 'enable', parse_bool(self.enable))

    @classmethod
    def from_dict(cls, data: Mapping) -> 'Alarm':
        """Build an alarm from the producer's JSON document.

        Unknown keys are ignored; ``groupby``, ``starttime`` and
        ``endtime`` are accepted as aliases.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            key = _ALIASES.get(key, key)
            if key in known:
                kwargs[key] = value
        return cls(**kwargs)

    @property
    def status(self) -> TaskStatus:
        return TaskStatus.ENABLED if self.enable else TaskStatus.DISABLED


# ============================================================
# TASK (OBSERVED STATE)
# ============================================================

@total_ordering
@dataclass(eq=False)
class Task:
    """Task observed on one alerting node.
    """
    id: str
    node: str = None
    type: str = TaskType.BATCH.value
    status: str = TaskStatus.ENABLED.value
    dbrps: list[dict] = field(default_factory=list)
    script: str = ''
    executing: bool = False

    @classmethod
    def from_api(cls, data: Mapping, node: str = None) -> 'Task':
        """Build a task from a node's task listing entry.
        """
        return cls(
            id=data['id'],
            node=node,
            type=data.get('type', TaskType.BATCH.value),
            status=data.get('status', TaskStatus.ENABLED.value),
            dbrps=list(data.get('dbrps') or []),
            script=data.get('script', ''),
            executing=bool(data.get('executing', False)),
        )

    def __repr__(self) -> str:
        return f'id:{self.id},node:{self.node}'

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Task):
            return NotImplemented
        return self.id == other.id

    def __lt__(self, other) -> bool:
        if not isinstance(other, Task):
            return NotImplemented
        return self.id < other.id


if __name__ == '__main__':
    __import__('doctest').testmod()
