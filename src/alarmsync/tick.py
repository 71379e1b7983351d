"""TICKscript generation for alarm tasks.

An alarm is first turned into a ``TickScript`` clause set by ``build`` and
then rendered to the exact text posted to a node. Keeping the two steps
apart lets the grouping and time-window rules be checked on their own.
"""
import logging
import re
from dataclasses import dataclass

from alarmsync.models import Alarm, MalformedTimeWindow, Trigger
from alarmsync.models import UnsupportedTrigger

logger = logging.getLogger(__name__)

__all__ = ['TickScript', 'build', 'generate', 'time_window', 'group_clause']

WILDCARD = '*'
WINDOW = 'time(1m,-5s)'
ALIGN = '.align()\n.offset(5s)'

RELATIVE_SELECT = '(max("value")-min("value")) as diff'
RELATIVE_FIELD = 'diff'

_HOUR = re.compile(r'[+-]?\d+')

TEMPLATE = """
batch
    |query('''
        SELECT {select}
        FROM "{db}"."{rp}"."{measurement}" {where}
    ''')
        .period({period})
        .every({every})
        .groupBy({group_by})
        {align}
    |alert()
        .crit(lambda: "{field}" {expression} {value} {time_window})
        .post('{post_url}')"""


def _bound(value) -> str:
    """Normalize one window bound to its text form, '' when absent.
    """
    if value is None:
        return ''
    return str(value)


def time_window(start, end) -> str:
    """Build the hour-of-day predicate conjoined to the alert condition.

    Empty when either bound is absent or both are equal. A start after the
    end wraps past midnight and joins the two comparisons with OR.

    >>> time_window(10, 18)
    'AND (hour("time") >= 10 AND hour("time") <= 18)'
    >>> time_window('22', '2')
    'AND (hour("time") >= 22 OR hour("time") <= 2)'
    >>> time_window(5, 5)
    ''
    >>> time_window(None, 3)
    ''
    """
    stime, etime = _bound(start), _bound(end)
    if not stime or not etime:
        return ''
    if not _HOUR.fullmatch(stime) or not _HOUR.fullmatch(etime):
        logger.warning(f'Malformed time window, stime: {stime!r}, etime: {etime!r}')
        raise MalformedTimeWindow(f'time window bounds must be hours, got stime: {stime!r}, etime: {etime!r}')
    shour, ehour = int(stime), int(etime)
    if not (0 <= shour <= 23 and 0 <= ehour <= 23):
        raise MalformedTimeWindow(f'time window bounds must be within 0-23, got stime: {stime}, etime: {etime}')

    if shour == ehour:
        return ''
    condition = 'AND' if shour < ehour else 'OR'
    return f'AND (hour("time") >= {stime} {condition} hour("time") <= {etime})'


def group_clause(group_by: str) -> tuple[str, bool]:
    """Return the ``groupBy`` argument and whether windows are wall-clock aligned.

    >>> group_clause('*')
    ('*', False)
    >>> group_clause('host,region')
    ("time(1m,-5s), 'host', 'region'", True)
    """
    if group_by == WILDCARD:
        return WILDCARD, False
    parts = [WINDOW]
    parts.extend(f"'{tag}'" for tag in (group_by or '').split(',') if tag)
    return ', '.join(parts), True


@dataclass(frozen=True)
class TickScript:
    """Structured clause set of a batch alert script.
    """
    select: str
    db: str
    rp: str
    measurement: str
    where: str
    period: str
    every: str
    group_by: str
    aligned: bool
    field: str
    expression: str
    value: str
    time_window: str
    post_url: str

    def render(self) -> str:
        return TEMPLATE.format(
            select=self.select,
            db=self.db,
            rp=self.rp,
            measurement=self.measurement,
            where=f'WHERE {self.where}' if self.where else '',
            period=self.period,
            every=self.every,
            group_by=self.group_by,
            align=ALIGN if self.aligned else '',
            field=self.field,
            expression=self.expression,
            value=self.value,
            time_window=self.time_window,
            post_url=self.post_url,
        )

    def __str__(self) -> str:
        return self.render()


def build(alarm: Alarm, event_addr: str) -> TickScript:
    """Turn an alarm into its clause set.

    Raises
        MalformedTimeWindow: If the window bounds are not hours
        UnsupportedTrigger: If the trigger has no script shape
    """
    window = time_window(alarm.stime, alarm.etime)
    group_by, aligned = group_clause(alarm.group_by)

    if alarm.trigger == Trigger.RELATIVE:
        select, field = RELATIVE_SELECT, RELATIVE_FIELD
    elif alarm.trigger == Trigger.THRESHOLD:
        select, field = f'{alarm.func}(value)', alarm.func
    else:
        raise UnsupportedTrigger(f'unsupported alarm trigger: {getattr(alarm.trigger, "value", alarm.trigger)}')

    return TickScript(
        select=select,
        db=alarm.db,
        rp=alarm.rp,
        measurement=alarm.measurement,
        where=alarm.where or '',
        period=alarm.period,
        every=alarm.every,
        group_by=group_by,
        aligned=aligned,
        field=field,
        expression=alarm.expression,
        value=alarm.value,
        time_window=window,
        post_url=f'{event_addr}?version={alarm.version}',
    )


def generate(alarm: Alarm, event_addr: str) -> str:
    """Render the script text posted as an alarm's task body.
    """
    return build(alarm, event_addr).render()


if __name__ == '__main__':
    __import__('doctest').testmod()
