__version__ = '1.0.0'

from alarmsync.client import AlarmSync as AlarmSync
from alarmsync.client import HashRing as HashRing
from alarmsync.client import ReconcileReport as ReconcileReport
from alarmsync.client import compute_reconcile_plan as compute_reconcile_plan
from alarmsync.config import SyncConfig as SyncConfig
from alarmsync.kapacitor import KapacitorClient as KapacitorClient
from alarmsync.kapacitor import KapacitorError as KapacitorError
from alarmsync.models import Alarm as Alarm
from alarmsync.models import AlarmSyncError as AlarmSyncError
from alarmsync.models import EmptyRing as EmptyRing
from alarmsync.models import ForeignTask as ForeignTask
from alarmsync.models import ListError as ListError
from alarmsync.models import MalformedTimeWindow as MalformedTimeWindow
from alarmsync.models import NodeUnavailable as NodeUnavailable
from alarmsync.models import Task as Task
from alarmsync.models import Trigger as Trigger
from alarmsync.models import UnsupportedTrigger as UnsupportedTrigger
from alarmsync.tick import generate as generate
