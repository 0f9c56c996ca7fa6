"""
Scheduling core: cron evaluation, schedule store, leases, dispatcher, monitor.

Example:
    >>> from apicron.core.scheduling import CronEvaluator, Dispatcher, Monitor, ScheduleStore
"""

from .cron import CronEvaluator
from .dispatcher import DispatchReport, Dispatcher
from .lock_manager import LockManager
from .monitor import Monitor, MonitorReport, StaleSchedule, StuckSchedule
from .repository import ScheduleCounts, ScheduleCreate, ScheduleStore
from .thread_backend import TickHealth, TickThread

__all__ = [
    "CronEvaluator",
    "DispatchReport",
    "Dispatcher",
    "LockManager",
    "Monitor",
    "MonitorReport",
    "ScheduleCounts",
    "ScheduleCreate",
    "ScheduleStore",
    "StaleSchedule",
    "StuckSchedule",
    "TickHealth",
    "TickThread",
]
