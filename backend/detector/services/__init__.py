"""Services for probing, issue tracking, alerting and housekeeping."""
from .probe import ProbeService
from .alerter import AlerterService
from .ledger import IssueLedger
from .scanner import ScannerService
from .compactor import SeriesCompactor
from .sweeper import RetentionSweeper
from .scheduler import SchedulerService, create_scheduler

__all__ = [
    "ProbeService",
    "AlerterService",
    "IssueLedger",
    "ScannerService",
    "SeriesCompactor",
    "RetentionSweeper",
    "SchedulerService",
    "create_scheduler",
]
