"""Automation helpers built on operations and the batch processor."""

from .approval import SendApprovalRequest
from .bulk_update import BulkUserUpdate
from .lifecycle import Joiner, Leaver
from .scheduler import ScheduledTask, ScheduleError, ScheduleStore

AUTOMATION_OPERATIONS = [BulkUserUpdate, Joiner, Leaver, SendApprovalRequest]

__all__ = [
    "AUTOMATION_OPERATIONS",
    "BulkUserUpdate",
    "Joiner",
    "Leaver",
    "ScheduleError",
    "ScheduleStore",
    "ScheduledTask",
    "SendApprovalRequest",
]
