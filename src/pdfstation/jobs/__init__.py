"""Job store, event exchange and processing pipeline."""

from .backends import EventExchange, JobStore
from .models import Delivery, Job, JobStatus, JobStatusChanged, JobSubmitted, Message, Operation
from .outbox import OutboxRelay
from .sqlite_backend import SQLiteExchange, SQLiteJobStore

__all__ = [
    "EventExchange",
    "JobStore",
    "Delivery",
    "Job",
    "JobStatus",
    "JobStatusChanged",
    "JobSubmitted",
    "Message",
    "Operation",
    "OutboxRelay",
    "SQLiteExchange",
    "SQLiteJobStore",
]
