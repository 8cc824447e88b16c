"""Abstract base classes for the job store and the event exchange.

These interfaces separate the job processor from its persistence and
transport. The local implementations live in sqlite_backend.py (one SQLite
file, WAL mode); a broker-backed exchange only has to honour the same
at-least-once, per-key-ordered contract.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Tuple

if TYPE_CHECKING:
    from .models import Delivery, Job, JobStatus, Message, OutboxEntry, StateTransition

# (topic, key, payload) of an event written alongside a state change.
PendingEvent = Tuple[str, str, Dict[str, Any]]

# Builds the outbox events of a state change from the updated job.
EventBuilder = Callable[["Job"], Iterable[PendingEvent]]


class JobStore(ABC):
    """Durable record of every job and its current state.

    Implementations must provide:
    - Atomic creation of a job together with its outbox events
    - Guarded status transitions (illegal transitions are refused)
    - Atomic read-modify-write for failure recording and completion
    - An append-only audit trail of state transitions
    """

    @abstractmethod
    def create_job(self, job: "Job", events: Iterable[PendingEvent] = ()) -> "Job":
        """Persist a new job and its outbox events in one transaction.

        Args:
            job: Job in status CREATED
            events: Events to publish once the transaction has committed

        Returns:
            The stored job with created_at/updated_at set

        Implementation notes:
        - Job row, audit row and outbox rows commit or roll back together
        - Nothing is published from inside the transaction
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        """Load a job by id, or None if it does not exist."""

    @abstractmethod
    def list_jobs(self, status: Optional["JobStatus"] = None) -> List["Job"]:
        """List jobs, newest first, optionally filtered by status."""

    @abstractmethod
    def transition(
        self, job_id: str, to_status: "JobStatus", events: Optional[EventBuilder] = None
    ) -> "Job":
        """Move a job to `to_status` if the state machine allows it.

        `events` is called with the updated job inside the transaction; the
        events it returns are written to the outbox atomically with the change.

        Raises:
            JobNotFoundError: Unknown job id
            InvalidTransitionError: Transition not allowed from current status
        """

    @abstractmethod
    def record_failure(
        self,
        job_id: str,
        error: str,
        permanent: bool = False,
        events: Optional[EventBuilder] = None,
    ) -> "Job":
        """Record a failed attempt.

        Args:
            job_id: Job identifier
            error: Failure description (truncated for storage)
            permanent: If True, the remaining retry budget is consumed
            events: Outbox events for the updated job (see transition)

        Returns:
            The updated job: FAILED once retry_count reaches max_retries,
            otherwise still PROCESSING

        Implementation notes:
        - MUST reload the row inside the write transaction
        - retry_count never exceeds max_retries
        - error_message is stored before the FAILED transition
        """

    @abstractmethod
    def mark_completed(
        self, job_id: str, output_path: str, events: Optional[EventBuilder] = None
    ) -> "Job":
        """Set the output and move the job to COMPLETED, with outbox events as in transition().

        Raises:
            FileNotFoundError: Output file does not exist
            InvalidTransitionError: Job is not PROCESSING
        """

    @abstractmethod
    def get_transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail of a job, oldest first."""

    @abstractmethod
    def pending_outbox(self, limit: int = 100) -> List["OutboxEntry"]:
        """Unpublished outbox entries in creation order."""

    @abstractmethod
    def mark_outbox_published(self, entry_ids: Iterable[int]) -> None:
        """Flag outbox entries as handed to the exchange."""


class EventExchange(ABC):
    """Durable, partitioned publish/subscribe log.

    Guarantees:
    - At-least-once delivery per consumer group
    - Messages with the same key land in the same partition and are
      delivered in publish order, one at a time
    - An unacknowledged delivery becomes visible again after its lease
      expires or after a negative acknowledgement's backoff
    """

    partitions: int

    @abstractmethod
    def publish(
        self, topic: str, key: str, payload: Dict[str, Any], dedup_key: Optional[str] = None
    ) -> int:
        """Append a message to `topic`, routed by `key`.

        Args:
            dedup_key: Publishing the same dedup_key twice appends only once

        Returns:
            The message id (monotonic within the log); on a duplicate, the
            id of the message already stored
        """

    @abstractmethod
    def poll(
        self,
        topic: str,
        group_id: str,
        consumer_id: str,
        partitions: Optional[Iterable[int]] = None,
    ) -> Optional["Delivery"]:
        """Lease the next deliverable message for a consumer.

        Args:
            topic: Topic to read
            group_id: Consumer group whose offsets are used
            consumer_id: Lease holder
            partitions: Partitions owned by this consumer (default: all)

        Returns:
            A Delivery, or None when nothing is deliverable

        Implementation notes:
        - Only the head (first uncommitted message) of a partition is
          deliverable
        - MUST be atomic across concurrent consumers of the same group
        """

    @abstractmethod
    def ack(self, delivery: "Delivery") -> None:
        """Commit the delivery's offset and release its lease."""

    @abstractmethod
    def nack(self, delivery: "Delivery", delay_s: float = 0.0) -> None:
        """Release the lease; the message is redelivered after `delay_s`."""

    @abstractmethod
    def release_stale_leases(self, group_id: str, timeout_s: Optional[float] = None) -> int:
        """Crash recovery: drop leases held longer than the lease timeout.

        Returns:
            Count of released leases
        """

    @abstractmethod
    def messages(self, topic: str, limit: Optional[int] = None) -> List["Message"]:
        """Read a topic's log in publish order (inspection, dead-letter listing)."""

    @abstractmethod
    def lag(self, topic: str, group_id: str) -> int:
        """Number of messages not yet acknowledged by `group_id`."""
