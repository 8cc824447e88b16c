"""SQLite implementations of JobStore and EventExchange.

This module provides the local-first, crash-safe pipeline storage using:
- sqlite-utils for schema management and reads
- WAL mode for concurrent readers alongside one writer
- BEGIN IMMEDIATE transactions for every read-modify-write
- Exponential backoff retry for database lock handling
- A transactional outbox so events are published only after commit
- An offset/lease message log giving at-least-once, per-key ordered delivery
"""

import functools
import json
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from sqlite_utils import Database

from ..errors import InvalidTransitionError, JobNotFoundError
from ..hashing import compute_output_hash, partition_for_key
from .backends import EventBuilder, EventExchange, JobStore, PendingEvent
from .models import Delivery, Job, JobStatus, Message, OutboxEntry, StateTransition

STORE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    operation TEXT NOT NULL,
    status TEXT NOT NULL,
    input_paths TEXT NOT NULL,
    output_path TEXT,
    output_hash TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    params TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    error_snippet TEXT,
    FOREIGN KEY(job_id) REFERENCES jobs(id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, timestamp);

-- Events written in the same transaction as the state they announce
CREATE TABLE IF NOT EXISTS outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    topic TEXT NOT NULL,
    key TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL,
    published_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_outbox_pending ON outbox(published_at, id);
"""

EXCHANGE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    topic TEXT NOT NULL,
    partition INTEGER NOT NULL,
    key TEXT NOT NULL,
    payload TEXT NOT NULL,
    published_at TEXT NOT NULL,
    dedup_key TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_partition ON messages(topic, partition, id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_dedup ON messages(dedup_key);

-- Last acknowledged message per (group, topic, partition)
CREATE TABLE IF NOT EXISTS consumer_offsets (
    group_id TEXT NOT NULL,
    topic TEXT NOT NULL,
    partition INTEGER NOT NULL,
    committed_id INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (group_id, topic, partition)
);

-- Claim on the head message of a partition; consumer_id NULL = released
CREATE TABLE IF NOT EXISTS leases (
    group_id TEXT NOT NULL,
    topic TEXT NOT NULL,
    partition INTEGER NOT NULL,
    message_id INTEGER NOT NULL,
    consumer_id TEXT,
    leased_at REAL,
    delivery_count INTEGER NOT NULL DEFAULT 0,
    not_before REAL,
    PRIMARY KEY (group_id, topic, partition)
);
"""

ERROR_LIMIT = 500


def open_database(db_path: str) -> Database:
    """Open a SQLite file for use by one thread at a time.

    The connection runs in autocommit mode; writes that span several
    statements go through `immediate_transaction`.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(path), timeout=30, isolation_level=None, check_same_thread=False
    )
    db = Database(conn)

    # Enable WAL mode for better concurrent performance
    db.execute("PRAGMA journal_mode=WAL")
    db.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
    return db


@contextmanager
def immediate_transaction(db: Database) -> Iterator[sqlite3.Connection]:
    """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.

    BEGIN IMMEDIATE takes the write lock up front, so two writers can never
    read the same row and then both update it.
    """
    conn = db.conn
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def retry_on_lock(max_retries: int = 3) -> Callable:
    """Retry a write with exponential backoff on SQLITE_BUSY (100ms, 200ms, 400ms)."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                        time.sleep(0.1 * (2 ** attempt))
                        continue
                    raise

        return wrapper

    return decorator


def _now() -> str:
    return datetime.now().isoformat()


class SQLiteJobStore(JobStore):
    """SQLite-based job store with guarded transitions and a transactional outbox.

    Concurrency safety:
    - Every mutation is a BEGIN IMMEDIATE read-modify-write
    - The row is re-read inside the transaction, never trusted from a caller
    """

    def __init__(self, db_path: str):
        """Initialize the store database.

        Args:
            db_path: Path to SQLite database file (created if missing)
        """
        self.db_path = Path(db_path)
        self.db = open_database(str(self.db_path))
        self.db.executescript(STORE_SCHEMA_SQL)

    def close(self) -> None:
        self.db.conn.close()

    @retry_on_lock()
    def create_job(self, job: Job, events: Iterable[PendingEvent] = ()) -> Job:
        now = _now()
        with immediate_transaction(self.db) as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    id, operation, status, input_paths, output_path, output_hash,
                    retry_count, max_retries, error_message, params, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.operation.value,
                    JobStatus.CREATED.value,
                    json.dumps(job.input_paths),
                    None,
                    None,
                    job.retry_count,
                    job.max_retries,
                    None,
                    job.params.model_dump_json(),
                    now,
                    now,
                ),
            )
            self._log_transition(conn, job.id, None, JobStatus.CREATED.value)
            self._write_outbox(conn, events)

        return self._require(job.id)

    def get_job(self, job_id: str) -> Optional[Job]:
        rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
        if not rows:
            return None
        return self._row_to_job(rows[0])

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        if status is not None:
            rows = self.db["jobs"].rows_where(
                "status = ?", [JobStatus(status).value], order_by="created_at desc"
            )
        else:
            rows = self.db["jobs"].rows_where(order_by="created_at desc")
        return [self._row_to_job(row) for row in rows]

    @retry_on_lock()
    def transition(
        self, job_id: str, to_status: JobStatus, events: Optional[EventBuilder] = None
    ) -> Job:
        to_status = JobStatus(to_status)
        with immediate_transaction(self.db) as conn:
            current = self._locked_status(conn, job_id)
            if not current.can_transition_to(to_status):
                raise InvalidTransitionError(job_id, current.value, to_status.value)

            conn.execute(
                "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ?",
                (to_status.value, _now(), job_id),
            )
            self._log_transition(conn, job_id, current.value, to_status.value)
            self._write_job_events(conn, job_id, events)

        return self._require(job_id)

    @retry_on_lock()
    def record_failure(
        self,
        job_id: str,
        error: str,
        permanent: bool = False,
        events: Optional[EventBuilder] = None,
    ) -> Job:
        """Record a failed attempt; FAILED once the retry budget is spent.

        Retry logic:
        - permanent=False: retry_count += 1 (capped at max_retries)
        - permanent=True: retry_count = max_retries
        - retry_count >= max_retries: status FAILED (terminal)
        - otherwise the job stays PROCESSING and awaits redelivery
        """
        error_snippet = error[:ERROR_LIMIT] if error else "unknown error"

        with immediate_transaction(self.db) as conn:
            row = conn.execute(
                "SELECT status, retry_count, max_retries FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                raise JobNotFoundError(job_id)

            current, retry_count, max_retries = JobStatus(row[0]), row[1], row[2]
            if current != JobStatus.PROCESSING:
                raise InvalidTransitionError(job_id, current.value, JobStatus.FAILED.value)

            if permanent:
                new_count = max_retries
            else:
                new_count = min(retry_count + 1, max_retries)

            new_status = JobStatus.FAILED if new_count >= max_retries else JobStatus.PROCESSING

            conn.execute(
                """
                UPDATE jobs
                SET status = ?, retry_count = ?, error_message = ?, updated_at = ?
                WHERE id = ?
                """,
                (new_status.value, new_count, error_snippet, _now(), job_id),
            )
            self._log_transition(conn, job_id, current.value, new_status.value, error_snippet)
            self._write_job_events(conn, job_id, events)

        return self._require(job_id)

    @retry_on_lock()
    def mark_completed(
        self, job_id: str, output_path: str, events: Optional[EventBuilder] = None
    ) -> Job:
        """Mark job as completed with validation data.

        Validation:
        - Verifies the output file exists
        - Computes the output hash for integrity
        - Atomically updates state (all-or-nothing)

        Raises:
            FileNotFoundError: If the output file is missing
        """
        output_hash = compute_output_hash(output_path)

        with immediate_transaction(self.db) as conn:
            current = self._locked_status(conn, job_id)
            if not current.can_transition_to(JobStatus.COMPLETED):
                raise InvalidTransitionError(job_id, current.value, JobStatus.COMPLETED.value)

            conn.execute(
                """
                UPDATE jobs
                SET status = ?, output_path = ?, output_hash = ?, updated_at = ?
                WHERE id = ?
                """,
                (JobStatus.COMPLETED.value, str(output_path), output_hash, _now(), job_id),
            )
            self._log_transition(conn, job_id, current.value, JobStatus.COMPLETED.value)
            self._write_job_events(conn, job_id, events)

        return self._require(job_id)

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where("job_id = ?", [job_id], order_by="id")
        return [StateTransition(**row) for row in rows]

    def pending_outbox(self, limit: int = 100) -> List[OutboxEntry]:
        rows = self.db["outbox"].rows_where(
            "published_at IS NULL", order_by="id", limit=limit
        )
        entries = []
        for row in rows:
            row["payload"] = json.loads(row["payload"])
            entries.append(OutboxEntry(**row))
        return entries

    @retry_on_lock()
    def mark_outbox_published(self, entry_ids: Iterable[int]) -> None:
        now = _now()
        with immediate_transaction(self.db) as conn:
            conn.executemany(
                "UPDATE outbox SET published_at = ? WHERE id = ? AND published_at IS NULL",
                [(now, entry_id) for entry_id in entry_ids],
            )

    def _locked_status(self, conn: sqlite3.Connection, job_id: str) -> JobStatus:
        row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return JobStatus(row[0])

    def _require(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _row_to_job(self, row: Dict[str, Any]) -> Job:
        """Convert a jobs row (dict) to a Job model."""
        data = dict(row)
        data["input_paths"] = json.loads(data["input_paths"])
        data["params"] = json.loads(data["params"])
        return Job.model_validate(data)

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        error: Optional[str] = None,
    ) -> None:
        """Append to the audit trail inside the caller's transaction."""
        conn.execute(
            """
            INSERT INTO state_transitions (job_id, from_state, to_state, timestamp, error_snippet)
            VALUES (?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _now(), error[:200] if error else None),
        )

    def _write_job_events(
        self, conn: sqlite3.Connection, job_id: str, events: Optional[EventBuilder]
    ) -> None:
        """Build events from the row as updated in this transaction and queue them."""
        if events is None:
            return
        cursor = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        columns = [column[0] for column in cursor.description]
        job = self._row_to_job(dict(zip(columns, cursor.fetchone())))
        self._write_outbox(conn, events(job))

    def _write_outbox(self, conn: sqlite3.Connection, events: Iterable[PendingEvent]) -> None:
        now = _now()
        for topic, key, payload in events:
            conn.execute(
                "INSERT INTO outbox (topic, key, payload, created_at) VALUES (?, ?, ?, ?)",
                (topic, key, json.dumps(payload), now),
            )


class SQLiteExchange(EventExchange):
    """SQLite-backed partitioned message log.

    Delivery model:
    - A message goes to partition sha256(key) mod partitions
    - Each consumer group keeps one committed offset per partition
    - Only the head of a partition (first message past the offset) is
      deliverable, and only to the consumer holding its lease
    - A lease is released by nack (with a not-before backoff) or expires
      after lease_timeout_s; either way the message is redelivered with
      delivery_count + 1
    """

    def __init__(
        self,
        db_path: str,
        partitions: int = 8,
        lease_timeout_s: float = 600,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the message log.

        Args:
            db_path: Path to SQLite database file (may be shared with the store)
            partitions: Partitions per topic
            lease_timeout_s: Seconds before an unacknowledged lease expires
            clock: Time source for leases (seconds since the epoch)
        """
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.db_path = Path(db_path)
        self.partitions = partitions
        self.lease_timeout_s = lease_timeout_s
        self.clock = clock
        self.db = open_database(str(self.db_path))
        self.db.executescript(EXCHANGE_SCHEMA_SQL)

    def close(self) -> None:
        self.db.conn.close()

    def partition_for(self, key: str) -> int:
        return partition_for_key(key, self.partitions)

    @retry_on_lock()
    def publish(
        self, topic: str, key: str, payload: Dict[str, Any], dedup_key: Optional[str] = None
    ) -> int:
        with immediate_transaction(self.db) as conn:
            if dedup_key is not None:
                existing = conn.execute(
                    "SELECT id FROM messages WHERE dedup_key = ?", (dedup_key,)
                ).fetchone()
                if existing is not None:
                    return existing[0]

            cursor = conn.execute(
                """
                INSERT INTO messages (topic, partition, key, payload, published_at, dedup_key)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (topic, self.partition_for(key), key, json.dumps(payload), _now(), dedup_key),
            )
            return cursor.lastrowid

    @retry_on_lock()
    def poll(
        self,
        topic: str,
        group_id: str,
        consumer_id: str,
        partitions: Optional[Iterable[int]] = None,
    ) -> Optional[Delivery]:
        owned = sorted(set(partitions)) if partitions is not None else range(self.partitions)
        now = self.clock()

        with immediate_transaction(self.db) as conn:
            offsets = {
                row[0]: row[1]
                for row in conn.execute(
                    "SELECT partition, committed_id FROM consumer_offsets "
                    "WHERE group_id = ? AND topic = ?",
                    (group_id, topic),
                )
            }

            best = None
            for partition in owned:
                head = conn.execute(
                    """
                    SELECT id, key, payload, published_at FROM messages
                    WHERE topic = ? AND partition = ? AND id > ?
                    ORDER BY id LIMIT 1
                    """,
                    (topic, partition, offsets.get(partition, 0)),
                ).fetchone()
                if head is None:
                    continue

                delivery_count = self._next_delivery_count(conn, group_id, topic, partition, head[0], now)
                if delivery_count is None:
                    continue

                # Oldest deliverable head first, across partitions
                if best is None or head[0] < best[1][0]:
                    best = (partition, head, delivery_count)

            if best is None:
                return None

            partition, head, delivery_count = best
            conn.execute(
                """
                INSERT OR REPLACE INTO leases (
                    group_id, topic, partition, message_id,
                    consumer_id, leased_at, delivery_count, not_before
                ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                """,
                (group_id, topic, partition, head[0], consumer_id, now, delivery_count),
            )

        message_id, key, payload, published_at = head
        return Delivery(
            message_id=message_id,
            topic=topic,
            partition=partition,
            key=key,
            payload=json.loads(payload),
            published_at=datetime.fromisoformat(published_at),
            delivery_count=delivery_count,
            group_id=group_id,
            consumer_id=consumer_id,
        )

    def _next_delivery_count(
        self,
        conn: sqlite3.Connection,
        group_id: str,
        topic: str,
        partition: int,
        message_id: int,
        now: float,
    ) -> Optional[int]:
        """Delivery count the head would get, or None while it is held or backing off."""
        lease = conn.execute(
            """
            SELECT message_id, consumer_id, leased_at, delivery_count, not_before FROM leases
            WHERE group_id = ? AND topic = ? AND partition = ?
            """,
            (group_id, topic, partition),
        ).fetchone()

        if lease is None or lease[0] != message_id:
            return 1

        _, holder, leased_at, delivery_count, not_before = lease
        if holder is not None and leased_at is not None and now - leased_at < self.lease_timeout_s:
            return None
        if not_before is not None and now < not_before:
            return None
        return delivery_count + 1

    @retry_on_lock()
    def ack(self, delivery: Delivery) -> None:
        with immediate_transaction(self.db) as conn:
            conn.execute(
                """
                INSERT INTO consumer_offsets (group_id, topic, partition, committed_id)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(group_id, topic, partition)
                DO UPDATE SET committed_id = MAX(committed_id, excluded.committed_id)
                """,
                (delivery.group_id, delivery.topic, delivery.partition, delivery.message_id),
            )
            conn.execute(
                """
                DELETE FROM leases
                WHERE group_id = ? AND topic = ? AND partition = ? AND message_id = ?
                """,
                (delivery.group_id, delivery.topic, delivery.partition, delivery.message_id),
            )

    @retry_on_lock()
    def nack(self, delivery: Delivery, delay_s: float = 0.0) -> None:
        with immediate_transaction(self.db) as conn:
            conn.execute(
                """
                UPDATE leases
                SET consumer_id = NULL, leased_at = NULL, not_before = ?
                WHERE group_id = ? AND topic = ? AND partition = ?
                  AND message_id = ? AND consumer_id = ?
                """,
                (
                    self.clock() + max(delay_s, 0.0),
                    delivery.group_id,
                    delivery.topic,
                    delivery.partition,
                    delivery.message_id,
                    delivery.consumer_id,
                ),
            )

    @retry_on_lock()
    def release_stale_leases(self, group_id: str, timeout_s: Optional[float] = None) -> int:
        """Crash recovery: release leases whose holder stopped acknowledging.

        The delivery count is kept, so the next poll reports a redelivery.
        """
        cutoff = self.clock() - (self.lease_timeout_s if timeout_s is None else timeout_s)
        with immediate_transaction(self.db) as conn:
            cursor = conn.execute(
                """
                UPDATE leases SET consumer_id = NULL, leased_at = NULL
                WHERE group_id = ? AND consumer_id IS NOT NULL AND leased_at < ?
                """,
                (group_id, cutoff),
            )
            return cursor.rowcount

    def messages(self, topic: str, limit: Optional[int] = None) -> List[Message]:
        rows = self.db["messages"].rows_where("topic = ?", [topic], order_by="id", limit=limit)
        return [
            Message(
                message_id=row["id"],
                topic=row["topic"],
                partition=row["partition"],
                key=row["key"],
                payload=json.loads(row["payload"]),
                published_at=datetime.fromisoformat(row["published_at"]),
            )
            for row in rows
        ]

    def lag(self, topic: str, group_id: str) -> int:
        row = self.db.execute(
            """
            SELECT COUNT(*) FROM messages m
            LEFT JOIN consumer_offsets o
              ON o.group_id = ? AND o.topic = m.topic AND o.partition = m.partition
            WHERE m.topic = ? AND m.id > COALESCE(o.committed_id, 0)
            """,
            (group_id, topic),
        ).fetchone()
        return row[0]
