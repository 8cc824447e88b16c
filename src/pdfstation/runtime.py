"""Wiring of the pipeline components over one set of SQLite connections."""

import threading
from dataclasses import dataclass, field

from .compression import CompressionEngine
from .jobs.outbox import OutboxRelay
from .jobs.processor import JobProcessor
from .jobs.sqlite_backend import SQLiteExchange, SQLiteJobStore
from .jobs.submission import SubmissionService
from .models import StationConfig
from .staging import FileStaging


@dataclass
class Station:
    """Store, exchange and services sharing one set of SQLite connections.

    Worker threads each build their own Station. A Station shared between
    threads (the HTTP app) serializes its calls through `lock`.
    """

    config: StationConfig
    store: SQLiteJobStore
    exchange: SQLiteExchange
    staging: FileStaging
    engine: CompressionEngine
    relay: OutboxRelay
    processor: JobProcessor
    submissions: SubmissionService
    lock: threading.Lock = field(default_factory=threading.Lock)

    def close(self) -> None:
        self.store.close()
        self.exchange.close()


def build_station(config: StationConfig) -> Station:
    store = SQLiteJobStore(config.store.db_path)
    exchange = SQLiteExchange(
        config.exchange.db_path,
        partitions=config.exchange.partitions,
        lease_timeout_s=config.exchange.lease_timeout_s,
    )
    staging = FileStaging(config.storage.upload_dir, config.storage.output_dir)
    engine = CompressionEngine(config.compression)
    relay = OutboxRelay(store, exchange)

    return Station(
        config=config,
        store=store,
        exchange=exchange,
        staging=staging,
        engine=engine,
        relay=relay,
        processor=JobProcessor(store, staging, engine, relay, config),
        submissions=SubmissionService(store, staging, relay, config),
    )
