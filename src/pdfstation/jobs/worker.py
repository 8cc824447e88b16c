"""Consumer threads for the job-submitted channel.

This module provides:
- process_next(): poll one delivery, run the processor, ack or nack it
- drain(): work through the current backlog once, with a tqdm progress bar
- JobWorkerPool: long-running threads that each own a disjoint set of
  partitions, with graceful shutdown via a stop event
"""

import logging
import os
import socket
import threading
import uuid
from typing import Callable, List, Optional, Sequence

from pydantic import ValidationError
from tqdm import tqdm

from .models import JobSubmitted
from .processor import Outcome, ProcessingResult

logger = logging.getLogger(__name__)


def backoff_delay(delivery_count: int, base_s: float, max_s: float) -> float:
    """Exponential redelivery delay: base, 2*base, 4*base ... capped at max_s."""
    return min(base_s * (2 ** max(delivery_count - 1, 0)), max_s)


def owned_partitions(worker_index: int, n_workers: int, partitions: int) -> List[int]:
    """Partitions p with p mod n_workers == worker_index."""
    return [p for p in range(partitions) if p % n_workers == worker_index]


def process_next(
    station,
    consumer_id: str,
    partitions: Optional[Sequence[int]] = None,
    use_backoff: bool = True,
) -> Optional[ProcessingResult]:
    """Poll one job-submitted message and settle it.

    Returns:
        The processing result, or None when nothing was deliverable

    Delivery handling:
    - Malformed payload: logged and acknowledged (it can never succeed)
    - Processor returned: acknowledged
    - Processor raised (retry requested, or infrastructure error): nacked
      with exponential backoff so the message is redelivered
    """
    exchange_config = station.config.exchange
    delivery = station.exchange.poll(
        exchange_config.submitted_topic,
        exchange_config.consumer_group,
        consumer_id,
        partitions,
    )
    if delivery is None:
        return None

    try:
        event = JobSubmitted.model_validate(delivery.payload)
    except ValidationError as e:
        logger.error("Dropping malformed message %s (key=%s): %s", delivery.message_id, delivery.key, e)
        station.exchange.ack(delivery)
        return ProcessingResult(Outcome.DISCARDED, delivery.key, error=e)

    try:
        result = station.processor.consume(event)
    except Exception as e:
        delay = 0.0
        if use_backoff:
            delay = backoff_delay(
                delivery.delivery_count,
                exchange_config.redelivery_backoff_s,
                exchange_config.max_backoff_s,
            )
        logger.info(
            "Redelivering job %s in %.1fs (delivery %d): %s",
            event.job_id,
            delay,
            delivery.delivery_count,
            e,
        )
        station.exchange.nack(delivery, delay_s=delay)
        return ProcessingResult(Outcome.RETRY, event.job_id, error=e)

    station.exchange.ack(delivery)
    return result


def drain(station, consumer_id: str = "drain", show_progress: bool = True) -> List[ProcessingResult]:
    """Process every deliverable job-submitted message, then return.

    Redeliveries run immediately (no backoff), so a job either completes or
    exhausts its retry budget before drain() returns.
    """
    exchange_config = station.config.exchange
    station.exchange.release_stale_leases(exchange_config.consumer_group)
    station.relay.flush()

    backlog = station.exchange.lag(exchange_config.submitted_topic, exchange_config.consumer_group)
    results: List[ProcessingResult] = []

    with tqdm(total=backlog, desc="Processing jobs", unit="job", disable=not show_progress) as bar:
        while True:
            result = process_next(station, consumer_id, use_backoff=False)
            if result is None:
                # Events whose relay failed mid-run; a relayed submission means more work
                if _flush_outbox(station):
                    continue
                break
            results.append(result)
            if result.outcome != Outcome.RETRY:
                bar.update(1)
            bar.set_postfix(last=result.outcome.value)

    return results


def _flush_outbox(station) -> int:
    try:
        return station.relay.flush()
    except Exception:
        logger.exception("Outbox relay failed; pending events stay queued")
        return 0


class JobWorkerPool:
    """Thread-based consumer pool.

    Features:
    - One Station (own SQLite connections) per thread
    - Static partition assignment: worker i owns partitions p % n == i
    - Outbox flush and stale-lease release on every idle cycle
    - Context manager for graceful shutdown (in-flight jobs finish)

    Compression and conversion are CPU-bound pypdf/Pillow work, so threads in
    one pool share one GIL and mostly overlap SQLite and file I/O. For more
    CPU, run several `pdfstation worker` processes against the same database:
    partition leases keep two processes from handling the same message.
    """

    def __init__(self, config, n_workers: Optional[int] = None, station_factory: Optional[Callable] = None):
        """Initialize worker pool.

        Args:
            config: StationConfig shared by all workers
            n_workers: Number of threads (default: processing.workers)
            station_factory: Builds a Station from config (default: build_station)
        """
        if station_factory is None:
            from ..runtime import build_station

            station_factory = build_station

        self.config = config
        self.n_workers = n_workers or config.processing.workers
        self.station_factory = station_factory
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._id_prefix = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.shutdown(wait=True)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._stop_event.clear()
        for index in range(self.n_workers):
            thread = threading.Thread(
                target=self._run, args=(index,), name=f"pdfstation-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d workers", self.n_workers)

    def shutdown(self, wait: bool = True) -> None:
        """Signal workers to stop after their current job."""
        self._stop_event.set()
        if wait:
            for thread in self._threads:
                thread.join()
        self._threads = []

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown is requested; True if it was."""
        return self._stop_event.wait(timeout)

    def _run(self, index: int) -> None:
        station = self.station_factory(self.config)
        consumer_id = f"{self._id_prefix}-{index}"
        partitions = owned_partitions(index, self.n_workers, station.exchange.partitions)
        poll_interval = self.config.processing.poll_interval_s
        logger.info("Worker %s owns partitions %s", consumer_id, partitions)

        try:
            while not self._stop_event.is_set():
                try:
                    result = process_next(station, consumer_id, partitions)
                except Exception:
                    # Exchange or store unavailable: back off and keep the thread alive
                    logger.exception("Worker %s poll cycle failed", consumer_id)
                    self._stop_event.wait(poll_interval)
                    continue

                if result is None:
                    self._idle(station, consumer_id)
                    self._stop_event.wait(poll_interval)
        finally:
            station.close()
            logger.info("Worker %s stopped", consumer_id)

    def _idle(self, station, consumer_id: str) -> None:
        try:
            station.relay.flush()
            released = station.exchange.release_stale_leases(self.config.exchange.consumer_group)
            if released:
                logger.warning("Worker %s released %d stale leases", consumer_id, released)
        except Exception:
            logger.exception("Worker %s maintenance failed", consumer_id)
