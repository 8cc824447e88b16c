"""Job processor: state machine, dispatch and the retry/dead-letter decision.

The processor never schedules retries itself. `handle()` returns a
ProcessingResult; `consume()` turns RETRY into a re-raise so the delivery
layer redelivers the message (with backoff) and the next attempt runs
against the persisted retry budget.

Status and dead-letter events are written to the outbox in the same
transaction as the state change they announce, then relayed. A crash after
the commit leaves them in the outbox, never lost.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..adapters import merge_pdfs, pdf_to_word, protect_pdf, split_pdf
from ..compression import CompressionEngine
from ..errors import InvalidJobParametersError, PermanentJobError
from ..logging_setup import job_logger
from ..models import StationConfig
from ..staging import FileStaging
from .backends import JobStore, PendingEvent
from .models import (
    CompressParams,
    Job,
    JobStatus,
    JobStatusChanged,
    JobSubmitted,
    Operation,
    ProtectParams,
    SplitParams,
)
from .outbox import OutboxRelay

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    SUCCESS = "SUCCESS"  # Output stored, job COMPLETED
    RETRY = "RETRY"  # Attempt failed, budget left; redeliver
    TERMINAL = "TERMINAL"  # Job FAILED and dead-lettered
    ALREADY_HANDLED = "ALREADY_HANDLED"  # Redelivery of a COMPLETED/FAILED job
    DISCARDED = "DISCARDED"  # No job row for the event


@dataclass
class ProcessingResult:
    """Decision taken for one delivery of a JobSubmitted event."""

    outcome: Outcome
    job_id: str
    output_path: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def error_message(self) -> Optional[str]:
        return _describe(self.error) if self.error is not None else None


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class JobProcessor:
    """Drives a job from CREATED to COMPLETED or FAILED."""

    def __init__(
        self,
        store: JobStore,
        staging: FileStaging,
        engine: CompressionEngine,
        relay: OutboxRelay,
        config: StationConfig,
    ):
        self.store = store
        self.staging = staging
        self.engine = engine
        self.relay = relay
        self.config = config

    def consume(self, event: JobSubmitted) -> ProcessingResult:
        """Handle an event; re-raise the failure when the job should be redelivered."""
        result = self.handle(event)
        if result.outcome == Outcome.RETRY:
            raise result.error
        return result

    def handle(self, event: JobSubmitted) -> ProcessingResult:
        job = self.store.get_job(event.job_id)
        if job is None:
            logger.error(
                "Received %s event for unknown job %s; discarding",
                event.operation.value,
                event.job_id,
            )
            return ProcessingResult(Outcome.DISCARDED, event.job_id)

        log = job_logger(job.id, job.operation.value)

        if job.status.is_terminal():
            log.info("Job already %s, ignoring redelivery", job.status.value)
            self._relay(log)
            return ProcessingResult(Outcome.ALREADY_HANDLED, job.id, output_path=job.output_path)

        job = self.store.transition(job.id, JobStatus.PROCESSING, events=self._status_events)
        self._relay(log)
        log.info("Processing (attempt %d of %d)", job.retry_count + 1, job.max_retries)

        try:
            output_path = self._execute(job, log)
            job = self.store.mark_completed(job.id, output_path, events=self._status_events)
        except Exception as e:
            return self._handle_failure(event, e, log)

        self._relay(log)
        log.info("Completed: %s", job.output_path)
        return ProcessingResult(Outcome.SUCCESS, job.id, output_path=job.output_path)

    def _execute(self, job: Job, log: logging.LoggerAdapter) -> str:
        """Run the transformation for `job.operation`; returns the output path."""
        output_path = str(self.staging.output_path(job.id, job.operation, job.params))
        params = job.params

        if job.operation == Operation.COMPRESS:
            assert isinstance(params, CompressParams)
            quality = params.quality
            if quality is None:
                quality = self.config.processing.default_quality
            self.engine.compress(job.primary_input_path, output_path, quality, log=log)
            return output_path

        if job.operation == Operation.MERGE:
            if len(job.input_paths) < 2:
                raise InvalidJobParametersError("Merge needs at least two input files")
            return merge_pdfs(job.input_paths, output_path, log=log)

        if job.operation == Operation.SPLIT:
            assert isinstance(params, SplitParams)
            work_dir = self.staging.work_dir(job.id)
            try:
                return split_pdf(job.primary_input_path, params, output_path, work_dir, log=log)
            finally:
                self.staging.cleanup_work(job.id)

        if job.operation == Operation.PROTECT:
            assert isinstance(params, ProtectParams)
            return protect_pdf(job.primary_input_path, params, output_path, log=log)

        if job.operation == Operation.PDF_TO_WORD:
            return pdf_to_word(job.primary_input_path, output_path, log=log)

        raise InvalidJobParametersError(f"Unsupported operation: {job.operation}")

    def _handle_failure(
        self, event: JobSubmitted, error: Exception, log: logging.LoggerAdapter
    ) -> ProcessingResult:
        """Record the failed attempt; FAILED + dead letter once the budget is spent.

        Error classification:
        - PermanentJobError (bad parameters, wrong password, unreadable PDF):
          consumes the whole budget
        - Anything else: one attempt, retried through redelivery
        """
        permanent = isinstance(error, PermanentJobError)

        job = self.store.get_job(event.job_id)
        if job is None:
            log.error("Job row vanished while handling failure: %s", _describe(error))
            return ProcessingResult(Outcome.DISCARDED, event.job_id, error=error)

        job = self.store.record_failure(
            job.id,
            _describe(error),
            permanent=permanent,
            events=lambda updated: self._failure_events(event, updated),
        )
        self._relay(log)

        if job.status == JobStatus.FAILED:
            log.error(
                "Failed permanently after %d/%d attempts: %s",
                job.retry_count,
                job.max_retries,
                job.error_message,
            )
            return ProcessingResult(Outcome.TERMINAL, job.id, error=error)

        log.warning(
            "Attempt %d/%d failed, will be redelivered: %s",
            job.retry_count,
            job.max_retries,
            _describe(error),
        )
        return ProcessingResult(Outcome.RETRY, job.id, error=error)

    def _status_events(self, job: Job) -> List[PendingEvent]:
        event = JobStatusChanged(job_id=job.id, status=job.status, updated_at=job.updated_at)
        return [(self.config.exchange.status_topic, job.id, event.model_dump(mode="json"))]

    def _failure_events(self, event: JobSubmitted, job: Job) -> List[PendingEvent]:
        """Status change and dead letter once the job is FAILED; nothing while it can retry."""
        if job.status != JobStatus.FAILED:
            return []
        dead_letter = (self.config.exchange.dead_letter_topic, job.id, event.model_dump(mode="json"))
        return self._status_events(job) + [dead_letter]

    def _relay(self, log: logging.LoggerAdapter) -> None:
        # Unpublished entries stay in the outbox; drain and idle workers flush it again.
        try:
            self.relay.flush()
        except Exception as e:
            log.warning("Outbox relay failed, events will be published later: %s", e)
