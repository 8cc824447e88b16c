"""Job submission and output lookup.

A submission is validated, its inputs are staged, and the job row is written
together with its outbox events in one transaction. The events reach the
exchange only after that commit, via the OutboxRelay.
"""

import logging
import os
import uuid
from datetime import datetime
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ValidationError

from ..errors import InvalidJobRequestError, JobNotFoundError, JobNotReadyError
from ..models import StationConfig
from ..staging import FileStaging
from .backends import JobStore
from .models import Job, JobStatus, JobStatusChanged, JobSubmitted, Operation, build_params
from .outbox import OutboxRelay

logger = logging.getLogger(__name__)

UploadedFile = Tuple[Optional[str], BinaryIO]


class SubmissionService:
    """Entry point for creating jobs and retrieving their outputs."""

    def __init__(
        self,
        store: JobStore,
        staging: FileStaging,
        relay: OutboxRelay,
        config: StationConfig,
    ):
        self.store = store
        self.staging = staging
        self.relay = relay
        self.config = config

    def submit(
        self,
        operation: Union[Operation, str],
        files: Sequence[UploadedFile],
        params: Union[Dict[str, Any], BaseModel, None] = None,
    ) -> Job:
        """Create a job in status CREATED and publish its submitted event.

        Raises:
            InvalidJobRequestError: Unknown operation, bad parameters or wrong file count
        """
        operation, job_params = self._validate(operation, params, len(files))
        job_id = uuid.uuid4().hex
        return self._create(job_id, operation, job_params, lambda: self.staging.stage_inputs(job_id, files))

    def submit_paths(
        self,
        operation: Union[Operation, str],
        paths: Sequence[str],
        params: Union[Dict[str, Any], BaseModel, None] = None,
    ) -> Job:
        """Submit local files (CLI)."""
        missing = [path for path in paths if not os.path.isfile(path)]
        if missing:
            raise InvalidJobRequestError(f"File not found: {', '.join(missing)}")

        operation, job_params = self._validate(operation, params, len(paths))
        job_id = uuid.uuid4().hex
        return self._create(job_id, operation, job_params, lambda: self.staging.stage_paths(job_id, paths))

    def _create(
        self, job_id: str, operation: Operation, job_params, stage: Callable[[], List[str]]
    ) -> Job:
        """Stage the inputs, then write the job and its outbox events in one transaction.

        Staged inputs are removed again if anything fails before the commit.
        """
        try:
            staged = stage()
            empty = [os.path.basename(path) for path in staged if os.path.getsize(path) == 0]
            if empty:
                raise InvalidJobRequestError(f"Uploaded file is empty: {', '.join(empty)}")

            job = Job(
                id=job_id,
                operation=operation,
                input_paths=staged,
                max_retries=self.config.processing.max_retries,
                params=job_params,
            )
            now = datetime.now()
            events = [
                (
                    self.config.exchange.status_topic,
                    job_id,
                    JobStatusChanged(job_id=job_id, status=JobStatus.CREATED, updated_at=now).model_dump(mode="json"),
                ),
                (
                    self.config.exchange.submitted_topic,
                    job_id,
                    JobSubmitted(
                        job_id=job_id,
                        operation=operation,
                        primary_input_path=staged[0],
                        created_at=now,
                    ).model_dump(mode="json"),
                ),
            ]
            job = self.store.create_job(job, events)
        except BaseException:
            self.staging.discard_inputs(job_id)
            raise

        logger.info("Created %s job %s with %d input(s)", operation.value, job_id, len(staged))
        self._relay()
        return job

    def get_job(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        return self.store.list_jobs(status)

    def resolve_output(self, job_id: str) -> str:
        """Output path of a COMPLETED job.

        Raises:
            JobNotFoundError: Unknown job id
            JobNotReadyError: Job has not reached COMPLETED
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.COMPLETED or not job.output_path:
            raise JobNotReadyError(job_id, job.status.value)
        return job.output_path

    def _relay(self) -> None:
        # The entries stay in the outbox on failure; workers flush it on every poll cycle.
        try:
            self.relay.flush()
        except Exception as e:
            logger.warning("Outbox relay failed, events will be published later: %s", e)

    def _validate(self, operation, params, file_count: int):
        operation = self._parse_operation(operation)
        job_params = self._parse_params(operation, params)
        self._check_file_count(operation, file_count)
        return operation, job_params

    @staticmethod
    def _parse_operation(operation: Union[Operation, str]) -> Operation:
        try:
            return Operation(operation)
        except ValueError:
            raise InvalidJobRequestError(f"Unknown operation: {operation}")

    @staticmethod
    def _parse_params(operation: Operation, params: Union[Dict[str, Any], BaseModel, None]):
        if isinstance(params, BaseModel):
            params = params.model_dump(exclude={"operation"})
        try:
            return build_params(operation, params)
        except ValidationError as e:
            raise InvalidJobRequestError(f"Invalid parameters for {operation.value}: {e}") from e

    @staticmethod
    def _check_file_count(operation: Operation, count: int) -> None:
        if operation == Operation.MERGE:
            if count < 2:
                raise InvalidJobRequestError("Merge needs at least two files")
        elif count != 1:
            raise InvalidJobRequestError(f"{operation.value} takes exactly one file, got {count}")
