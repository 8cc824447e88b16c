"""Exception taxonomy for the job pipeline.

Client errors (not found, not ready, invalid request) are raised to callers
and never retried. Processing errors split into permanent ones, which send a
job straight to FAILED and the dead-letter channel, and everything else,
which is treated as transient and retried through redelivery.
"""


class PdfStationError(Exception):
    """Base class for all pdfstation errors."""


class JobNotFoundError(PdfStationError):
    """Referenced job id does not exist in the store."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobNotReadyError(PdfStationError):
    """Output requested before the job reached COMPLETED."""

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is not ready (status={status})")
        self.job_id = job_id
        self.status = status


class InvalidJobRequestError(PdfStationError):
    """Submission rejected before a job row was created."""


class InvalidTransitionError(PdfStationError):
    """The store refused a status change that the state machine forbids."""

    def __init__(self, job_id: str, from_status: str, to_status: str):
        super().__init__(f"Job {job_id}: illegal transition {from_status} -> {to_status}")
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status


class PermanentJobError(PdfStationError):
    """Processing failure that retrying cannot fix."""


class InvalidJobParametersError(PermanentJobError):
    """Job parameters are unusable for the requested operation."""


class WrongPasswordError(PermanentJobError):
    """The supplied password does not open the document."""


class CompressionError(PermanentJobError):
    """Input document cannot be read by the compression engine."""


class UnreadableDocumentError(PermanentJobError):
    """Input is not a readable PDF, or is encrypted where a plain one is required."""
