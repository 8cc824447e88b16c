"""Pydantic models for the job pipeline.

This module defines the job aggregate, its per-operation parameters, the
events exchanged between submission and processing, and the audit records
kept by the store. All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        created    → processing   (processor picks the job up)
        processing → processing   (redelivery after a transient failure)
        processing → completed    (transformation succeeded, output stored)
        processing → failed       (retry budget exhausted or permanent error)
    """

    CREATED = "CREATED"  # Persisted, inputs staged, not yet picked up
    PROCESSING = "PROCESSING"  # Transformation in progress (or being retried)
    COMPLETED = "COMPLETED"  # Output written and validated
    FAILED = "FAILED"  # Terminal, routed to the dead-letter channel

    def is_terminal(self) -> bool:
        """Check if status is terminal (cannot transition)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_transition_to(self, target: "JobStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    JobStatus.CREATED: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class Operation(str, Enum):
    """Closed set of document transformations."""

    COMPRESS = "COMPRESS"
    MERGE = "MERGE"
    SPLIT = "SPLIT"
    PROTECT = "PROTECT"
    PDF_TO_WORD = "PDF_TO_WORD"


class SplitMode(str, Enum):
    PAGES = "PAGES"  # Explicit page ranges, one file per selected page
    INTERVAL = "INTERVAL"  # Fixed-size chunks
    ALL = "ALL"  # One file per page


class ProtectionAction(str, Enum):
    ADD = "ADD"
    REMOVE = "REMOVE"


class CompressParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operation: Literal[Operation.COMPRESS] = Operation.COMPRESS
    quality: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, description="0 = smallest, 1 = best; None = configured default"
    )


class MergeParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operation: Literal[Operation.MERGE] = Operation.MERGE


class SplitParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operation: Literal[Operation.SPLIT] = Operation.SPLIT
    mode: SplitMode = Field(..., description="How pages are grouped into output files")
    ranges: Optional[str] = Field(default=None, description='Page ranges, e.g. "1-3,5,7-9"')
    interval: Optional[int] = Field(default=None, ge=1, description="Pages per output file")

    @model_validator(mode="after")
    def mode_arguments_present(self) -> "SplitParams":
        if self.mode == SplitMode.PAGES and not (self.ranges and self.ranges.strip()):
            raise ValueError("split mode PAGES requires ranges")
        if self.mode == SplitMode.INTERVAL and self.interval is None:
            raise ValueError("split mode INTERVAL requires interval")
        return self


class ProtectParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operation: Literal[Operation.PROTECT] = Operation.PROTECT
    action: ProtectionAction = Field(default=ProtectionAction.ADD)
    user_password: Optional[str] = Field(default=None, description="Password to open (ADD)")
    owner_password: Optional[str] = Field(
        default=None, description="Password to change permissions (ADD)"
    )
    password: Optional[str] = Field(default=None, description="Current password (REMOVE)")
    allow_printing: bool = True
    allow_copying: bool = True
    allow_modification: bool = True
    allow_assembly: bool = True

    @model_validator(mode="after")
    def passwords_for_action(self) -> "ProtectParams":
        if self.action == ProtectionAction.ADD and not self.user_password:
            raise ValueError("protection action ADD requires user_password")
        if self.action == ProtectionAction.REMOVE and not self.password:
            raise ValueError("protection action REMOVE requires password")
        return self

    @property
    def effective_owner_password(self) -> str:
        """Owner password, defaulting to the user password plus a suffix."""
        return self.owner_password or f"{self.user_password}_owner"


class ConvertParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operation: Literal[Operation.PDF_TO_WORD] = Operation.PDF_TO_WORD


JobParams = Annotated[
    Union[CompressParams, MergeParams, SplitParams, ProtectParams, ConvertParams],
    Field(discriminator="operation"),
]

PARAMS_BY_OPERATION = {
    Operation.COMPRESS: CompressParams,
    Operation.MERGE: MergeParams,
    Operation.SPLIT: SplitParams,
    Operation.PROTECT: ProtectParams,
    Operation.PDF_TO_WORD: ConvertParams,
}


def build_params(operation: Operation, values: Optional[Dict[str, Any]] = None):
    """Validate raw parameter values against the model for `operation`."""
    data = dict(values or {})
    data["operation"] = operation
    return PARAMS_BY_OPERATION[operation].model_validate(data)


class Job(BaseModel):
    """Aggregate root: one document-transformation request and its state."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(..., description="Unique job identifier (UUID hex)")
    operation: Operation = Field(..., description="Requested transformation")
    status: JobStatus = Field(default=JobStatus.CREATED, description="Current job state")
    input_paths: List[str] = Field(..., min_length=1, description="Staged inputs, in order")
    output_path: Optional[str] = Field(default=None, description="Set on COMPLETED")
    output_hash: Optional[str] = Field(default=None, description="SHA-256 of the output file")
    retry_count: int = Field(default=0, ge=0, description="Failed attempts so far")
    max_retries: int = Field(default=3, ge=1, description="Retry budget")
    error_message: Optional[str] = Field(default=None, description="Last failure (truncated)")
    params: JobParams = Field(..., description="Operation-specific parameters")
    created_at: Optional[datetime] = Field(default=None, description="Set by the store")
    updated_at: Optional[datetime] = Field(default=None, description="Set by the store")

    @model_validator(mode="before")
    @classmethod
    def default_params(cls, data: Any) -> Any:
        """Fill parameter-less operations and tag params with the job's operation."""
        if isinstance(data, dict) and "operation" in data:
            params = data.get("params")
            if params is None:
                data = {**data, "params": {"operation": data["operation"]}}
            elif isinstance(params, dict) and "operation" not in params:
                data = {**data, "params": {**params, "operation": data["operation"]}}
        return data

    @model_validator(mode="after")
    def params_match_operation(self) -> "Job":
        if self.params.operation != self.operation:
            raise ValueError(
                f"parameters for {self.params.operation.value} given to a "
                f"{self.operation.value} job"
            )
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count cannot exceed max_retries")
        return self

    @property
    def primary_input_path(self) -> str:
        return self.input_paths[0]


class JobSubmitted(BaseModel):
    """Published once per job, after the creating transaction commits."""

    job_id: str
    operation: Operation
    primary_input_path: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class JobStatusChanged(BaseModel):
    """Published on every status transition."""

    job_id: str
    status: JobStatus
    updated_at: datetime = Field(default_factory=datetime.now)


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=datetime.now, description="Transition time")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")


class OutboxEntry(BaseModel):
    """Event persisted in the same transaction as the state change it announces."""

    id: int
    topic: str
    key: str
    payload: Dict[str, Any]
    created_at: datetime
    published_at: Optional[datetime] = None


class Message(BaseModel):
    """One entry of a topic's append-only log."""

    message_id: int
    topic: str
    partition: int
    key: str
    payload: Dict[str, Any]
    published_at: datetime


class Delivery(Message):
    """A message handed to a consumer, valid until acked, nacked or its lease expires."""

    delivery_count: int = Field(default=1, ge=1, description="1 on first delivery")
    group_id: str
    consumer_id: str
