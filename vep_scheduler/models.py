"""Pydantic models for scheduled VEP delivery jobs.

Models:
    - JobStatus: explicit job state machine
    - JobCategory: fixed set of job categories
    - LinkedRecipient / Recipient: people or groups embedded in a job
    - Job: a scheduled batch of messages
    - VepUser: recipient directory entry
    - DeliveryOutcome / JobReport / ExecutionReport: results of an execution pass
"""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobStatus(str, Enum):
    """Lifecycle of a job.

    Attributes:
        PENDING: Created, waiting for its execution window.
        RUNNING: Claimed by the scheduler.
        FINISHED: Every recipient was processed (individual failures allowed).
        ERROR: Execution aborted by a job-level error.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    ERROR = "ERROR"

    @classmethod
    def can_transition(cls, source: "JobStatus | str | None", target: "JobStatus | str") -> bool:
        """Return ``True`` when ``source -> target`` is a legal edge."""
        try:
            src = cls(source) if source is not None else None
            dst = cls(target)
        except ValueError:
            return False
        return dst in _TRANSITIONS.get(src, frozenset())

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.FINISHED, JobStatus.ERROR)


_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.FINISHED, JobStatus.ERROR}),
}


class JobCategory(str, Enum):
    """Job categories, each with its own message template."""

    AUTONOMO = "autónomo"
    CREDENCIAL = "credencial"
    MONOTRIBUTO = "monotributo"

    @classmethod
    def parse(cls, value: Any) -> Optional["JobCategory"]:
        try:
            return cls(value)
        except ValueError:
            return None


class LinkedRecipient(BaseModel):
    """Secondary tax id riding along with a primary recipient (spouse, co-filer)."""

    model_config = ConfigDict(extra="ignore")

    cuit: str
    name: str = ""


class Recipient(BaseModel):
    """A person or group receiving documents within a job."""

    model_config = ConfigDict(extra="ignore")

    id: int
    real_name: str = ""
    alter_name: Optional[str] = None
    mobile_number: str
    cuit: Optional[str] = None
    is_group: bool = False
    joined_users: List[LinkedRecipient] = Field(default_factory=list)
    need_papers: bool = False
    need_z: bool = False
    need_compra: bool = False
    need_auditoria: bool = False
    sent: bool = False
    last_execution: Optional[str] = None

    @field_validator("need_papers", "need_z", "need_compra", "need_auditoria", "is_group", "sent", mode="before")
    @classmethod
    def null_flags_are_false(cls, v: Any) -> Any:
        """Stored rows carry ``null`` for unset flags."""
        return False if v is None else v

    @field_validator("joined_users", mode="before")
    @classmethod
    def null_joined_users(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def informal_name(self) -> str:
        """Name used in greetings, falling back to the display name."""
        return self.alter_name or self.real_name or ""


class Job(BaseModel):
    """A scheduled batch of messages for one category and execution time."""

    model_config = ConfigDict(extra="ignore")

    id: int
    users: List[Recipient] = Field(default_factory=list)
    type: str
    execution_time: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    caducate: Optional[str] = None
    executed_at: Optional[str] = None
    folder_name: Optional[str] = None
    created_at: Optional[str] = None

    @field_validator("users", mode="before")
    @classmethod
    def null_users(cls, v: Any) -> Any:
        return [] if v is None else v


class VepUser(BaseModel):
    """Directory entry for a recipient, tracking the last successful delivery."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    real_name: str = ""
    alter_name: Optional[str] = None
    mobile_number: str
    cuit: Optional[str] = None
    is_group: bool = False
    need_papers: bool = False
    need_z: bool = False
    need_compra: bool = False
    need_auditoria: bool = False
    last_execution: Optional[str] = None

    @field_validator("need_papers", "need_z", "need_compra", "need_auditoria", "is_group", mode="before")
    @classmethod
    def null_flags_are_false(cls, v: Any) -> Any:
        return False if v is None else v


class DeliveryOutcome(BaseModel):
    """Result of one recipient's delivery within an execution pass."""

    recipient_id: int
    recipient_name: str = ""
    success: bool
    error: Optional[str] = None


class JobReport(BaseModel):
    """Summary of a single job execution."""

    job_id: int
    status: Optional[JobStatus] = None
    skipped: bool = False
    error: Optional[str] = None
    outcomes: List[DeliveryOutcome] = Field(default_factory=list)

    @property
    def sent_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)


class ExecutionReport(BaseModel):
    """Result of one selection-and-execute pass."""

    executed_at: str
    jobs: List[JobReport] = Field(default_factory=list)

    @property
    def executed_jobs(self) -> int:
        return sum(1 for job in self.jobs if not job.skipped)

    def summary(self) -> dict[str, Any]:
        """Aggregate counts used by the manual-trigger endpoint."""
        return {
            "executed_jobs": self.executed_jobs,
            "skipped_jobs": sum(1 for job in self.jobs if job.skipped),
            "finished_jobs": sum(1 for job in self.jobs if job.status == JobStatus.FINISHED),
            "error_jobs": sum(1 for job in self.jobs if job.status == JobStatus.ERROR),
            "sent": sum(job.sent_count for job in self.jobs),
            "failed": sum(job.failed_count for job in self.jobs),
        }
