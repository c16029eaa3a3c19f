from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class JobState(str, Enum):
    ENQUEUED = "Enqueued"
    SCHEDULED = "Scheduled"
    PROCESSING = "Processing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @classmethod
    def parse(cls, value) -> "JobState":
        """Accept an enum member, its value or its name, case-insensitively."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for state in cls:
            if text in (state.value.lower(), state.name.lower()):
                return state
        raise ValueError(f"Unknown job state: {value!r}")


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED})
CLAIMABLE_STATES = frozenset({JobState.ENQUEUED, JobState.SCHEDULED})


def new_job_id() -> str:
    return uuid4().hex


class Job(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_job_id)
    job_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.ENQUEUED
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    retry_count: int = 0
    exception: Optional[str] = None
    output: Optional[str] = None
    recurring_id: Optional[str] = None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class JobSummary(BaseModel):
    """What the management surface reports for a single job."""

    id: str
    state: str
    job_type: str
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    retry_count: int = 0
    recurring_id: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobSummary":
        duration = job.duration
        return cls(
            id=job.id,
            state=job.state.value,
            job_type=job.job_type,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            scheduled_for=job.scheduled_for,
            duration_seconds=duration.total_seconds() if duration is not None else None,
            error=job.exception,
            retry_count=job.retry_count,
            recurring_id=job.recurring_id,
        )


class RecurringJobDefinition(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    cron_expression: str
    job_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    last_execution: Optional[datetime] = None
    next_execution: datetime


class JobStatistics(BaseModel):
    counts: Dict[str, int] = Field(default_factory=lambda: {state.value: 0 for state in JobState})
    recurring: int = 0
    oldest_job_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def count(self, state) -> int:
        return self.counts.get(JobState.parse(state).value, 0)
