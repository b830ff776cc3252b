"""
Pydantic schemas for background migration payloads and the admin API.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Union
from uuid import UUID

from pydantic import BaseModel, Field, StrictBool, StrictInt, StrictStr

# JSON columns cannot store nan or infinity
FiniteFloat = Annotated[float, Field(strict=True, allow_inf_nan=False)]

# Arguments must be re-fetchable identifiers or small scalars, never objects
PrimitiveArgument = Union[StrictInt, FiniteFloat, StrictStr, StrictBool, None]

DEFAULT_PRIORITY = 5


class JobPayload(BaseModel):
    """A migration name plus the primitive arguments its unit is called with."""

    name: str = Field(..., min_length=1, description="Migration unit name")
    arguments: list[PrimitiveArgument] = Field(
        default_factory=list, description="Ordered arguments for perform"
    )
    priority: int = Field(
        default=DEFAULT_PRIORITY,
        ge=1,
        le=10,
        description="Priority (1=highest, 10=lowest)",
    )


class JobOutcome(str, Enum):
    """Result of running one claimed job."""

    SUCCEEDED = "succeeded"
    RETRY = "retry"
    DEAD = "dead"


class ScheduleRequest(BaseModel):
    """Schema for enqueueing one or many jobs via the admin API."""

    jobs: list[JobPayload] = Field(..., min_length=1, description="Jobs to schedule")
    delay_s: float | None = Field(
        default=None, ge=0, description="Seconds before the jobs become eligible"
    )


class ScheduleResponse(BaseModel):
    """Schema for enqueue responses."""

    job_ids: list[UUID]
    run_at: datetime | None = None


class PendingResponse(BaseModel):
    """Outstanding work for one migration."""

    name: str
    pending: int
    eligible: int
    dead: int
    has_pending: bool
    next_run_at: datetime | None = None


class DrainRequest(BaseModel):
    """Options for a blocking drain."""

    ignore_delay: bool = Field(
        default=False, description="Treat delayed jobs as immediately eligible"
    )
    timeout_s: float | None = Field(
        default=None, gt=0, description="Give up after this many seconds"
    )


class DrainReport(BaseModel):
    """Summary of a completed drain."""

    name: str
    executed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead: int = 0
    elapsed_s: float = 0.0

    def record(self, outcome: JobOutcome) -> None:
        self.executed += 1
        if outcome is JobOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome is JobOutcome.RETRY:
            self.retried += 1
        else:
            self.dead += 1


class DeadJobResponse(BaseModel):
    """Dead-lettered job as shown to operators."""

    id: UUID
    name: str
    arguments: list[Any]
    attempts: int
    error_code: str | None = None
    last_error: str | None = None
    updated_at: datetime

    model_config = {"from_attributes": True}


class QueueStatsResponse(BaseModel):
    """Schema for queue statistics."""

    total_jobs: int
    by_status: dict[str, int]
    pending_by_name: dict[str, int]
    dead_by_name: dict[str, int]
