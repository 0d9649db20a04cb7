"""GenerationJob entity - one image generation request tracked from submission to outcome."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel

from genqueue.core.timezone import utcnow


class JobStatus(str, Enum):
    """Job lifecycle status."""

    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ACTIVE_STATUSES = (JobStatus.IN_QUEUE, JobStatus.IN_PROGRESS)


class ModelType(str, Enum):
    """Generation models offered to users."""

    NANO_BANANA = "nano-banana"
    NANO_BANANA_PRO = "nano-banana-pro"
    SEEDREAM_4_5 = "seedream-4.5"

    @classmethod
    def from_name(cls, name: str | None) -> "ModelType":
        """Resolve a model by name, case-insensitive. Unknown or empty names map to nano-banana."""
        if name:
            for model in cls:
                if model.value == name.strip().lower():
                    return model
        return cls.NANO_BANANA

    @property
    def supports_resolution(self) -> bool:
        return self is ModelType.NANO_BANANA_PRO


class Resolution(str, Enum):
    """Output resolution for models that support it."""

    RESOLUTION_1K = "1K"
    RESOLUTION_2K = "2K"
    RESOLUTION_4K = "4K"

    @classmethod
    def from_value(cls, value: str | None) -> Optional["Resolution"]:
        if value:
            for resolution in cls:
                if resolution.value == value.strip().upper():
                    return resolution
        return None


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class GenerationJob(SQLModel, table=True):
    """GenerationJob is the durable record of one generation request.

    Request parameters and ``points_reserved`` are fixed at creation. Only the
    submission step and the polling loop mutate the record, and only through
    ``apply_transition`` + ``GenerationJobRepository.update``.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: int = Field(index=True)
    session_id: UUID = Field(foreign_key="generation_sessions.id", index=True)

    prompt: str = Field(sa_column=Column(Text, nullable=False))
    input_image_urls: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    style_id: int = Field(default=1)
    aspect_ratio: str = Field(default="1:1", max_length=10)
    num_images: int = Field(default=1, ge=1)
    model_type: str = Field(default=ModelType.NANO_BANANA.value, max_length=50)
    resolution: Optional[str] = Field(default=None, max_length=10)

    # Provider and endpoint that accepted the submission (may be a fallback provider)
    provider: str = Field(default="fal-ai", max_length=32)
    endpoint_key: str = Field(max_length=100)
    correlation_id: Optional[str] = Field(default=None, max_length=255, index=True)

    status: JobStatus = Field(default=JobStatus.IN_QUEUE, index=True)
    queue_position: Optional[int] = Field(default=None)
    image_urls: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, max_length=1000)

    points_reserved: int = Field(ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


@dataclass(frozen=True)
class JobTransition:
    """Observed outcome of one poll (or failure) applied to a job."""

    status: JobStatus
    queue_position: Optional[int] = None
    image_urls: tuple[str, ...] = ()
    error_message: Optional[str] = None


_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.IN_QUEUE: frozenset(
        {JobStatus.IN_QUEUE, JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.IN_PROGRESS: frozenset(
        {JobStatus.IN_PROGRESS, JobStatus.COMPLETED, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def apply_transition(job: GenerationJob, transition: JobTransition) -> dict[str, Any]:
    """Validate a transition against the current record and return the fields to persist.

    The job itself is not modified; callers persist the returned changes with
    ``GenerationJobRepository.update``.

    Args:
        job: Current persisted job record
        transition: Observed next state

    Returns:
        Field name -> new value mapping (always includes ``status`` and ``updated_at``)

    Raises:
        InvalidStateTransition: If the job is terminal or the transition goes backwards
    """
    current = JobStatus(job.status)
    target = transition.status

    if target not in _ALLOWED_TRANSITIONS[current]:
        if current.is_terminal:
            raise InvalidStateTransition(
                f"Cannot move job from terminal state {current.value} to {target.value}."
            )
        raise InvalidStateTransition(f"Cannot move job from {current.value} to {target.value}.")

    changes: dict[str, Any] = {"status": target, "updated_at": utcnow()}

    if target is JobStatus.COMPLETED:
        if not transition.image_urls:
            raise ValueError("image_urls is required for a completed job")
        changes["image_urls"] = list(transition.image_urls)
        changes["queue_position"] = None
    elif target is JobStatus.FAILED:
        changes["queue_position"] = None
        changes["error_message"] = (transition.error_message or "")[:1000] or None
    else:
        changes["queue_position"] = transition.queue_position

    return changes
