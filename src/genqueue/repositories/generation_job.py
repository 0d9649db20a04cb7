"""GenerationJob repository.

Provides the job record store: create, lookup, field updates and active-job queries.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genqueue.models.generation_job import ACTIVE_STATUSES, GenerationJob


class GenerationJobRepository:
    """Repository for GenerationJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new job to database.

        Args:
            job: GenerationJob entity to persist

        Returns:
            Persisted job
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by UUID.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by UUID with a row lock held until the transaction ends.

        Used by settlement paths so two failure handlers for the same job serialize.
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.id == job_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update(self, job_id: UUID, changes: dict[str, Any]) -> GenerationJob:
        """Apply field changes to a persisted job.

        Args:
            job_id: Job's unique identifier
            changes: Field name -> value (usually produced by ``apply_transition``)

        Returns:
            Refreshed job

        Raises:
            ValueError: If the job does not exist or a field name is unknown
        """
        job = await self.get_by_id(job_id)
        if job is None:
            raise ValueError(f"Job {job_id} not found")

        for field, value in changes.items():
            if field not in GenerationJob.model_fields:
                raise ValueError(f"Unknown job field: {field}")
            setattr(job, field, value)

        self.session.add(job)
        await self.session.flush()
        await self.session.refresh(job)
        return job

    async def get_active_by_user(self, user_id: int) -> list[GenerationJob]:
        """Retrieve user's jobs that are IN_QUEUE or IN_PROGRESS, newest first."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.user_id == user_id)  # type: ignore[arg-type]
            .where(GenerationJob.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .order_by(GenerationJob.created_at.desc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_active(self, limit: int = 20) -> list[GenerationJob]:
        """Retrieve active jobs for the background poller.

        Orders by updated_at ASC so the least recently polled jobs go first.

        Args:
            limit: Maximum number of jobs to retrieve

        Returns:
            Active jobs, least recently updated first
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .order_by(GenerationJob.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_stale_active(
        self, created_before: datetime, limit: int = 100
    ) -> list[GenerationJob]:
        """Retrieve active jobs created before ``created_before`` (candidates for expiry)."""
        result = await self.session.execute(
            select(GenerationJob)
            .where(GenerationJob.status.in_(ACTIVE_STATUSES))  # type: ignore[attr-defined]
            .where(GenerationJob.created_at < created_before)  # type: ignore[arg-type]
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())
