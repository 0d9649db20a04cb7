"""Unit of Work pattern.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genqueue.repositories.fallback_metric import ProviderFallbackMetricRepository
from genqueue.repositories.generation_job import GenerationJobRepository
from genqueue.repositories.points import PointsRepository
from genqueue.repositories.provider_settings import GenerationProviderSettingsRepository
from genqueue.repositories.session import GenerationSessionRepository
from genqueue.repositories.style import ArtStyleRepository

logger = structlog.get_logger(__name__)


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages database transactions and provides access to all repositories.
    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            await uow.jobs.update(job.id, apply_transition(job, transition))
            await uow.points.refund_for_job(job.user_id, job.id, job.points_reserved)
            # Status change and refund commit together
    """

    def __init__(self, session: AsyncSession):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

        self.jobs = GenerationJobRepository(session)
        self.points = PointsRepository(session)
        self.sessions = GenerationSessionRepository(session)
        self.styles = ArtStyleRepository(session)
        self.fallback_metrics = ProviderFallbackMetricRepository(session)
        self.provider_settings = GenerationProviderSettingsRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url, pool_size=20)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            balance = await uow.points.get_balance(user_id)
    """

    async def _create_uow():
        """Create a new UnitOfWork instance with a new session."""
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
