"""GenerationSession repository."""

from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from genqueue.core.timezone import utcnow
from genqueue.models.session import GenerationSession


class GenerationSessionRepository:
    """Repository for GenerationSession entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, session_id: UUID) -> GenerationSession | None:
        return await self.session.get(GenerationSession, session_id)

    async def add(self, generation_session: GenerationSession) -> GenerationSession:
        self.session.add(generation_session)
        await self.session.flush()
        return generation_session

    async def touch(self, session_id: UUID) -> None:
        """Bump the session's updated_at (sessions are listed most recently used first)."""
        await self.session.execute(
            update(GenerationSession)
            .where(GenerationSession.id == session_id)  # type: ignore[arg-type]
            .values(updated_at=utcnow())
        )
