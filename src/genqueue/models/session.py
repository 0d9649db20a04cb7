"""GenerationSession entity - groups a user's generation requests."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from genqueue.core.timezone import utcnow


class GenerationSession(SQLModel, table=True):
    """GenerationSession is a user-owned conversation of generation requests."""

    __tablename__ = "generation_sessions"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: int = Field(index=True)
    title: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
