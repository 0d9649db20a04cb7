"""GenerationProviderSettings entity - the active provider for each model type."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from genqueue.core.timezone import utcnow


class GenerationProvider(str, Enum):
    """Image providers that can serve a model."""

    FAL_AI = "fal-ai"
    LAOZHANG_AI = "laozhang-ai"

    @classmethod
    def from_code(cls, code: str | None) -> "GenerationProvider":
        """Resolve a provider by code, case-insensitive. Unknown or empty codes map to fal-ai."""
        if code:
            normalized = code.strip().lower().replace("_", "-")
            for provider in cls:
                if provider.value == normalized:
                    return provider
        return cls.FAL_AI


class GenerationProviderSettings(SQLModel, table=True):
    """One row per model type naming the provider tried first.

    Rows are created lazily with the configured default provider the first time
    a model is requested.
    """

    __tablename__ = "generation_provider_settings"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    model_type: str = Field(max_length=64, unique=True)
    active_provider: str = Field(default=GenerationProvider.FAL_AI.value, max_length=32)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def active_provider_enum(self) -> GenerationProvider:
        return GenerationProvider.from_code(self.active_provider)
