"""GenerationProviderSettings repository."""

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from genqueue.core.timezone import utcnow
from genqueue.models.generation_job import ModelType
from genqueue.models.provider_settings import GenerationProvider, GenerationProviderSettings


class GenerationProviderSettingsRepository:
    """Repository for per-model active provider settings."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_model_type(self, model_type: ModelType) -> GenerationProviderSettings | None:
        result = await self.session.execute(
            select(GenerationProviderSettings).where(
                GenerationProviderSettings.model_type == model_type.value  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self, model_type: ModelType, default_provider: GenerationProvider
    ) -> GenerationProviderSettings:
        """Return the model's settings row, creating it with ``default_provider`` if missing.

        Concurrent first requests for the same model both end up reading the one
        row that won the insert.
        """
        now = utcnow()
        await self.session.execute(
            insert(GenerationProviderSettings)
            .values(
                model_type=model_type.value,
                active_provider=default_provider.value,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["model_type"])
        )
        settings = await self.get_by_model_type(model_type)
        assert settings is not None
        return settings

    async def get_active_provider(
        self, model_type: ModelType, default_provider: GenerationProvider
    ) -> GenerationProvider:
        settings = await self.get_or_create(model_type, default_provider)
        return settings.active_provider_enum

    async def set_active_provider(
        self, model_type: ModelType, provider: GenerationProvider
    ) -> GenerationProviderSettings:
        settings = await self.get_or_create(model_type, provider)
        settings.active_provider = provider.value
        settings.updated_at = utcnow()
        self.session.add(settings)
        await self.session.flush()
        return settings

    async def get_all(self) -> list[GenerationProviderSettings]:
        """All settings rows ordered by model type."""
        result = await self.session.execute(
            select(GenerationProviderSettings).order_by(
                GenerationProviderSettings.model_type  # type: ignore[arg-type]
            )
        )
        return list(result.scalars().all())
