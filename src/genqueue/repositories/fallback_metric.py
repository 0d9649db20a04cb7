"""ProviderFallbackMetric repository."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from genqueue.models.fallback_metric import ProviderFallbackMetric


class ProviderFallbackMetricRepository:
    """Repository for provider fallback metrics."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, metric: ProviderFallbackMetric) -> ProviderFallbackMetric:
        self.session.add(metric)
        await self.session.flush()
        return metric

    async def get_recent(self, limit: int = 50) -> list[ProviderFallbackMetric]:
        """Most recent fallback events, newest first."""
        result = await self.session.execute(
            select(ProviderFallbackMetric)
            .order_by(ProviderFallbackMetric.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_since(self, since: datetime) -> dict[str, int]:
        """Fallback counts per error type since ``since``."""
        result = await self.session.execute(
            select(ProviderFallbackMetric.error_type, func.count())
            .where(ProviderFallbackMetric.created_at >= since)  # type: ignore[arg-type]
            .group_by(ProviderFallbackMetric.error_type)
        )
        return {error_type: count for error_type, count in result.all()}
