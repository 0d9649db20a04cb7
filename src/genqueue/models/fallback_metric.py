"""ProviderFallbackMetric entity - one record per automatic switch to a fallback endpoint."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from genqueue.core.timezone import utcnow


class ProviderFallbackMetric(SQLModel, table=True):
    """ProviderFallbackMetric records why the active endpoint was abandoned for a fallback."""

    __tablename__ = "provider_fallback_metrics"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    active_endpoint: str = Field(max_length=100)
    fallback_endpoint: str = Field(max_length=100)
    error_type: str = Field(max_length=100)  # TIMEOUT, CONNECTION_ERROR, HTTP_5XX, ...
    http_status: Optional[int] = Field(default=None)
    error_message: Optional[str] = Field(default=None, max_length=500)
    user_id: Optional[int] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
