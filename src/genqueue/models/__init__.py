"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from genqueue.models.fallback_metric import ProviderFallbackMetric
from genqueue.models.generation_job import (
    ACTIVE_STATUSES,
    GenerationJob,
    InvalidStateTransition,
    JobStatus,
    JobTransition,
    ModelType,
    Resolution,
    apply_transition,
)
from genqueue.models.points import LedgerEntryKind, PointsLedgerEntry, UserPoints
from genqueue.models.provider_settings import GenerationProvider, GenerationProviderSettings
from genqueue.models.session import GenerationSession
from genqueue.models.style import DEFAULT_STYLE_ID, ArtStyle

__all__ = [
    "ACTIVE_STATUSES",
    "ArtStyle",
    "DEFAULT_STYLE_ID",
    "GenerationJob",
    "GenerationProvider",
    "GenerationProviderSettings",
    "GenerationSession",
    "InvalidStateTransition",
    "JobStatus",
    "JobTransition",
    "LedgerEntryKind",
    "ModelType",
    "PointsLedgerEntry",
    "ProviderFallbackMetric",
    "Resolution",
    "UserPoints",
    "apply_transition",
]
