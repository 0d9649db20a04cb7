"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from genqueue.repositories.fallback_metric import ProviderFallbackMetricRepository
from genqueue.repositories.generation_job import GenerationJobRepository
from genqueue.repositories.points import DuplicateReservation, PointsRepository
from genqueue.repositories.provider_settings import GenerationProviderSettingsRepository
from genqueue.repositories.session import GenerationSessionRepository
from genqueue.repositories.style import ArtStyleRepository

__all__ = [
    "ArtStyleRepository",
    "DuplicateReservation",
    "GenerationJobRepository",
    "GenerationProviderSettingsRepository",
    "GenerationSessionRepository",
    "PointsRepository",
    "ProviderFallbackMetricRepository",
]
