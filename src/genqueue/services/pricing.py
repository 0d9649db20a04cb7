"""Points pricing for generation requests."""

from genqueue.core.config import Settings
from genqueue.models.generation_job import ModelType, Resolution


def points_needed(
    model_type: ModelType,
    resolution: Resolution | None,
    num_images: int,
    settings: Settings,
) -> int:
    """Points charged for a request. Pure function of the request and the configured prices.

    nano-banana-pro is priced per resolution (1K when unspecified); the other
    models have a flat per-image price.

    Raises:
        ValueError: If num_images < 1
    """
    if num_images < 1:
        raise ValueError("num_images must be at least 1")

    if model_type is ModelType.NANO_BANANA_PRO:
        key = (resolution or Resolution.RESOLUTION_1K).value
        per_image = settings.points_per_image_pro.get(
            key, settings.points_per_image_pro.get(Resolution.RESOLUTION_1K.value, 0)
        )
    elif model_type is ModelType.SEEDREAM_4_5:
        per_image = settings.points_per_image_seedream
    else:
        per_image = settings.points_per_image

    return per_image * num_images
