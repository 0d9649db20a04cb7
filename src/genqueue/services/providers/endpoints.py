"""Provider endpoint catalogue and selection.

Every (provider, model type, create-or-edit) combination maps to exactly one
``ProviderEndpoint`` in a single dispatch table. A request is served by the
model's active provider first; the fallbacks are the other providers serving
the same model, in the configured provider order. Selecting an endpoint makes
no network call.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import structlog

from genqueue.models.generation_job import ModelType, Resolution
from genqueue.models.provider_settings import GenerationProvider

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProviderEndpoint:
    """How to reach one (provider, model, variant) combination on a provider's queue API.

    Attributes:
        key: Stable identifier stored on jobs (e.g. "fal-ai:nano-banana:edit")
        provider: Provider whose queue host serves this endpoint
        model_type: Model this endpoint serves (drives request body mapping)
        namespace: Owner segment of the URL path (e.g. "fal-ai")
        model: Application id under the namespace; status/result paths live here
        variant: Optional sub-path appended for submission (e.g. "edit")
        supports_edit: True if the endpoint accepts input images
    """

    key: str
    provider: GenerationProvider
    model_type: ModelType
    namespace: str
    model: str
    variant: str = ""
    supports_edit: bool = False

    @property
    def submit_path(self) -> str:
        base = f"/{self.namespace}/{self.model}"
        return f"{base}/{self.variant}" if self.variant else base

    def status_path(self, request_id: str) -> str:
        return f"/{self.namespace}/{self.model}/requests/{request_id}/status"

    def result_path(self, request_id: str) -> str:
        return f"/{self.namespace}/{self.model}/requests/{request_id}"


def _endpoint(
    provider: GenerationProvider,
    model_type: ModelType,
    edit: bool,
    namespace: str,
    model: str,
    variant: str = "",
) -> ProviderEndpoint:
    return ProviderEndpoint(
        key=f"{provider.value}:{model_type.value}:{'edit' if edit else 'create'}",
        provider=provider,
        model_type=model_type,
        namespace=namespace,
        model=model,
        variant=variant,
        supports_edit=edit,
    )


FAL = GenerationProvider.FAL_AI
LAOZHANG = GenerationProvider.LAOZHANG_AI

# (provider, model type, has input images) -> endpoint
# Seedream is only served by fal-ai. LaoZhang takes input images on the same path.
DEFAULT_ENDPOINTS: dict[tuple[GenerationProvider, ModelType, bool], ProviderEndpoint] = {
    (FAL, ModelType.NANO_BANANA, False): _endpoint(
        FAL, ModelType.NANO_BANANA, False, "fal-ai", "nano-banana"
    ),
    (FAL, ModelType.NANO_BANANA, True): _endpoint(
        FAL, ModelType.NANO_BANANA, True, "fal-ai", "nano-banana", "edit"
    ),
    (FAL, ModelType.NANO_BANANA_PRO, False): _endpoint(
        FAL, ModelType.NANO_BANANA_PRO, False, "fal-ai", "nano-banana-pro"
    ),
    (FAL, ModelType.NANO_BANANA_PRO, True): _endpoint(
        FAL, ModelType.NANO_BANANA_PRO, True, "fal-ai", "nano-banana-pro", "edit"
    ),
    (FAL, ModelType.SEEDREAM_4_5, False): _endpoint(
        FAL, ModelType.SEEDREAM_4_5, False, "fal-ai", "bytedance", "seedream/v4.5/text-to-image"
    ),
    (FAL, ModelType.SEEDREAM_4_5, True): _endpoint(
        FAL, ModelType.SEEDREAM_4_5, True, "fal-ai", "bytedance", "seedream/v4.5/edit"
    ),
    (LAOZHANG, ModelType.NANO_BANANA, False): _endpoint(
        LAOZHANG, ModelType.NANO_BANANA, False, "google", "gemini-2.5-flash-image-preview"
    ),
    (LAOZHANG, ModelType.NANO_BANANA, True): _endpoint(
        LAOZHANG, ModelType.NANO_BANANA, True, "google", "gemini-2.5-flash-image-preview"
    ),
    (LAOZHANG, ModelType.NANO_BANANA_PRO, False): _endpoint(
        LAOZHANG, ModelType.NANO_BANANA_PRO, False, "google", "gemini-3-pro-image-preview"
    ),
    (LAOZHANG, ModelType.NANO_BANANA_PRO, True): _endpoint(
        LAOZHANG, ModelType.NANO_BANANA_PRO, True, "google", "gemini-3-pro-image-preview"
    ),
}


def parse_provider_order(names: Iterable[str] | None) -> tuple[GenerationProvider, ...]:
    """Turn configured provider codes into a complete, duplicate-free order.

    Unknown codes are skipped; providers not named are appended in declaration order.
    """
    order: list[GenerationProvider] = []
    for name in names or ():
        try:
            provider = GenerationProvider(name.strip().lower())
        except ValueError:
            logger.warning("provider.unknown_in_order", provider=name)
            continue
        if provider not in order:
            order.append(provider)
    order.extend(provider for provider in GenerationProvider if provider not in order)
    return tuple(order)


@dataclass(frozen=True)
class EndpointPlan:
    """Primary endpoint plus the ordered fallbacks to try after it (each at most once)."""

    primary: ProviderEndpoint
    fallbacks: tuple[ProviderEndpoint, ...] = ()

    @property
    def candidates(self) -> tuple[ProviderEndpoint, ...]:
        return (self.primary, *self.fallbacks)

    def next_after(self, endpoint: ProviderEndpoint) -> ProviderEndpoint | None:
        """Endpoint to try after ``endpoint`` failed, or None when the list is exhausted."""
        candidates = self.candidates
        for index, candidate in enumerate(candidates):
            if candidate.key == endpoint.key:
                return candidates[index + 1] if index + 1 < len(candidates) else None
        return None


class ProviderSelector:
    """Resolves which endpoint serves a request and in which order to fall back."""

    def __init__(
        self,
        provider_order: Iterable[str] | None = None,
        endpoints: Mapping[tuple[GenerationProvider, ModelType, bool], ProviderEndpoint]
        | None = None,
    ):
        """Initialize selector.

        Args:
            provider_order: Provider codes in the order fallbacks are tried
            endpoints: Dispatch table override (defaults to DEFAULT_ENDPOINTS)
        """
        self.endpoints = dict(endpoints or DEFAULT_ENDPOINTS)
        self.provider_order = parse_provider_order(provider_order)
        self._by_key = {endpoint.key: endpoint for endpoint in self.endpoints.values()}

    def providers_for(
        self, model_type: ModelType, has_input_images: bool
    ) -> list[GenerationProvider]:
        """Providers with an endpoint for this model and request kind, in provider order."""
        return [
            provider
            for provider in self.provider_order
            if (provider, model_type, has_input_images) in self.endpoints
        ]

    def resolve_endpoint(
        self,
        model_type: ModelType,
        resolution: Resolution | None,
        has_input_images: bool,
        active_provider: GenerationProvider | None = None,
    ) -> EndpointPlan:
        """Return the primary endpoint and ordered fallbacks for a request.

        The primary is the active provider's endpoint when that provider serves
        the model, otherwise the first provider that does. Every fallback serves
        the same model and request kind, and no provider appears twice.

        Raises:
            KeyError: If no provider serves the model
        """
        providers = self.providers_for(model_type, has_input_images)
        if not providers:
            raise KeyError(f"No provider serves {model_type.value}")

        if active_provider in providers:
            primary_provider = active_provider
        else:
            primary_provider = providers[0]
            if active_provider is not None:
                logger.warning(
                    "provider.active_unavailable",
                    model_type=model_type.value,
                    active_provider=active_provider.value,
                    using=primary_provider.value,
                )

        primary = self.endpoints[(primary_provider, model_type, has_input_images)]
        fallbacks = tuple(
            self.endpoints[(provider, model_type, has_input_images)]
            for provider in providers
            if provider is not primary_provider
        )

        logger.debug(
            "provider.endpoint_resolved",
            model_type=model_type.value,
            resolution=resolution.value if resolution else None,
            primary=primary.key,
            fallbacks=[f.key for f in fallbacks],
        )
        return EndpointPlan(primary=primary, fallbacks=fallbacks)

    def get_by_key(self, key: str) -> ProviderEndpoint:
        """Endpoint stored on a job.

        Raises:
            KeyError: If the key is not in the dispatch table
        """
        return self._by_key[key]


SEEDREAM_IMAGE_SIZE_BY_ASPECT = {
    "1:1": "square_hd",
    "4:3": "landscape_4_3",
    "3:4": "portrait_4_3",
    "16:9": "landscape_16_9",
    "9:16": "portrait_16_9",
    "3:2": "landscape_4_3",
    "2:3": "portrait_4_3",
    "21:9": "landscape_16_9",
    "5:4": "landscape_4_3",
    "4:5": "portrait_4_3",
}
SEEDREAM_IMAGE_SIZE_DEFAULT = "auto_2K"


def build_request_body(
    endpoint: ProviderEndpoint,
    prompt: str,
    num_images: int,
    input_image_urls: list[str],
    aspect_ratio: str | None,
    resolution: Resolution | None,
) -> dict[str, Any]:
    """Map a generation request onto the JSON body an endpoint expects.

    - ``blob:`` URLs (browser-local previews) are never sent
    - ``resolution`` only goes to models that support it
    - seedream takes ``image_size`` derived from the aspect ratio instead
    """
    body: dict[str, Any] = {"prompt": prompt, "num_images": num_images}

    image_urls = [url for url in input_image_urls if url and not url.startswith("blob:")]
    if image_urls:
        body["image_urls"] = image_urls

    if endpoint.model_type is ModelType.SEEDREAM_4_5:
        body["image_size"] = SEEDREAM_IMAGE_SIZE_BY_ASPECT.get(
            aspect_ratio or "1:1", SEEDREAM_IMAGE_SIZE_DEFAULT
        )
    else:
        if aspect_ratio:
            body["aspect_ratio"] = aspect_ratio
        if endpoint.model_type.supports_resolution and resolution is not None:
            body["resolution"] = resolution.value

    return body
