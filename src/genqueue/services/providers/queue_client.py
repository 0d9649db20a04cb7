"""Provider queue API client with error classification.

The provider exposes an asynchronous queue: a job is submitted, its status is
polled by request id, and the output is fetched from a result location once
the job completes.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx
import structlog

from genqueue.models.generation_job import JobStatus
from genqueue.services.exceptions import (
    BalanceExhausted,
    ContentPolicyViolation,
    GenerationError,
    ProviderRejected,
    ProviderUnavailable,
    QueueClientError,
    QueueConnectionError,
    QueueHTTPError,
    QueueResponseError,
)
from genqueue.services.providers.endpoints import ProviderEndpoint

logger = structlog.get_logger(__name__)

DEFAULT_BALANCE_EXHAUSTED_PHRASES = (
    "exhausted balance",
    "user is locked",
    "top up your balance",
)

_STATUS_MAP = {
    "in_queue": JobStatus.IN_QUEUE,
    "queued": JobStatus.IN_QUEUE,
    "in_progress": JobStatus.IN_PROGRESS,
    "completed": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
}


def map_provider_status(raw: Any) -> Optional[JobStatus]:
    """Map the provider's status vocabulary to JobStatus.

    Both ``IN_QUEUE``-style and ``queued``-style spellings are accepted.
    Returns None for missing or unrecognized values.
    """
    if not isinstance(raw, str):
        return None
    return _STATUS_MAP.get(raw.strip().lower())


@dataclass(frozen=True)
class QueueStatus:
    """One status observation for a submitted request."""

    status: Optional[JobStatus]
    queue_position: Optional[int] = None
    response_url: Optional[str] = None
    error: Optional[str] = None


class QueueClient:
    """HTTP client for the provider queue API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        submit_timeout: float = 15.0,
        status_timeout: float = 15.0,
        result_timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize queue client.

        Args:
            base_url: Queue API base URL (e.g. "https://queue.fal.run")
            api_key: Provider API key (from QUEUE_API_KEY env var)
            submit_timeout: Timeout for submission calls (short)
            status_timeout: Timeout for status polls
            result_timeout: Timeout for result fetches (long, payloads may be large)
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.submit_timeout = submit_timeout
        self.status_timeout = status_timeout
        self.result_timeout = result_timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Key {api_key}",
            "Content-Type": "application/json",
        }

    async def submit(self, endpoint: ProviderEndpoint, body: dict[str, Any]) -> str:
        """Enqueue a generation request.

        Returns:
            Provider request id (the job's correlation id)

        Raises:
            QueueConnectionError: Connect failure or timeout
            QueueHTTPError: Non-2xx response
            QueueResponseError: 2xx response without a request id
        """
        url = f"{self.base_url}{endpoint.submit_path}"
        data = await self._request("POST", url, self.submit_timeout, json=body)

        request_id = data.get("request_id")
        if not request_id:
            raise QueueResponseError(f"Submission to {url} returned no request_id")

        logger.info(
            "queue.submitted",
            endpoint=endpoint.key,
            request_id=request_id,
            gateway_request_id=data.get("gateway_request_id"),
        )
        return str(request_id)

    async def get_status(self, endpoint: ProviderEndpoint, request_id: str) -> QueueStatus:
        """Fetch the current status of a submitted request.

        The status path always uses the endpoint's application id without the
        submission sub-path.
        """
        url = f"{self.base_url}{endpoint.status_path(request_id)}"
        data = await self._request("GET", url, self.status_timeout)

        raw_position = data.get("queue_position")
        return QueueStatus(
            status=map_provider_status(data.get("status")),
            queue_position=raw_position if isinstance(raw_position, int) else None,
            response_url=data.get("response_url") or None,
            error=data.get("error") if isinstance(data.get("error"), str) else None,
        )

    async def fetch_result(
        self,
        endpoint: ProviderEndpoint,
        request_id: str,
        response_url: str | None = None,
    ) -> list[str]:
        """Fetch output image URLs of a completed request.

        Uses ``response_url`` when the status response carried one, otherwise
        falls back to fetching the request directly by id.

        Raises:
            QueueHTTPError: Non-2xx response (422 means content policy rejection)
            QueueResponseError: Body without any image URL
        """
        url = response_url or f"{self.base_url}{endpoint.result_path(request_id)}"
        data = await self._request("GET", url, self.result_timeout)

        images = data.get("images")
        urls: list[str] = []
        if isinstance(images, list):
            for image in images:
                if isinstance(image, dict) and image.get("url"):
                    urls.append(str(image["url"]))
                elif isinstance(image, str) and image:
                    urls.append(image)

        if not urls:
            raise QueueResponseError(f"Result at {url} contained no images")
        return urls

    async def _request(
        self, method: str, url: str, timeout: float, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=self.headers, json=json)
        except httpx.TimeoutException as e:
            raise QueueConnectionError(f"Request timeout after {timeout}s: {e}", timeout=True)
        except httpx.HTTPError as e:
            raise QueueConnectionError(f"Network error: {e}")

        if response.status_code >= 300:
            raise QueueHTTPError(response.status_code, response.text, url=url)

        try:
            data = response.json()
        except ValueError:
            raise QueueResponseError(f"Unparseable response from {url}", error_type="HTTP_ERROR")
        if not isinstance(data, dict):
            raise QueueResponseError(f"Unexpected response shape from {url}")
        return data


def is_balance_exhausted(
    exc: BaseException, phrases: Iterable[str] = DEFAULT_BALANCE_EXHAUSTED_PHRASES
) -> bool:
    """True if ``exc`` carries the provider's account-balance-exhausted signature.

    Only HTTP 403 responses qualify. The body is matched case-insensitively
    against ``phrases``, plus the rule that "locked" and "balance" both appear.
    """
    if not isinstance(exc, QueueHTTPError) or exc.status_code != 403:
        return False
    body = (exc.body or "").lower()
    if any(phrase.lower() in body for phrase in phrases):
        return True
    return "locked" in body and "balance" in body


def classify_submission_error(
    exc: BaseException, phrases: Iterable[str] = DEFAULT_BALANCE_EXHAUSTED_PHRASES
) -> GenerationError:
    """Classify a submission-time exception into a caller-visible error.

    Classification rules:
        - Connect errors and timeouts → ProviderUnavailable
        - HTTP 403 with a balance-exhausted body → BalanceExhausted
        - Any other HTTP error, bad response or unexpected exception → ProviderRejected
    """
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, QueueConnectionError):
        return ProviderUnavailable()
    if is_balance_exhausted(exc, phrases):
        return BalanceExhausted()
    if isinstance(exc, QueueHTTPError):
        return ProviderRejected(status_code=exc.status_code)
    return ProviderRejected()


def classify_result_error(exc: BaseException) -> GenerationError:
    """Classify a result-fetch exception. HTTP 422 is a content policy rejection."""
    if isinstance(exc, QueueHTTPError) and exc.status_code == 422:
        return ContentPolicyViolation()
    return ProviderRejected("Image generation failed")


def is_fallback_eligible(
    exc: BaseException, phrases: Iterable[str] = DEFAULT_BALANCE_EXHAUSTED_PHRASES
) -> bool:
    """True if a submission error should move on to the next endpoint.

    Provider-side trouble qualifies (connectivity, 5xx, 413, balance exhausted,
    malformed responses, unknown errors). Other 4xx responses are treated as
    problems with the request itself.
    """
    if isinstance(exc, (QueueConnectionError, QueueResponseError)):
        return True
    if isinstance(exc, QueueHTTPError):
        if exc.status_code >= 500 or exc.status_code == 413:
            return True
        return is_balance_exhausted(exc, phrases)
    if isinstance(exc, GenerationError):
        return False
    return True


def fallback_error_info(
    exc: BaseException, phrases: Iterable[str] = DEFAULT_BALANCE_EXHAUSTED_PHRASES
) -> tuple[str, int | None]:
    """Return (error_type, http_status) recorded with a fallback metric."""
    if isinstance(exc, QueueConnectionError):
        return ("TIMEOUT" if exc.timeout else "CONNECTION_ERROR", None)
    if isinstance(exc, QueueHTTPError):
        status = exc.status_code
        if is_balance_exhausted(exc, phrases):
            return "BALANCE_EXHAUSTED", status
        if status == 503:
            return "SERVICE_UNAVAILABLE", status
        if status == 413:
            return "PAYLOAD_TOO_LARGE", status
        if status >= 500:
            return "HTTP_5XX", status
        return "HTTP_ERROR", status
    if isinstance(exc, QueueResponseError):
        return exc.error_type, None
    if isinstance(exc, QueueClientError):
        return "HTTP_ERROR", None
    return "UNKNOWN_ERROR", None
