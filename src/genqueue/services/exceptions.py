"""Service error hierarchy for generation orchestration and the provider queue client.

This module defines two families of errors:
- GenerationError: caller-visible outcomes, each with a human-readable message and
  the HTTP status the API layer answers with
- QueueClientError: transport-level failures raised by the provider queue client,
  classified into GenerationError by the orchestrator
"""


class GenerationError(Exception):
    """Base exception for all caller-visible generation errors."""

    http_status: int = 500
    default_message: str = "Image generation failed"

    def __init__(self, message: str | None = None):
        self.user_message = message or self.default_message
        super().__init__(self.user_message)


class InsufficientFunds(GenerationError):
    """User balance cannot cover the request. Raised before any mutation."""

    http_status = 402
    default_message = "Not enough points for this generation"

    def __init__(self, points_needed: int, balance: int | None = None):
        self.points_needed = points_needed
        self.balance = balance
        super().__init__(f"Not enough points for this generation. Required: {points_needed}")


class ProviderUnavailable(GenerationError):
    """Provider could not be reached (connect error or timeout)."""

    http_status = 503
    default_message = "Could not connect to the generation service. Please try again later."


class ProviderRejected(GenerationError):
    """Provider answered with a non-2xx status that is not otherwise classified."""

    http_status = 422
    default_message = "The generation service rejected the request"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class BalanceExhausted(GenerationError):
    """The platform's own prepaid balance with the provider is depleted (HTTP 403 signature)."""

    http_status = 503
    default_message = "The generation service is temporarily unavailable. Please try again later."


class ContentPolicyViolation(GenerationError):
    """Provider refused the result on content grounds (HTTP 422 on result fetch)."""

    http_status = 422
    default_message = (
        "The request was rejected by the safety system. "
        "The content may violate the usage policy."
    )


class GenerationTimeout(GenerationError):
    """A synchronous wait exceeded its deadline. The job itself is unaffected."""

    http_status = 408
    default_message = "Timed out waiting for the generation service. Please try again later."


class JobNotFound(GenerationError):
    http_status = 404
    default_message = "Generation request not found"


class JobForbidden(GenerationError):
    http_status = 403
    default_message = "Access denied"


class SessionNotFound(GenerationError):
    http_status = 404
    default_message = "Session not found"


class StyleNotFound(GenerationError):
    http_status = 404
    default_message = "Style not found"


class JobFailed(GenerationError):
    """A synchronously awaited job ended FAILED (points were refunded)."""

    http_status = 500
    default_message = "Image generation failed. Points have been refunded."


# Provider queue transport errors
class QueueClientError(Exception):
    """Base exception for provider queue client errors."""

    retryable: bool = False


class QueueConnectionError(QueueClientError):
    """Connect failure or timeout talking to the provider."""

    retryable = True

    def __init__(self, message: str, timeout: bool = False):
        self.timeout = timeout
        super().__init__(message)


class QueueHTTPError(QueueClientError):
    """Provider answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str, url: str = ""):
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"Provider returned HTTP {status_code} for {url}: {body[:300]}")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.status_code >= 500 or self.status_code == 429


class QueueResponseError(QueueClientError):
    """Provider answered 2xx but the body was unparseable or incomplete."""

    def __init__(self, message: str, error_type: str = "EMPTY_RESPONSE"):
        self.error_type = error_type
        super().__init__(message)
