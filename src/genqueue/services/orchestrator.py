"""Generation job orchestrator.

Composes the points ledger, the job record store, the provider selector and
the queue client into the lifecycle of one generation request:

    reserve points -> submit (with fallback) -> persist IN_QUEUE
    -> poll until COMPLETED or FAILED -> refund on FAILED

Ledger invariant: a job's ``points_reserved`` is debited once at submission and
credited back at most once, in the same transaction that writes FAILED.
Refunds are keyed by job id in the ledger, so running a failure handler twice
never refunds twice.
"""

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping, Optional
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

from genqueue.core.config import Settings
from genqueue.core.timezone import utcnow
from genqueue.models.fallback_metric import ProviderFallbackMetric
from genqueue.models.generation_job import (
    GenerationJob,
    JobStatus,
    JobTransition,
    ModelType,
    Resolution,
    apply_transition,
)
from genqueue.models.provider_settings import GenerationProvider, GenerationProviderSettings
from genqueue.models.session import GenerationSession
from genqueue.models.style import DEFAULT_STYLE_ID
from genqueue.services.exceptions import (
    GenerationError,
    GenerationTimeout,
    InsufficientFunds,
    JobFailed,
    JobForbidden,
    JobNotFound,
    QueueClientError,
    SessionNotFound,
    StyleNotFound,
)
from genqueue.services.notifications.admin_notifier import (
    AdminNotifier,
    AlertSink,
    LoggingAlertSink,
    WebhookAlertSink,
)
from genqueue.services.pricing import points_needed
from genqueue.services.providers.endpoints import (
    DEFAULT_ENDPOINTS,
    ProviderEndpoint,
    ProviderSelector,
    build_request_body,
)
from genqueue.services.providers.queue_client import (
    QueueClient,
    classify_result_error,
    classify_submission_error,
    fallback_error_info,
    is_balance_exhausted,
    is_fallback_eligible,
)
from genqueue.uow import UnitOfWork

logger = structlog.get_logger(__name__)

GENERIC_FAILURE_MESSAGE = "Image generation failed"
EXPIRED_FAILURE_MESSAGE = "Image generation timed out"


class GenerationRequest(BaseModel):
    """Parameters of one generation request as submitted by a user."""

    prompt: str = Field(min_length=1, max_length=4000)
    input_image_urls: list[str] = Field(default_factory=list)
    session_id: Optional[UUID] = None
    style_id: Optional[int] = None
    aspect_ratio: Optional[str] = Field(default=None, max_length=10)
    num_images: int = Field(default=1, ge=1, le=4)
    model_type: Optional[str] = None
    resolution: Optional[str] = None


def compose_prompt(user_prompt: str, style_prompt: str | None) -> str:
    """Append the style's prompt fragment to the user's prompt."""
    user_prompt = user_prompt.strip()
    if style_prompt and style_prompt.strip():
        return f"{user_prompt}, {style_prompt.strip()}"
    return user_prompt


class GenerationOrchestrator:
    """Drives generation jobs from submission to a settled terminal state."""

    def __init__(
        self,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        queue_clients: Mapping[GenerationProvider, QueueClient],
        selector: ProviderSelector,
        notifier: AdminNotifier,
        settings: Settings,
    ):
        """Initialize orchestrator.

        Args:
            uow_factory: Produces a new UnitOfWork per transaction
            queue_clients: Queue API client per enabled provider
            selector: Endpoint and fallback resolution
            notifier: Operator alerts (owns its own cooldown)
            settings: Application settings (pricing, polling, detection phrases)
        """
        self.uow_factory = uow_factory
        self.queue_clients = dict(queue_clients)
        self.selector = selector
        self.notifier = notifier
        self.settings = settings
        self.default_provider = GenerationProvider.from_code(settings.default_provider)
        self._background_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls, settings: Settings, uow_factory: Callable[[], Awaitable[UnitOfWork]]
    ) -> "GenerationOrchestrator":
        """Wire the orchestrator and its collaborators from settings.

        fal-ai is always enabled; laozhang-ai only when LAOZHANG_API_KEY is set.
        Endpoints of disabled providers are left out of the selector.
        """
        hosts = {GenerationProvider.FAL_AI: (settings.queue_base_url, settings.queue_api_key)}
        if settings.laozhang_api_key:
            hosts[GenerationProvider.LAOZHANG_AI] = (
                settings.laozhang_base_url,
                settings.laozhang_api_key,
            )

        queue_clients = {
            provider: QueueClient(
                base_url=base_url,
                api_key=api_key,
                submit_timeout=settings.submit_timeout_seconds,
                status_timeout=settings.status_timeout_seconds,
                result_timeout=settings.result_timeout_seconds,
            )
            for provider, (base_url, api_key) in hosts.items()
        }
        endpoints = {
            key: endpoint for key, endpoint in DEFAULT_ENDPOINTS.items() if key[0] in hosts
        }

        sinks: list[AlertSink] = [LoggingAlertSink()]
        if settings.admin_alert_webhook_url:
            sinks.append(WebhookAlertSink(settings.admin_alert_webhook_url))
        notifier = AdminNotifier(sinks, cooldown_seconds=settings.admin_alert_cooldown_seconds)

        return cls(
            uow_factory=uow_factory,
            queue_clients=queue_clients,
            selector=ProviderSelector(settings.provider_order, endpoints),
            notifier=notifier,
            settings=settings,
        )

    def _client(self, endpoint: ProviderEndpoint) -> QueueClient:
        return self.queue_clients[endpoint.provider]

    # Submission

    async def submit(self, request: GenerationRequest, user_id: int) -> GenerationJob:
        """Reserve points, enqueue the request with the provider and persist the job.

        Returns:
            Persisted job in IN_QUEUE

        Raises:
            InsufficientFunds: Balance cannot cover the request (nothing changed)
            SessionNotFound, StyleNotFound: Unknown or foreign session/style (nothing changed)
            ProviderUnavailable, BalanceExhausted, ProviderRejected: Submission failed
                on every eligible endpoint (points refunded)
        """
        model_type = ModelType.from_name(request.model_type)
        resolution = (
            Resolution.from_value(request.resolution) if model_type.supports_resolution else None
        )
        cost = points_needed(model_type, resolution, request.num_images, self.settings)
        aspect_ratio = request.aspect_ratio or self.settings.default_aspect_ratio
        style_id = request.style_id or DEFAULT_STYLE_ID
        job_id = uuid4()

        async with await self.uow_factory() as uow:
            if not await uow.points.has_enough(user_id, cost):
                balance = await uow.points.get_balance(user_id)
                logger.info(
                    "generation.insufficient_points",
                    user_id=user_id,
                    points_needed=cost,
                    balance=balance,
                )
                raise InsufficientFunds(cost, balance)

            session_id = await self._resolve_session(uow, request.session_id, user_id)
            style_prompt = await self._resolve_style_prompt(uow, request.style_id, style_id)
            active_provider = await uow.provider_settings.get_active_provider(
                model_type, self.default_provider
            )
            plan = self.selector.resolve_endpoint(
                model_type,
                resolution,
                has_input_images=bool(request.input_image_urls),
                active_provider=active_provider,
            )

            new_balance = await uow.points.reserve(user_id, cost, job_id)
            if new_balance is None:
                # Lost a race with a concurrent submission; the transaction rolls back
                raise InsufficientFunds(cost, await uow.points.get_balance(user_id))

        logger.info(
            "points.reserved",
            user_id=user_id,
            job_id=str(job_id),
            amount=cost,
            balance=new_balance,
        )

        prompt = compose_prompt(request.prompt, style_prompt)

        try:
            endpoint, correlation_id = await self._submit_with_fallback(
                plan.primary, plan.next_after, request, prompt, aspect_ratio, resolution, user_id
            )
        except asyncio.CancelledError:
            await self._refund_reservation(user_id, job_id, cost, reason="cancelled")
            raise
        except Exception as e:
            await self._refund_reservation(user_id, job_id, cost, reason=type(e).__name__)
            error = classify_submission_error(e, self.settings.balance_exhausted_phrases)
            logger.warning(
                "generation.submission_failed",
                user_id=user_id,
                job_id=str(job_id),
                error_type=type(error).__name__,
                error_message=str(e),
            )
            raise error from e

        job = GenerationJob(
            id=job_id,
            user_id=user_id,
            session_id=session_id,
            prompt=prompt,
            input_image_urls=list(request.input_image_urls),
            style_id=style_id,
            aspect_ratio=aspect_ratio,
            num_images=request.num_images,
            model_type=model_type.value,
            resolution=resolution.value if resolution else None,
            provider=endpoint.provider.value,
            endpoint_key=endpoint.key,
            correlation_id=correlation_id,
            status=JobStatus.IN_QUEUE,
            points_reserved=cost,
        )
        try:
            async with await self.uow_factory() as uow:
                await uow.jobs.add(job)
        except Exception:
            await self._refund_reservation(user_id, job_id, cost, reason="persist_failed")
            raise

        logger.info(
            "generation.submitted",
            job_id=str(job_id),
            user_id=user_id,
            correlation_id=correlation_id,
            endpoint=endpoint.key,
            points_reserved=cost,
            prompt_length=len(prompt),
        )
        return job

    async def _resolve_session(
        self, uow: UnitOfWork, session_id: UUID | None, user_id: int
    ) -> UUID:
        if session_id is not None:
            existing = await uow.sessions.get_by_id(session_id)
            if existing is None or existing.user_id != user_id:
                raise SessionNotFound()
            return existing.id
        created = await uow.sessions.add(GenerationSession(user_id=user_id))
        return created.id

    async def _resolve_style_prompt(
        self, uow: UnitOfWork, requested_style_id: int | None, style_id: int
    ) -> str:
        style = await uow.styles.get_by_id(style_id)
        if style is None:
            if requested_style_id is not None and requested_style_id != DEFAULT_STYLE_ID:
                raise StyleNotFound()
            return ""
        return style.prompt

    async def _submit_with_fallback(
        self,
        endpoint: ProviderEndpoint,
        next_after: Callable[[ProviderEndpoint], ProviderEndpoint | None],
        request: GenerationRequest,
        prompt: str,
        aspect_ratio: str,
        resolution: Resolution | None,
        user_id: int,
    ) -> tuple[ProviderEndpoint, str]:
        """Submit to ``endpoint`` and move down the fallback list on eligible errors.

        Each endpoint is tried at most once. The last error is re-raised.
        """
        phrases = self.settings.balance_exhausted_phrases
        while True:
            body = build_request_body(
                endpoint,
                prompt,
                request.num_images,
                request.input_image_urls,
                aspect_ratio,
                resolution,
            )
            try:
                correlation_id = await self._client(endpoint).submit(endpoint, body)
                return endpoint, correlation_id
            except Exception as e:
                if is_balance_exhausted(e, phrases):
                    self._schedule_balance_alert(endpoint, e, user_id)

                fallback = next_after(endpoint)
                if fallback is None or not is_fallback_eligible(e, phrases):
                    raise

                await self._record_fallback(endpoint, fallback, e, user_id)
                endpoint = fallback

    async def _record_fallback(
        self,
        active: ProviderEndpoint,
        fallback: ProviderEndpoint,
        error: Exception,
        user_id: int,
    ) -> None:
        phrases = self.settings.balance_exhausted_phrases
        error_type, http_status = fallback_error_info(error, phrases)
        logger.warning(
            "provider.fallback",
            active_endpoint=active.key,
            fallback_endpoint=fallback.key,
            error_type=error_type,
            http_status=http_status,
            user_id=user_id,
        )
        try:
            async with await self.uow_factory() as uow:
                await uow.fallback_metrics.add(
                    ProviderFallbackMetric(
                        active_endpoint=active.key,
                        fallback_endpoint=fallback.key,
                        error_type=error_type,
                        http_status=http_status,
                        error_message=str(error)[:500],
                        user_id=user_id,
                    )
                )
        except Exception as e:
            logger.warning("provider.fallback_metric_failed", error=str(e))

    def _schedule_balance_alert(
        self, endpoint: ProviderEndpoint, error: Exception, user_id: int
    ) -> None:
        details = {
            "endpoint": endpoint.key,
            "http_status": getattr(error, "status_code", None),
            "provider_message": getattr(error, "body", str(error))[:1000],
            "user_id": user_id,
        }
        task = asyncio.create_task(self._send_balance_alert(details))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _send_balance_alert(self, details: dict[str, Any]) -> None:
        try:
            await self.notifier.notify_balance_exhausted(details)
        except Exception as e:
            logger.warning("admin_alert.failed", error=str(e), error_type=type(e).__name__)

    async def drain_background_tasks(self) -> None:
        """Wait for pending operator alerts (used on shutdown and in tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def _refund_reservation(
        self, user_id: int, job_id: UUID, amount: int, reason: str
    ) -> None:
        async with await self.uow_factory() as uow:
            new_balance = await uow.points.refund_for_job(user_id, job_id, amount)
        if new_balance is not None:
            logger.info(
                "points.refunded",
                user_id=user_id,
                job_id=str(job_id),
                amount=amount,
                balance=new_balance,
                reason=reason,
            )

    # Polling

    async def poll(self, job_id: UUID) -> GenerationJob:
        """Advance a job by one provider status observation.

        Terminal jobs are returned unchanged without calling the provider. An
        unrecognized provider status leaves the job untouched.

        Raises:
            JobNotFound: Unknown job id
            QueueClientError: Status request failed (caller retries on its next cycle)
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFound()
        if JobStatus(job.status).is_terminal or not job.correlation_id:
            return job

        endpoint = self.selector.get_by_key(job.endpoint_key)
        observed = await self._client(endpoint).get_status(endpoint, job.correlation_id)

        logger.debug(
            "generation.poll.status",
            job_id=str(job.id),
            correlation_id=job.correlation_id,
            status=observed.status.value if observed.status else None,
            queue_position=observed.queue_position,
        )

        if observed.status is None:
            return job

        if observed.status is JobStatus.FAILED:
            return await self.fail_job(job.id, observed.error or GENERIC_FAILURE_MESSAGE)

        if observed.status is JobStatus.COMPLETED:
            try:
                image_urls = await self._client(endpoint).fetch_result(
                    endpoint, job.correlation_id, observed.response_url
                )
            except Exception as e:
                if isinstance(e, QueueClientError) and e.retryable:
                    # Result stays available upstream; retried on the next cycle
                    raise
                error = classify_result_error(e)
                logger.warning(
                    "generation.result_fetch_failed",
                    job_id=str(job.id),
                    correlation_id=job.correlation_id,
                    error_type=type(error).__name__,
                    error_message=str(e),
                )
                return await self.fail_job(job.id, error.user_message)
            return await self._complete_job(job.id, image_urls)

        return await self._record_progress(job.id, observed.status, observed.queue_position)

    async def _record_progress(
        self, job_id: UUID, status: JobStatus, queue_position: int | None
    ) -> GenerationJob:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_for_update(job_id)
            if job is None:
                raise JobNotFound()
            current = JobStatus(job.status)
            if current.is_terminal:
                return job
            # Status never moves backwards; a late "queued" only refreshes the position
            if current is JobStatus.IN_PROGRESS:
                status = JobStatus.IN_PROGRESS
            changes = apply_transition(
                job, JobTransition(status=status, queue_position=queue_position)
            )
            job = await uow.jobs.update(job.id, changes)

        if current is not status:
            logger.info("generation.started", job_id=str(job_id), status=status.value)
        return job

    async def _complete_job(self, job_id: UUID, image_urls: list[str]) -> GenerationJob:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_for_update(job_id)
            if job is None:
                raise JobNotFound()
            if JobStatus(job.status).is_terminal:
                return job
            changes = apply_transition(
                job, JobTransition(status=JobStatus.COMPLETED, image_urls=tuple(image_urls))
            )
            job = await uow.jobs.update(job.id, changes)
            await uow.sessions.touch(job.session_id)

        logger.info(
            "generation.completed",
            job_id=str(job.id),
            user_id=job.user_id,
            image_count=len(image_urls),
        )
        return job

    async def fail_job(self, job_id: UUID, error_message: str) -> GenerationJob:
        """Mark a job FAILED and refund its reservation, atomically.

        Safe to run more than once for the same job: an already FAILED job only
        gets its (idempotent) refund re-applied, a COMPLETED job is left alone.
        """
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_for_update(job_id)
            if job is None:
                raise JobNotFound()
            if JobStatus(job.status) is JobStatus.COMPLETED:
                return job
            if JobStatus(job.status) is not JobStatus.FAILED:
                changes = apply_transition(
                    job, JobTransition(status=JobStatus.FAILED, error_message=error_message)
                )
                job = await uow.jobs.update(job.id, changes)
            new_balance = await uow.points.refund_for_job(job.user_id, job.id, job.points_reserved)

        logger.info(
            "generation.failed",
            job_id=str(job.id),
            user_id=job.user_id,
            error_message=job.error_message,
        )
        if new_balance is not None:
            logger.info(
                "points.refunded",
                user_id=job.user_id,
                job_id=str(job.id),
                amount=job.points_reserved,
                balance=new_balance,
                reason="job_failed",
            )
        return job

    async def wait_until_terminal(
        self,
        job_id: UUID,
        max_wait: float | None = None,
        interval: float | None = None,
    ) -> GenerationJob:
        """Poll at a fixed interval until the job is terminal or the deadline passes.

        Poll errors are logged and retried on the next cycle. On deadline the job
        is left exactly as it is; an out-of-band poller may still finish it.

        Raises:
            GenerationTimeout: Deadline elapsed before a terminal state
            JobNotFound: Unknown job id
        """
        max_wait = self.settings.max_wait_seconds if max_wait is None else max_wait
        interval = self.settings.poll_interval_seconds if interval is None else interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max_wait

        while True:
            try:
                job = await self.poll(job_id)
                if JobStatus(job.status).is_terminal:
                    return job
            except GenerationError:
                raise
            except Exception as e:
                logger.warning(
                    "generation.poll.error",
                    job_id=str(job_id),
                    error_type=type(e).__name__,
                    error_message=str(e),
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.info("generation.wait_timeout", job_id=str(job_id), max_wait=max_wait)
                raise GenerationTimeout()
            await asyncio.sleep(min(interval, remaining))

    async def generate_sync(
        self,
        request: GenerationRequest,
        user_id: int,
        max_wait: float | None = None,
    ) -> tuple[GenerationJob, int]:
        """Submit and block until the job settles.

        Returns:
            (completed job, balance after settlement)

        Raises:
            JobFailed: The job ended FAILED (points were refunded)
            GenerationTimeout: Deadline elapsed; the job keeps running
        """
        job = await self.submit(request, user_id)
        job = await self.wait_until_terminal(job.id, max_wait=max_wait)
        if JobStatus(job.status) is JobStatus.FAILED:
            raise JobFailed(job.error_message)
        return job, await self.get_balance(user_id)

    # Queries

    async def get_job(self, job_id: UUID, user_id: int) -> GenerationJob:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFound()
        if job.user_id != user_id:
            raise JobForbidden()
        return job

    async def get_active_jobs(self, user_id: int) -> list[GenerationJob]:
        async with await self.uow_factory() as uow:
            return await uow.jobs.get_active_by_user(user_id)

    async def get_balance(self, user_id: int) -> int:
        async with await self.uow_factory() as uow:
            return await uow.points.get_balance(user_id)

    # Provider settings

    async def get_provider_settings(self) -> list[GenerationProviderSettings]:
        """Active provider per model, creating missing rows with the default provider."""
        async with await self.uow_factory() as uow:
            for model_type in ModelType:
                await uow.provider_settings.get_or_create(model_type, self.default_provider)
            return await uow.provider_settings.get_all()

    async def set_active_provider(
        self, model_type: ModelType, provider: GenerationProvider
    ) -> GenerationProviderSettings:
        """Make ``provider`` the first choice for ``model_type``.

        Raises:
            ValueError: If the provider does not serve the model or is not enabled
        """
        if provider not in self.selector.providers_for(model_type, has_input_images=False):
            raise ValueError(f"{provider.value} does not serve {model_type.value}")

        async with await self.uow_factory() as uow:
            settings = await uow.provider_settings.set_active_provider(model_type, provider)

        logger.info(
            "provider.active_changed",
            model_type=model_type.value,
            active_provider=provider.value,
        )
        return settings

    # Maintenance

    async def poll_active_jobs(self, limit: int | None = None) -> int:
        """Poll one batch of active jobs, least recently updated first.

        Returns:
            Number of jobs polled
        """
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.get_active(limit=limit or self.settings.worker_batch_size)
        if not jobs:
            return 0

        results = await asyncio.gather(*(self.poll(job.id) for job in jobs), return_exceptions=True)
        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.warning(
                    "generation.poll.error",
                    job_id=str(job.id),
                    error_type=type(result).__name__,
                    error_message=str(result),
                )
        return len(jobs)

    async def expire_stale_jobs(
        self,
        max_age_seconds: int | None = None,
        dry_run: bool = False,
        limit: int = 100,
    ) -> list[UUID]:
        """Fail (and refund) active jobs older than ``max_age_seconds``.

        Returns:
            Ids of expired jobs (or of jobs that would expire, with ``dry_run``)
        """
        max_age = self.settings.job_timeout_seconds if max_age_seconds is None else max_age_seconds
        cutoff = utcnow() - timedelta(seconds=max_age)
        async with await self.uow_factory() as uow:
            stale = await uow.jobs.get_stale_active(cutoff, limit=limit)

        job_ids = [job.id for job in stale]
        if dry_run:
            return job_ids

        for job_id in job_ids:
            await self.fail_job(job_id, EXPIRED_FAILURE_MESSAGE)
        if job_ids:
            logger.info("generation.expired", count=len(job_ids), max_age_seconds=max_age)
        return job_ids
