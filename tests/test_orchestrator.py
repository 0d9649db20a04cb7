"""GenerationOrchestrator tests against PostgreSQL and a scripted provider queue.

Covers the job lifecycle end to end:
- Scenarios: success, insufficient points, provider failure, balance exhausted,
  content policy rejection
- Ledger invariants: no over-reservation, refund exactness, no double refund
- State machine: null-status resilience, monotonic status
- Provider fallback to the same model without cycling, active provider per model
- Synchronous wait deadline and stale job expiry
"""

import asyncio
import json
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from conftest import LAOZHANG_BASE_URL, QUEUE_BASE_URL, get_balance, give_points
from sqlalchemy import func, select

from genqueue.core.timezone import utcnow
from genqueue.models.fallback_metric import ProviderFallbackMetric
from genqueue.models.generation_job import GenerationJob, JobStatus, ModelType
from genqueue.models.provider_settings import GenerationProvider
from genqueue.models.style import ArtStyle
from genqueue.services.exceptions import (
    BalanceExhausted,
    ContentPolicyViolation,
    GenerationTimeout,
    InsufficientFunds,
    JobFailed,
    JobForbidden,
    JobNotFound,
    ProviderRejected,
    ProviderUnavailable,
    QueueHTTPError,
    SessionNotFound,
)
from genqueue.services.orchestrator import GenerationRequest
from genqueue.workers.generation_poll_worker import process_batch

USER_ID = 101
NANO_SUBMIT = "/fal-ai/nano-banana"
PRO_SUBMIT = "/fal-ai/nano-banana-pro"
LZ_NANO_SUBMIT = "/google/gemini-2.5-flash-image-preview"
LZ_PRO_SUBMIT = "/google/gemini-3-pro-image-preview"
SEEDREAM_SUBMIT = "/fal-ai/bytedance/seedream/v4.5/text-to-image"


def completed_status(
    correlation_id: str, path: str = "/fal-ai/nano-banana", base_url: str = QUEUE_BASE_URL
) -> dict:
    return {
        "status": "COMPLETED",
        "response_url": f"{base_url}{path}/requests/{correlation_id}",
    }


def images(*urls: str) -> httpx.Response:
    return httpx.Response(200, json={"images": [{"url": url} for url in urls]})


def request(num_images: int = 3, **kwargs) -> GenerationRequest:
    """Default request costs 2 points per image (nano-banana)."""
    return GenerationRequest(prompt="a lighthouse at dusk", num_images=num_images, **kwargs)


async def count_jobs(uow_factory) -> int:
    async with await uow_factory() as uow:
        result = await uow.session.execute(select(func.count()).select_from(GenerationJob))
        return result.scalar_one()


# Scenarios


@pytest.mark.asyncio
async def test_scenario_submit_then_complete(orchestrator, fake_provider, uow_factory):
    """Balance 10, cost 6: submit leaves 4; completion keeps 4 and stores both URLs."""
    await give_points(uow_factory, USER_ID, 10)

    job = await orchestrator.submit(request(), USER_ID)

    assert job.status == JobStatus.IN_QUEUE
    assert job.points_reserved == 6
    assert job.correlation_id
    assert await get_balance(uow_factory, USER_ID) == 4

    fake_provider.script_status(job.correlation_id, completed_status(job.correlation_id))
    fake_provider.script_result(
        job.correlation_id, images("https://cdn/1.png", "https://cdn/2.png")
    )

    polled = await orchestrator.poll(job.id)

    assert polled.status == JobStatus.COMPLETED
    assert polled.image_urls == ["https://cdn/1.png", "https://cdn/2.png"]
    assert polled.queue_position is None
    assert await get_balance(uow_factory, USER_ID) == 4


@pytest.mark.asyncio
async def test_scenario_insufficient_points(orchestrator, fake_provider, uow_factory):
    """Balance 3, cost 6: InsufficientFunds, nothing changes, provider never called."""
    await give_points(uow_factory, USER_ID, 3)

    with pytest.raises(InsufficientFunds) as exc_info:
        await orchestrator.submit(request(), USER_ID)

    assert exc_info.value.points_needed == 6
    assert await get_balance(uow_factory, USER_ID) == 3
    assert await count_jobs(uow_factory) == 0
    assert fake_provider.requests == []


@pytest.mark.asyncio
async def test_scenario_provider_reports_failure(orchestrator, fake_provider, uow_factory):
    """Balance 10, cost 6, provider reports failed: job FAILED and balance back to 10."""
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)

    fake_provider.script_status(job.correlation_id, {"status": "failed"})
    polled = await orchestrator.poll(job.id)

    assert polled.status == JobStatus.FAILED
    assert polled.error_message
    assert await get_balance(uow_factory, USER_ID) == 10


@pytest.mark.asyncio
async def test_scenario_balance_exhausted(orchestrator, fake_provider, uow_factory, alert_sink):
    """403 with balance-exhausted body: typed error, refund, one alert per cooldown window."""
    await give_points(uow_factory, USER_ID, 10)
    locked = httpx.Response(403, text="User is locked. Reason: Exhausted balance.")
    fake_provider.script_submit(NANO_SUBMIT, locked)
    fake_provider.script_submit(LZ_NANO_SUBMIT, locked)

    with pytest.raises(BalanceExhausted):
        await orchestrator.submit(request(), USER_ID)
    await orchestrator.drain_background_tasks()

    assert await get_balance(uow_factory, USER_ID) == 10
    assert len(alert_sink.alerts) == 1

    with pytest.raises(BalanceExhausted):
        await orchestrator.submit(request(), USER_ID)
    await orchestrator.drain_background_tasks()

    assert await get_balance(uow_factory, USER_ID) == 10
    assert len(alert_sink.alerts) == 1
    assert await count_jobs(uow_factory) == 0


@pytest.mark.asyncio
async def test_scenario_content_policy_rejection(orchestrator, fake_provider, uow_factory):
    """Result fetch answers 422: job FAILED with the content policy message, refunded."""
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)

    fake_provider.script_status(job.correlation_id, completed_status(job.correlation_id))
    fake_provider.script_result(
        job.correlation_id, httpx.Response(422, json={"detail": "content_policy_violation"})
    )
    polled = await orchestrator.poll(job.id)

    assert polled.status == JobStatus.FAILED
    assert polled.error_message == ContentPolicyViolation.default_message
    assert await get_balance(uow_factory, USER_ID) == 10


# Ledger invariants


@pytest.mark.asyncio
async def test_concurrent_submissions_never_over_reserve(orchestrator, fake_provider, uow_factory):
    """Balance covers one request: of four concurrent submissions exactly one succeeds."""
    await give_points(uow_factory, USER_ID, 6)

    results = await asyncio.gather(
        *(orchestrator.submit(request(), USER_ID) for _ in range(4)), return_exceptions=True
    )

    jobs = [r for r in results if isinstance(r, GenerationJob)]
    errors = [r for r in results if not isinstance(r, GenerationJob)]
    assert len(jobs) == 1
    assert all(isinstance(e, InsufficientFunds) for e in errors)
    assert await get_balance(uow_factory, USER_ID) == 0
    assert len(fake_provider.submissions()) == 1


@pytest.mark.asyncio
async def test_failure_handler_is_idempotent(orchestrator, uow_factory):
    """Running the failure handler twice for one job refunds once."""
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)

    await orchestrator.fail_job(job.id, "first")
    again = await orchestrator.fail_job(job.id, "second")

    assert again.status == JobStatus.FAILED
    assert again.error_message == "first"
    assert await get_balance(uow_factory, USER_ID) == 10

    async with await uow_factory() as uow:
        entries = await uow.points.get_entries_for_job(job.id)
    assert len(entries) == 2


@pytest.mark.asyncio
async def test_concurrent_failure_handlers_refund_once(orchestrator, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)

    await asyncio.gather(*(orchestrator.fail_job(job.id, "boom") for _ in range(3)))

    assert await get_balance(uow_factory, USER_ID) == 10


@pytest.mark.asyncio
async def test_completed_job_is_never_failed_or_refunded(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    fake_provider.script_status(job.correlation_id, completed_status(job.correlation_id))
    fake_provider.script_result(job.correlation_id, images("https://cdn/1.png"))
    await orchestrator.poll(job.id)

    result = await orchestrator.fail_job(job.id, "late failure")

    assert result.status == JobStatus.COMPLETED
    assert await get_balance(uow_factory, USER_ID) == 4


# State machine


@pytest.mark.asyncio
async def test_unrecognized_status_is_a_no_op(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)

    for payload in ({"status": "CANCELLED"}, {"status": None}, {}):
        fake_provider.status_responses.pop(job.correlation_id, None)
        fake_provider.script_status(job.correlation_id, payload)
        await orchestrator.poll(job.id)

    async with await uow_factory() as uow:
        reloaded = await uow.jobs.get_by_id(job.id)
    assert reloaded.status == JobStatus.IN_QUEUE
    assert reloaded.updated_at == job.updated_at
    assert await get_balance(uow_factory, USER_ID) == 4


@pytest.mark.asyncio
async def test_status_never_moves_backwards(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)

    fake_provider.script_status(
        job.correlation_id,
        {"status": "IN_QUEUE", "queue_position": 3},
        {"status": "IN_PROGRESS"},
        {"status": "queued", "queue_position": 1},
    )

    first = await orchestrator.poll(job.id)
    second = await orchestrator.poll(job.id)
    third = await orchestrator.poll(job.id)

    assert first.status == JobStatus.IN_QUEUE
    assert first.queue_position == 3
    assert second.status == JobStatus.IN_PROGRESS
    assert third.status == JobStatus.IN_PROGRESS
    assert third.queue_position == 1


@pytest.mark.asyncio
async def test_terminal_job_is_not_polled_again(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    await orchestrator.fail_job(job.id, "failed")
    requests_before = len(fake_provider.requests)

    polled = await orchestrator.poll(job.id)

    assert polled.status == JobStatus.FAILED
    assert len(fake_provider.requests) == requests_before


@pytest.mark.asyncio
async def test_result_fetched_by_request_id_without_response_url(
    orchestrator, fake_provider, uow_factory
):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    fake_provider.script_status(job.correlation_id, {"status": "completed"})
    fake_provider.script_result(job.correlation_id, images("https://cdn/1.png"))

    polled = await orchestrator.poll(job.id)

    assert polled.status == JobStatus.COMPLETED
    assert fake_provider.requests[-1].url.path == (
        f"/fal-ai/nano-banana/requests/{job.correlation_id}"
    )


@pytest.mark.asyncio
async def test_empty_result_fails_job_with_refund(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    fake_provider.script_status(job.correlation_id, completed_status(job.correlation_id))
    fake_provider.script_result(job.correlation_id, httpx.Response(200, json={"images": []}))

    polled = await orchestrator.poll(job.id)

    assert polled.status == JobStatus.FAILED
    assert polled.error_message != ContentPolicyViolation.default_message
    assert await get_balance(uow_factory, USER_ID) == 10


@pytest.mark.asyncio
async def test_retryable_result_error_keeps_job_active(orchestrator, fake_provider, uow_factory):
    """A 5xx on the result fetch is retried on the next poll instead of failing the job."""
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    fake_provider.script_status(job.correlation_id, completed_status(job.correlation_id))
    fake_provider.script_result(job.correlation_id, httpx.Response(502, text="bad gateway"))

    with pytest.raises(QueueHTTPError):
        await orchestrator.poll(job.id)

    async with await uow_factory() as uow:
        assert (await uow.jobs.get_by_id(job.id)).status == JobStatus.IN_QUEUE
    assert await get_balance(uow_factory, USER_ID) == 4

    fake_provider.script_result(job.correlation_id, images("https://cdn/1.png"))
    polled = await orchestrator.poll(job.id)
    assert polled.status == JobStatus.COMPLETED
    assert await get_balance(uow_factory, USER_ID) == 4


@pytest.mark.asyncio
async def test_non_retryable_result_error_fails_job(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    fake_provider.script_status(job.correlation_id, completed_status(job.correlation_id))

    polled = await orchestrator.poll(job.id)

    assert polled.status == JobStatus.FAILED
    assert await get_balance(uow_factory, USER_ID) == 10


@pytest.mark.asyncio
async def test_completion_touches_session(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    async with await uow_factory() as uow:
        before = (await uow.sessions.get_by_id(job.session_id)).updated_at

    fake_provider.script_status(job.correlation_id, completed_status(job.correlation_id))
    fake_provider.script_result(job.correlation_id, images("https://cdn/1.png"))
    await orchestrator.poll(job.id)

    async with await uow_factory() as uow:
        after = (await uow.sessions.get_by_id(job.session_id)).updated_at
    assert after >= before


# Submission errors and fallback


@pytest.mark.asyncio
async def test_connection_error_on_submit_refunds(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    fake_provider.script_submit(NANO_SUBMIT, httpx.ConnectError("connection refused"))
    fake_provider.script_submit(LZ_NANO_SUBMIT, httpx.ConnectError("connection refused"))

    with pytest.raises(ProviderUnavailable):
        await orchestrator.submit(request(), USER_ID)

    assert await get_balance(uow_factory, USER_ID) == 10
    assert await count_jobs(uow_factory) == 0


@pytest.mark.asyncio
async def test_rejected_request_does_not_fall_back(orchestrator, fake_provider, uow_factory):
    """A 4xx about the request itself is surfaced without trying the fallback."""
    await give_points(uow_factory, USER_ID, 10)
    fake_provider.script_submit(PRO_SUBMIT, httpx.Response(400, json={"detail": "bad prompt"}))

    with pytest.raises(ProviderRejected):
        await orchestrator.submit(request(num_images=1, model_type="nano-banana-pro"), USER_ID)

    assert fake_provider.submissions(LZ_PRO_SUBMIT) == []
    assert await get_balance(uow_factory, USER_ID) == 10


@pytest.mark.asyncio
async def test_fallback_keeps_requested_model(orchestrator, fake_provider, uow_factory):
    """Primary 503: the same model is submitted to the other provider at the same price."""
    await give_points(uow_factory, USER_ID, 10)
    fake_provider.script_submit(PRO_SUBMIT, httpx.Response(503, text="Service Unavailable"))

    job = await orchestrator.submit(
        request(num_images=1, model_type="nano-banana-pro", resolution="2K"), USER_ID
    )

    assert job.model_type == "nano-banana-pro"
    assert job.provider == "laozhang-ai"
    assert job.endpoint_key == "laozhang-ai:nano-banana-pro:create"
    assert job.points_reserved == 6
    assert await get_balance(uow_factory, USER_ID) == 4
    assert fake_provider.submissions(NANO_SUBMIT) == []

    fallback = fake_provider.submissions(LZ_PRO_SUBMIT)[0]
    assert fallback.url.host == "laozhang.test"
    assert fallback.headers["Authorization"] == "Key test-laozhang-key"
    assert json.loads(fallback.content)["resolution"] == "2K"

    async with await uow_factory() as uow:
        metrics = await uow.fallback_metrics.get_recent()
    assert len(metrics) == 1
    assert metrics[0].active_endpoint == "fal-ai:nano-banana-pro:create"
    assert metrics[0].fallback_endpoint == "laozhang-ai:nano-banana-pro:create"
    assert metrics[0].error_type == "SERVICE_UNAVAILABLE"
    assert metrics[0].http_status == 503

    # Polling goes to the provider that accepted the job
    fake_provider.script_status(
        job.correlation_id,
        completed_status(job.correlation_id, LZ_PRO_SUBMIT, LAOZHANG_BASE_URL),
    )
    fake_provider.script_result(job.correlation_id, images("https://cdn/1.png"))
    polled = await orchestrator.poll(job.id)
    assert polled.status == JobStatus.COMPLETED
    status_request = next(r for r in fake_provider.requests if r.url.path.endswith("/status"))
    assert status_request.url.host == "laozhang.test"
    assert status_request.url.path == f"{LZ_PRO_SUBMIT}/requests/{job.correlation_id}/status"


@pytest.mark.asyncio
async def test_model_without_second_provider_has_no_fallback(
    orchestrator, fake_provider, uow_factory
):
    await give_points(uow_factory, USER_ID, 10)
    fake_provider.script_submit(SEEDREAM_SUBMIT, httpx.Response(503, text="busy"))

    with pytest.raises(ProviderRejected):
        await orchestrator.submit(request(num_images=1, model_type="seedream-4.5"), USER_ID)

    assert len(fake_provider.submissions()) == 1
    assert await get_balance(uow_factory, USER_ID) == 10

    async with await uow_factory() as uow:
        assert await uow.fallback_metrics.get_recent() == []


# Active provider per model


@pytest.mark.asyncio
async def test_active_provider_row_created_on_first_request(orchestrator, uow_factory):
    await give_points(uow_factory, USER_ID, 10)

    job = await orchestrator.submit(request(num_images=1), USER_ID)

    assert job.provider == "fal-ai"
    async with await uow_factory() as uow:
        rows = await uow.provider_settings.get_all()
    assert [(r.model_type, r.active_provider) for r in rows] == [("nano-banana", "fal-ai")]


@pytest.mark.asyncio
async def test_switching_active_provider_changes_primary(
    orchestrator, fake_provider, uow_factory
):
    await give_points(uow_factory, USER_ID, 10)

    await orchestrator.set_active_provider(
        ModelType.NANO_BANANA, GenerationProvider.LAOZHANG_AI
    )
    job = await orchestrator.submit(request(num_images=1), USER_ID)

    assert job.provider == "laozhang-ai"
    assert job.endpoint_key == "laozhang-ai:nano-banana:create"
    assert len(fake_provider.submissions(LZ_NANO_SUBMIT)) == 1
    assert fake_provider.submissions(NANO_SUBMIT) == []

    # Other models keep the default provider
    pro_job = await orchestrator.submit(
        request(num_images=1, model_type="nano-banana-pro"), USER_ID
    )
    assert pro_job.provider == "fal-ai"


@pytest.mark.asyncio
async def test_active_provider_must_serve_the_model(orchestrator, uow_factory):
    with pytest.raises(ValueError):
        await orchestrator.set_active_provider(
            ModelType.SEEDREAM_4_5, GenerationProvider.LAOZHANG_AI
        )

    settings = await orchestrator.get_provider_settings()
    assert {s.model_type: s.active_provider for s in settings} == {
        "nano-banana": "fal-ai",
        "nano-banana-pro": "fal-ai",
        "seedream-4.5": "fal-ai",
    }


@pytest.mark.asyncio
async def test_fallback_tries_each_endpoint_once(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    fake_provider.script_submit(PRO_SUBMIT, httpx.Response(502, text="bad gateway"))
    fake_provider.script_submit(LZ_PRO_SUBMIT, httpx.Response(502, text="bad gateway"))

    with pytest.raises(ProviderRejected):
        await orchestrator.submit(request(num_images=1, model_type="nano-banana-pro"), USER_ID)

    assert len(fake_provider.submissions(PRO_SUBMIT)) == 1
    assert len(fake_provider.submissions(LZ_PRO_SUBMIT)) == 1
    assert await get_balance(uow_factory, USER_ID) == 10

    async with await uow_factory() as uow:
        count = await uow.session.execute(
            select(func.count()).select_from(ProviderFallbackMetric)
        )
    assert count.scalar_one() == 1


@pytest.mark.asyncio
async def test_balance_exhausted_on_every_endpoint_alerts_once(
    orchestrator, fake_provider, uow_factory, alert_sink
):
    await give_points(uow_factory, USER_ID, 10)
    locked = httpx.Response(403, text="User is locked. Reason: Exhausted balance.")
    fake_provider.script_submit(PRO_SUBMIT, locked)
    fake_provider.script_submit(LZ_PRO_SUBMIT, locked)

    with pytest.raises(BalanceExhausted):
        await orchestrator.submit(request(num_images=1, model_type="nano-banana-pro"), USER_ID)
    await orchestrator.drain_background_tasks()

    assert len(fake_provider.submissions()) == 2
    assert len(alert_sink.alerts) == 1
    assert await get_balance(uow_factory, USER_ID) == 10


# Session and style collaborators


@pytest.mark.asyncio
async def test_style_prompt_is_appended(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    async with await uow_factory() as uow:
        await uow.styles.add(ArtStyle(id=2, name="Watercolor", prompt="watercolor painting"))

    job = await orchestrator.submit(request(num_images=1, style_id=2), USER_ID)

    assert job.prompt == "a lighthouse at dusk, watercolor painting"
    assert b"a lighthouse at dusk, watercolor painting" in fake_provider.submissions()[0].content


@pytest.mark.asyncio
async def test_existing_session_is_reused(orchestrator, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    first = await orchestrator.submit(request(num_images=1), USER_ID)

    second = await orchestrator.submit(
        request(num_images=1, session_id=first.session_id), USER_ID
    )

    assert second.session_id == first.session_id


@pytest.mark.asyncio
async def test_foreign_session_rejected_without_mutation(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    await give_points(uow_factory, USER_ID + 1, 10)
    other = await orchestrator.submit(request(num_images=1), USER_ID + 1)
    submissions_before = len(fake_provider.submissions())

    with pytest.raises(SessionNotFound):
        await orchestrator.submit(request(num_images=1, session_id=other.session_id), USER_ID)

    assert await get_balance(uow_factory, USER_ID) == 10
    assert len(fake_provider.submissions()) == submissions_before


# Synchronous wait


@pytest.mark.asyncio
async def test_wait_until_terminal_polls_to_completion(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    fake_provider.script_status(
        job.correlation_id,
        {"status": "IN_QUEUE", "queue_position": 1},
        httpx.ConnectError("flaky network"),
        {"status": "IN_PROGRESS"},
        completed_status(job.correlation_id),
    )
    fake_provider.script_result(job.correlation_id, images("https://cdn/1.png"))

    result = await orchestrator.wait_until_terminal(job.id, max_wait=5, interval=0.01)

    assert result.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_wait_deadline_leaves_job_untouched(orchestrator, fake_provider, uow_factory):
    """Timeout is a read-side error: job stays active and points stay reserved."""
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(), USER_ID)
    fake_provider.script_status(job.correlation_id, {"status": "IN_QUEUE", "queue_position": 4})

    with pytest.raises(GenerationTimeout):
        await orchestrator.wait_until_terminal(job.id, max_wait=0.1, interval=0.02)

    async with await uow_factory() as uow:
        reloaded = await uow.jobs.get_by_id(job.id)
    assert reloaded.status == JobStatus.IN_QUEUE
    assert await get_balance(uow_factory, USER_ID) == 4


@pytest.mark.asyncio
async def test_generate_sync_returns_images_and_balance(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    fake_provider.script_status("req-1", completed_status("req-1"))
    fake_provider.script_result("req-1", images("https://cdn/1.png", "https://cdn/2.png"))

    job, balance = await orchestrator.generate_sync(request(num_images=2), USER_ID, max_wait=5)

    assert job.image_urls == ["https://cdn/1.png", "https://cdn/2.png"]
    assert balance == 6


@pytest.mark.asyncio
async def test_generate_sync_failure_raises_with_refund(orchestrator, fake_provider, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    fake_provider.script_status("req-1", {"status": "FAILED"})

    with pytest.raises(JobFailed):
        await orchestrator.generate_sync(request(), USER_ID, max_wait=5)

    assert await get_balance(uow_factory, USER_ID) == 10


# Queries


@pytest.mark.asyncio
async def test_get_job_checks_ownership(orchestrator, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    job = await orchestrator.submit(request(num_images=1), USER_ID)

    assert (await orchestrator.get_job(job.id, USER_ID)).id == job.id
    with pytest.raises(JobForbidden):
        await orchestrator.get_job(job.id, USER_ID + 1)
    with pytest.raises(JobNotFound):
        await orchestrator.get_job(uuid4(), USER_ID)


@pytest.mark.asyncio
async def test_active_jobs_exclude_terminal(orchestrator, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    active = await orchestrator.submit(request(num_images=1), USER_ID)
    failed = await orchestrator.submit(request(num_images=1), USER_ID)
    await orchestrator.fail_job(failed.id, "failed")

    jobs = await orchestrator.get_active_jobs(USER_ID)

    assert [j.id for j in jobs] == [active.id]


# Out-of-band processing


@pytest.mark.asyncio
async def test_expire_stale_jobs(orchestrator, uow_factory):
    await give_points(uow_factory, USER_ID, 10)
    stale = await orchestrator.submit(request(num_images=1), USER_ID)
    fresh = await orchestrator.submit(request(num_images=1), USER_ID)
    async with await uow_factory() as uow:
        await uow.jobs.update(stale.id, {"created_at": utcnow() - timedelta(hours=1)})

    assert await orchestrator.expire_stale_jobs(max_age_seconds=600, dry_run=True) == [stale.id]
    assert await get_balance(uow_factory, USER_ID) == 6

    expired = await orchestrator.expire_stale_jobs(max_age_seconds=600)

    assert expired == [stale.id]
    async with await uow_factory() as uow:
        assert (await uow.jobs.get_by_id(stale.id)).status == JobStatus.FAILED
        assert (await uow.jobs.get_by_id(fresh.id)).status == JobStatus.IN_QUEUE
    assert await get_balance(uow_factory, USER_ID) == 8


@pytest.mark.asyncio
async def test_worker_batch_polls_active_jobs(orchestrator, fake_provider, uow_factory, settings):
    await give_points(uow_factory, USER_ID, 10)
    done = await orchestrator.submit(request(num_images=1), USER_ID)
    broken = await orchestrator.submit(request(num_images=1), USER_ID)
    fake_provider.script_status(done.correlation_id, completed_status(done.correlation_id))
    fake_provider.script_result(done.correlation_id, images("https://cdn/1.png"))
    fake_provider.script_status(broken.correlation_id, httpx.ConnectError("unreachable"))

    polled = await process_batch(orchestrator, settings)

    assert polled == 2
    async with await uow_factory() as uow:
        assert (await uow.jobs.get_by_id(done.id)).status == JobStatus.COMPLETED
        assert (await uow.jobs.get_by_id(broken.id)).status == JobStatus.IN_QUEUE
