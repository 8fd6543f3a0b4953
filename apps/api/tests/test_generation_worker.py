from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from models.generation_request import GenerationRequest
from services.credits import reserve_credits
from services.errors import ProviderError, ProviderUnavailable, QueueUnavailable
from services.generation_store import create_request, get_request
from services.generation_worker import process_generation_job_async
from services.job_queue import (
    DEAD_LETTER_ERROR,
    STALE_ERROR,
    is_dead_lettered,
    on_generation_job_failure,
    recover_stalled_generations,
)
from services.providers import GenerationProvider


class _FakeProvider(GenerationProvider):
    name = "fake"

    def __init__(self, result: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls = []

    async def generate(self, *, request_id, generation_type, params):
        self.calls.append((request_id, generation_type, params))
        if self.error is not None:
            raise self.error
        return self.result


class _FakeRQJob:
    def __init__(self, request_id: str, retries_left: Optional[int]):
        self.id = f"generation-{request_id}"
        self.args = (request_id,)
        self.retries_left = retries_left


class _RecordingRuntime:
    def __init__(self):
        self.coroutines = []

    def run(self, coro):
        self.coroutines.append(coro)
        coro.close()
        return True


async def _charged_request(session_maker, user_id, generation_type="quiz", params=None):
    async with session_maker() as db:
        request = await create_request(user_id, generation_type, params or {"topic": "Planets"}, 2, db)
        await reserve_credits(user_id, request.generation_type, db, generation_request_id=request.id, commit=False)
        await db.commit()
        return request.id


async def _load(session_maker, request_id):
    async with session_maker() as db:
        return await get_request(request_id, db)


@pytest.mark.asyncio
async def test_successful_generation_completes_and_schedules_delivery(session_maker, make_user):
    user_id = await make_user("worker-user", balance=10)
    request_id = await _charged_request(session_maker, user_id)
    provider = _FakeProvider(result={"content": "<h1>Quiz</h1>"})

    with patch("services.generation_worker.enqueue_delivery_job") as enqueue_delivery:
        status = await process_generation_job_async(request_id, provider, queue_job_id="generation-x")

    assert status == "completed"
    assert provider.calls == [(request_id, "quiz", {"topic": "Planets"})]
    enqueue_delivery.assert_called_once_with(request_id)
    request = await _load(session_maker, request_id)
    assert request.status == "completed"
    assert request.result == {"content": "<h1>Quiz</h1>"}
    assert request.error is None
    assert request.attempts == 1
    assert request.queue_job_id == "generation-x"


@pytest.mark.asyncio
async def test_string_results_are_normalized(session_maker, make_user):
    user_id = await make_user("worker-user")
    request_id = await _charged_request(session_maker, user_id)
    provider = _FakeProvider(result='{"content": "parsed"}')

    with patch("services.generation_worker.enqueue_delivery_job"):
        await process_generation_job_async(request_id, provider)

    assert (await _load(session_maker, request_id)).result == {"content": "parsed"}


@pytest.mark.asyncio
async def test_provider_error_fails_and_refunds(session_maker, make_user, load_subscription):
    user_id = await make_user("worker-user", balance=10)
    request_id = await _charged_request(session_maker, user_id)
    assert (await load_subscription(user_id)).credits_balance == 8

    with patch("services.generation_worker.enqueue_delivery_job") as enqueue_delivery:
        status = await process_generation_job_async(request_id, _FakeProvider(error=ProviderError("model overloaded")))

    assert status == "failed"
    enqueue_delivery.assert_not_called()
    request = await _load(session_maker, request_id)
    assert request.status == "failed"
    assert request.error
    assert request.result is None
    assert (await load_subscription(user_id)).credits_balance == 10

    async with session_maker() as db:
        result = await db.execute(
            select(CreditTransaction).where(
                CreditTransaction.generation_request_id == request_id,
                CreditTransaction.type == "refund",
            )
        )
        refunds = result.scalars().all()
    assert len(refunds) == 1
    assert refunds[0].amount == 2


@pytest.mark.asyncio
async def test_provider_unavailable_propagates_for_retry(session_maker, make_user):
    user_id = await make_user("worker-user")
    request_id = await _charged_request(session_maker, user_id)

    with pytest.raises(ProviderUnavailable):
        await process_generation_job_async(request_id, _FakeProvider(error=ProviderUnavailable("connection refused")))

    assert (await _load(session_maker, request_id)).status == "pending"


@pytest.mark.asyncio
async def test_redelivered_job_for_delivered_request_is_a_noop(session_maker, make_user):
    user_id = await make_user("worker-user")
    request_id = await _charged_request(session_maker, user_id)
    first = _FakeProvider(result={"content": "done"})
    with patch("services.generation_worker.enqueue_delivery_job"):
        await process_generation_job_async(request_id, first)
    async with session_maker() as db:
        await db.execute(
            update(GenerationRequest).where(GenerationRequest.id == request_id).values(sent_to_telegram=True)
        )
        await db.commit()

    second = _FakeProvider(result={"content": "different"})
    with patch("services.generation_worker.enqueue_delivery_job") as enqueue_delivery:
        status = await process_generation_job_async(request_id, second)

    assert status == "completed"
    assert second.calls == []
    enqueue_delivery.assert_not_called()
    assert (await _load(session_maker, request_id)).result == {"content": "done"}


@pytest.mark.asyncio
async def test_redelivered_job_reschedules_missing_delivery(session_maker, make_user):
    user_id = await make_user("worker-user", chat_id="777")
    request_id = await _charged_request(session_maker, user_id)
    provider = _FakeProvider(result={"content": "ok"})

    with patch(
        "services.generation_worker.enqueue_delivery_job",
        side_effect=QueueUnavailable("Delivery queue unavailable"),
    ):
        with pytest.raises(QueueUnavailable):
            await process_generation_job_async(request_id, provider)

    request = await _load(session_maker, request_id)
    assert request.status == "completed"
    assert request.sent_to_telegram is False

    with patch("services.generation_worker.enqueue_delivery_job") as enqueue_delivery:
        status = await process_generation_job_async(request_id, provider)

    assert status == "completed"
    assert len(provider.calls) == 1
    enqueue_delivery.assert_called_once_with(request_id)


@pytest.mark.asyncio
async def test_async_provider_leaves_request_pending(session_maker, make_user):
    user_id = await make_user("worker-user")
    request_id = await _charged_request(session_maker, user_id)

    with patch("services.generation_worker.enqueue_delivery_job") as enqueue_delivery:
        status = await process_generation_job_async(request_id, _FakeProvider(result=None))

    assert status == "pending"
    enqueue_delivery.assert_not_called()


@pytest.mark.asyncio
async def test_missing_request_is_ignored(session_maker):
    assert await process_generation_job_async("ghost", _FakeProvider(result={"content": "x"})) == "missing"


def test_dead_letter_detection_uses_remaining_retries():
    assert is_dead_lettered(_FakeRQJob("a", retries_left=None))
    assert is_dead_lettered(_FakeRQJob("a", retries_left=0))
    assert not is_dead_lettered(_FakeRQJob("a", retries_left=2))


def test_failure_callback_only_settles_exhausted_jobs():
    runtime = _RecordingRuntime()
    with patch("services.runtime.get_runtime", return_value=runtime):
        on_generation_job_failure(_FakeRQJob("req-1", retries_left=2), None, RuntimeError, RuntimeError("boom"), None)
        assert runtime.coroutines == []

        on_generation_job_failure(_FakeRQJob("req-1", retries_left=0), None, RuntimeError, RuntimeError("boom"), None)
        assert len(runtime.coroutines) == 1


@pytest.mark.asyncio
async def test_dead_lettered_generation_is_failed_and_refunded(session_maker, make_user, load_subscription):
    from services.job_queue import fail_dead_lettered_generation

    user_id = await make_user("worker-user", balance=10)
    request_id = await _charged_request(session_maker, user_id)

    assert await fail_dead_lettered_generation(request_id) is True
    assert await fail_dead_lettered_generation(request_id) is False

    request = await _load(session_maker, request_id)
    assert request.status == "failed"
    assert request.error == DEAD_LETTER_ERROR
    assert (await load_subscription(user_id)).credits_balance == 10


@pytest.mark.asyncio
async def test_stale_pending_requests_are_swept(session_maker, make_user, load_subscription):
    user_id = await make_user("worker-user", balance=10)
    stale_id = await _charged_request(session_maker, user_id)
    fresh_id = await _charged_request(session_maker, user_id)

    async with session_maker() as db:
        await db.execute(
            update(GenerationRequest)
            .where(GenerationRequest.id == stale_id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        await db.commit()

    assert await recover_stalled_generations(max_age_minutes=30) == 1

    stale = await _load(session_maker, stale_id)
    assert stale.status == "failed"
    assert stale.error == STALE_ERROR
    assert (await _load(session_maker, fresh_id)).status == "pending"
    assert (await load_subscription(user_id)).credits_balance == 8
